"""Backend services: Gemini client, reply extraction and the forecast stub."""
