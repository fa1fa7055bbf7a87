"""SmartFarm advisor: Gemini-backed crop advice API and offline-capable client."""
__version__ = "0.1.0"
