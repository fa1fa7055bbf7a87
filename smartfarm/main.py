import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
load_dotenv()

from fastapi import Body, Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from smartfarm.agents.advisory import ModelClient, agricultural_chat, detect_disease, weather_advisory
from smartfarm.models import WEATHER_ACTIVITIES, ChatReply, ChatRequest, WeatherAdvisory, WeatherAdvisoryRequest
from smartfarm.services.gemini import GeminiClient, MediaRef

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    # The model client lives exactly as long as the app
    try:
        app_instance.state.model_client = GeminiClient.from_env()
        logger.info("Gemini client ready (model=%s)", app_instance.state.model_client.model_name)
    except ValueError as e:
        app_instance.state.model_client = None
        logger.error("Gemini client not configured: %s", e)
    yield
    app_instance.state.model_client = None


app = FastAPI(title="SmartFarm API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


def get_model_client(request: Request) -> Optional[ModelClient]:
    return getattr(request.app.state, "model_client", None)


def _error(status_code: int, message: str, details: Optional[str] = None) -> JSONResponse:
    content = {"error": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(content=content, status_code=status_code)


def _no_client() -> JSONResponse:
    return _error(503, "AI model is not configured")


@app.get("/health")
def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/analyze-disease")
async def analyze_disease(
    image: Optional[UploadFile] = File(None),
    cropType: Optional[str] = Form(None),
    language: Optional[str] = Form("en"),
    location: Optional[str] = Form(None),
    client: Optional[ModelClient] = Depends(get_model_client),
):
    if image is None:
        logger.error("No image file in request")
        return _error(400, "No image provided")

    image_bytes = await image.read()
    if not image_bytes:
        return _error(400, "Uploaded image is empty")
    if len(image_bytes) > MAX_UPLOAD_BYTES:
        return _error(413, f"Image too large. Maximum size is {MAX_UPLOAD_BYTES // 1024 // 1024} MB")

    parsed_location = None
    if location:
        try:
            parsed_location = json.loads(location)
        except ValueError:
            logger.warning("Ignoring malformed location field: %s", location[:100])

    if client is None:
        return _no_client()

    try:
        result = await detect_disease(
            client,
            MediaRef(data=image_bytes, mime_type=image.content_type or "image/jpeg"),
            crop_type=cropType,
            language=language or "en",
            location=parsed_location,
        )
        return result.to_response()
    except Exception as e:
        logger.exception("Error analyzing disease: %s", e)
        return _error(500, "Failed to analyze image", str(e))


@app.post("/api/chat", response_model=ChatReply)
async def chat(payload: Optional[Dict[str, Any]] = Body(None),
               client: Optional[ModelClient] = Depends(get_model_client)):
    try:
        req = ChatRequest.model_validate(payload or {})
    except ValidationError as e:
        return _error(400, "Invalid chat request", str(e))
    if not req.message or not req.message.strip():
        return _error(400, "No message provided")
    if client is None:
        return _no_client()

    return await agricultural_chat(
        client,
        req.message,
        history=req.history,
        farmer_profile=req.farmerProfile,
        language=req.language or "en",
    )


@app.post("/api/weather-advisory", response_model=WeatherAdvisory)
async def weather(payload: Optional[Dict[str, Any]] = Body(None),
                  client: Optional[ModelClient] = Depends(get_model_client)):
    try:
        req = WeatherAdvisoryRequest.model_validate(payload or {})
    except ValidationError as e:
        return _error(400, "Location and activity required", str(e))
    if req.location is None or not req.activity:
        return _error(400, "Location and activity required")
    if req.activity not in WEATHER_ACTIVITIES:
        return _error(400, f"Unsupported activity. Use one of: {', '.join(WEATHER_ACTIVITIES)}")
    if client is None:
        return _no_client()

    try:
        return await weather_advisory(client, req.location, req.activity, crop_type=req.cropType)
    except Exception as e:
        logger.exception("Weather advisory error: %s", e)
        return _error(500, "Failed to get weather advisory", str(e))


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "3001")))
