"""
Domain models shared by the SmartFarm backend and client.

Model-facing types (`ModelCallResult`, `GenerationConfig`), advisory results
(`DiseaseInfo`, `TreatmentPlan`, `AdvisoryResult`), chat/weather payloads and
the offline `QueuedRequest` record.
"""
import math
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# Supported farmer languages (code -> display name)
SUPPORTED_LANGUAGES = {
    "en": "English",
    "sw": "Swahili",
    "ha": "Hausa",
    "am": "Amharic",
    "yo": "Yoruba",
}
BASE_LANGUAGE = "en"

SEVERITIES = ("mild", "moderate", "severe")
DEFAULT_SEVERITY = "moderate"
DEFAULT_CONFIDENCE = 70

WEATHER_ACTIVITIES = ("planting", "fertilizing", "spraying", "harvesting")


def normalize_language(code: Optional[str]) -> str:
    """Return `code` if supported, otherwise the base language."""
    code = (code or "").strip().lower()
    return code if code in SUPPORTED_LANGUAGES else BASE_LANGUAGE


def language_name(code: Optional[str]) -> str:
    return SUPPORTED_LANGUAGES.get(normalize_language(code), "English")


class FinishReason(str, Enum):
    COMPLETE = "COMPLETE"
    MAX_TOKENS = "MAX_TOKENS"
    SAFETY = "SAFETY"
    OTHER = "OTHER"


class ModelCallResult(BaseModel):
    """Text produced by one model call plus the reason generation stopped."""
    model_config = ConfigDict(frozen=True)

    raw_text: str = ""
    finish_reason: FinishReason = FinishReason.COMPLETE


class GenerationConfig(BaseModel):
    temperature: float = 0.4
    max_output_tokens: Optional[int] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None


def _to_str_list(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _to_confidence(value: Any) -> int:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    if not math.isfinite(conf):
        return DEFAULT_CONFIDENCE
    # Some replies use a 0-1 probability instead of a percentage
    if 0 < conf <= 1:
        conf *= 100
    return int(round(min(max(conf, 0.0), 100.0)))


class DiseaseInfo(BaseModel):
    disease: str = "Unknown disease"
    confidence: int = Field(DEFAULT_CONFIDENCE, ge=0, le=100)
    severity: str = DEFAULT_SEVERITY
    affected_area: str = "Unknown"
    symptoms: List[str] = Field(default_factory=list, max_length=3)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DiseaseInfo":
        """Build a valid DiseaseInfo from an extracted (untrusted) payload."""
        severity = str(payload.get("severity") or "").strip().lower()
        if severity not in SEVERITIES:
            severity = DEFAULT_SEVERITY
        confidence = payload.get("confidence")
        return cls(
            disease=str(payload.get("disease") or "").strip() or "Unknown disease",
            confidence=_to_confidence(confidence) if confidence not in (None, "") else DEFAULT_CONFIDENCE,
            severity=severity,
            affected_area=str(payload.get("affectedArea") or payload.get("affected_area") or "Unknown"),
            symptoms=_to_str_list(payload.get("symptoms"))[:3],
        )


class TreatmentPlan(BaseModel):
    immediate: List[str] = Field(default_factory=list)
    preventive: List[str] = Field(default_factory=list)
    organic: List[str] = Field(default_factory=list)
    estimated_loss: str = ""
    timeline: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TreatmentPlan":
        return cls(
            immediate=_to_str_list(payload.get("immediate")),
            preventive=_to_str_list(payload.get("preventive")),
            organic=_to_str_list(payload.get("organic")),
            estimated_loss=str(payload.get("estimatedLoss") or payload.get("estimated_loss") or ""),
            timeline=str(payload.get("timeline") or ""),
        )


class AdvisoryResult(BaseModel):
    """Final disease-detection answer returned across the HTTP boundary."""
    model_config = ConfigDict(frozen=True)

    disease: DiseaseInfo
    treatment: TreatmentPlan
    localized_text: str
    language: str = BASE_LANGUAGE

    def to_response(self) -> Dict[str, Any]:
        return {
            "disease": self.disease.disease,
            "confidence": self.disease.confidence,
            "severity": self.disease.severity,
            "treatment": {
                "immediate": list(self.treatment.immediate),
                "preventive": list(self.treatment.preventive),
                "organic": list(self.treatment.organic),
            },
            "estimatedLoss": self.treatment.estimated_loss,
            "localizedText": self.localized_text,
            "language": self.language,
        }


class Location(BaseModel):
    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(validation_alias=AliasChoices("lon", "lng", "longitude"))


class ChatTurn(BaseModel):
    role: str = "user"
    text: str = ""


class FarmerProfile(BaseModel):
    farmSize: Optional[str] = None
    crops: Optional[List[str]] = None
    location: Optional[str] = None


class ChatRequest(BaseModel):
    message: Optional[str] = None
    history: List[ChatTurn] = Field(default_factory=list)
    farmerProfile: Optional[FarmerProfile] = None
    language: Optional[str] = BASE_LANGUAGE


class ChatReply(BaseModel):
    response: str
    followUpQuestions: List[str] = Field(default_factory=list)


class WeatherAdvisoryRequest(BaseModel):
    location: Optional[Location] = None
    cropType: Optional[str] = None
    activity: Optional[str] = None


class WeatherAdvisory(BaseModel):
    recommendation: str
    optimalTiming: str
    risks: List[str] = Field(default_factory=list)
    reasoning: Optional[str] = None
    weatherSummary: str


class QueuedRequest(BaseModel):
    id: str
    endpoint: str
    method: str = "POST"
    body: Any = None
    timestamp: int
