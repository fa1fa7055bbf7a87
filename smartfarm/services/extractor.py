"""
Best-effort JSON extraction from free-text model replies.

Gemini is asked for "ONLY valid JSON" but regularly wraps it in Markdown
fences, adds prose around it, or stops mid-object when it hits the token
limit. `extract` recovers what it can and always hands back a dict that
carries the required fields of the expected shape.
"""
import json
import logging
import re
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

RAW_ECHO_LIMIT = 200

_FENCE_RE = re.compile(r"```(?:json)?\n?")
_BRACE_SPAN_RE = re.compile(r"\{[\s\S]*\}")
_TRAILING_DELIM_RE = re.compile(r"[:,]\s*$")

_DISEASE_RE = re.compile(r'"disease"\s*:\s*"([^"]+)"')
_CONFIDENCE_RE = re.compile(r'"confidence"\s*:\s*(\d+)')
_SEVERITY_RE = re.compile(r'"severity"\s*:\s*"([^"]+)"')

DISEASE_FALLBACK = {
    "disease": "Disease detected - analysis incomplete",
    "confidence": 60,
    "severity": "moderate",
    "affectedArea": "Unknown",
    "symptoms": ["Consult agricultural officer for detailed diagnosis"],
}

TREATMENT_FALLBACK = {
    "immediate": ["Isolate affected plants", "Consult agricultural extension officer"],
    "preventive": ["Monitor crops regularly", "Maintain good field hygiene"],
    "organic": ["Use organic compost", "Practice crop rotation"],
    "estimatedLoss": "Cannot estimate without proper diagnosis",
    "timeline": "Varies depending on condition",
}

WEATHER_FALLBACK = {
    "recommendation": "Wait - advisory could not be generated, check local conditions",
    "optimalTiming": "Monitor the forecast over the next few days",
    "risks": ["Advisory unavailable - consult your local extension officer"],
}


class Shape(str, Enum):
    """Expected structure of a model reply."""
    DISEASE = "disease"
    TREATMENT = "treatment"
    WEATHER = "weather"
    GENERIC = "generic"

    @property
    def defaults(self) -> Dict[str, Any]:
        return {
            Shape.DISEASE: DISEASE_FALLBACK,
            Shape.TREATMENT: TREATMENT_FALLBACK,
            Shape.WEATHER: WEATHER_FALLBACK,
        }.get(self, {})

    def conform(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Fill in required fields missing from `payload`; parsed values win."""
        out = dict(payload)
        for key, value in self.defaults.items():
            if key not in out or out[key] is None:
                out[key] = json.loads(json.dumps(value))
        return out


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def _candidate(text: str) -> str:
    cleaned = strip_code_fences(text)
    match = _BRACE_SPAN_RE.search(cleaned)
    if match:
        cleaned = match.group(0)
    cleaned = cleaned.rstrip()
    if cleaned.endswith(":") or cleaned.endswith(","):
        logger.warning("Incomplete JSON detected, attempting to close it")
        cleaned = _TRAILING_DELIM_RE.sub("", cleaned) + "}"
    return cleaned


def _recover_disease_fields(text: str) -> Optional[Dict[str, Any]]:
    disease = _DISEASE_RE.search(text)
    if not disease:
        return None
    confidence = _CONFIDENCE_RE.search(text)
    severity = _SEVERITY_RE.search(text)
    return {
        "disease": disease.group(1),
        "confidence": int(confidence.group(1)) if confidence else 70,
        "severity": severity.group(1) if severity else "moderate",
        "affectedArea": "10-20%",
        "symptoms": ["Visible damage on plant", "Requires closer inspection"],
    }


def _classify(text: str) -> Dict[str, Any]:
    lowered = text.lower()
    if "disease" in lowered or "symptom" in lowered:
        return dict(DISEASE_FALLBACK)
    if "treatment" in lowered or "action" in lowered:
        return dict(TREATMENT_FALLBACK)
    return {"error": "Failed to parse response", "rawText": text[:RAW_ECHO_LIMIT]}


def parse_model_json(text: str) -> Dict[str, Any]:
    """Run the recovery ladder on `text`; never raises."""
    text = text if isinstance(text, str) else ("" if text is None else str(text))
    try:
        parsed = json.loads(_candidate(text))
        if isinstance(parsed, dict):
            return parsed
        raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    except (ValueError, RecursionError) as e:
        logger.warning("Failed to parse JSON: %s (%s)", text[:RAW_ECHO_LIMIT], e)

    recovered = _recover_disease_fields(text)
    if recovered:
        return recovered
    return _classify(text)


def extract(raw_text: str, expected_shape: Shape = Shape.GENERIC) -> Dict[str, Any]:
    """Turn raw model output into a dict matching `expected_shape`."""
    return expected_shape.conform(parse_model_json(raw_text))
