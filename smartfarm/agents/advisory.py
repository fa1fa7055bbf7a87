"""
Advisory flows for SmartFarm.

Provides:
- `DiseaseDetectionPipeline` / `detect_disease` - analyze -> treat -> localize
- `agricultural_chat` - single-call farming Q&A with canned fallbacks
- `weather_advisory` - activity timing advice from a (stubbed) forecast

Every flow takes the model client as an argument; nothing here holds a
client of its own. Unparsable or empty model output degrades to defaults.
"""
from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from smartfarm.models import (
    BASE_LANGUAGE,
    DEFAULT_CONFIDENCE,
    DEFAULT_SEVERITY,
    AdvisoryResult,
    ChatReply,
    ChatTurn,
    DiseaseInfo,
    FarmerProfile,
    FinishReason,
    GenerationConfig,
    ModelCallResult,
    TreatmentPlan,
    WeatherAdvisory,
    language_name,
    normalize_language,
)
from smartfarm.services.extractor import Shape, extract
from smartfarm.services.gemini import MediaRef, Prompt
from smartfarm.services.weather import fetch_weather, forecast_risks, format_weather_summary

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    async def generate(self, prompt: Prompt, config: Optional[GenerationConfig] = None) -> ModelCallResult:
        ...


# ---------------------------------------------------------------------------
# Disease detection
# ---------------------------------------------------------------------------

ANALYZE_CONFIG = GenerationConfig(temperature=0.2, max_output_tokens=2048)
TREAT_CONFIG = GenerationConfig(temperature=0.3, max_output_tokens=800)
TRANSLATE_CONFIG = GenerationConfig(temperature=0.3)

FALLBACK_TREATMENT = TreatmentPlan(
    immediate=[
        "Isolate affected plants to prevent spread",
        "Remove severely infected parts carefully",
        "Consult with local agricultural extension officer",
    ],
    preventive=[
        "Use disease-resistant crop varieties",
        "Practice crop rotation",
        "Maintain proper field sanitation",
    ],
    organic=[
        "Apply neem-based organic pesticides",
        "Use compost to improve soil health",
        "Encourage beneficial insects",
    ],
    estimated_loss="20-40% if left untreated",
    timeline="2-4 weeks for recovery with treatment",
)

# Assembly-time defaults for falsy upstream values
DEFAULT_IMMEDIATE = ["Consult agricultural extension officer"]
DEFAULT_PREVENTIVE = ["Monitor crops regularly"]
DEFAULT_ORGANIC = ["Use organic methods when possible"]
DEFAULT_ESTIMATED_LOSS = "Cannot estimate"
DEFAULT_TIMELINE = "Varies depending on condition"

ANALYZE_PROMPT = """Analyze this {crop} image for diseases.{location} Return ONLY valid JSON:
{{
  "disease": "disease name or No disease detected",
  "confidence": 85,
  "severity": "mild",
  "affectedArea": "10%",
  "symptoms": ["symptom1", "symptom2", "symptom3"]
}}

Use severity: mild, moderate, or severe.
Keep symptoms list to 3 items max."""

TREAT_PROMPT = """You are an agricultural extension officer in Africa helping farmers treat crop diseases.

Disease: {disease}
Severity: {severity}
Crop: {crop}

Provide treatment recommendations. Return ONLY this JSON structure with no other text:
{{
  "immediate": ["Specific action 1", "Specific action 2", "Specific action 3"],
  "preventive": ["Prevention step 1", "Prevention step 2", "Prevention step 3"],
  "organic": ["Organic method 1", "Organic method 2", "Organic method 3"],
  "estimatedLoss": "XX-XX% if untreated within X weeks",
  "timeline": "X-X weeks"
}}

Make recommendations practical for smallholder farmers in Africa.
Focus on locally available, affordable solutions."""

TRANSLATE_PROMPT = """You are an expert agricultural translator.
Translate the following agricultural advice to {language_name} ({language}).

IMPORTANT: Your response should be ONLY the translated text, with no additional explanations or formatting.

{text}

Guidelines:
- Use simple, farmer-friendly language
- Use relevant agricultural terms in {language_name}
- Be clear and direct
- Keep the translation natural and conversational"""


class Stage(str, Enum):
    ANALYZE = "analyze"
    TREAT = "treat"
    LOCALIZE = "localize"
    DONE = "done"


def _location_hint(location: Any) -> str:
    if not location:
        return ""
    try:
        if isinstance(location, dict):
            lat = location.get("lat", location.get("latitude"))
            lon = location.get("lon", location.get("lng", location.get("longitude")))
        else:
            lat, lon = location.lat, location.lon
        return f" The photo was taken near latitude {float(lat):.3f}, longitude {float(lon):.3f}."
    except (AttributeError, TypeError, ValueError):
        return ""


def compose_summary(disease: DiseaseInfo, treatment: TreatmentPlan) -> str:
    """English summary that is shown as-is or sent for translation."""
    actions = "\n".join(treatment.immediate[:3]) if treatment.immediate else "No immediate actions available"
    return (
        f"Disease: {disease.disease or 'Unknown disease'}\n"
        f"Severity: {disease.severity or DEFAULT_SEVERITY}\n"
        f"\n"
        f"Key Actions:\n"
        f"{actions}"
    )


class DiseaseDetectionPipeline:
    """Runs the three sequential model calls for one crop photo.

    `stage` records how far the run got; each stage depends on the previous
    stage's output, so nothing runs in parallel.
    """

    def __init__(self, client: ModelClient, base_language: str = BASE_LANGUAGE):
        self.client = client
        self.base_language = base_language
        self.stage = Stage.ANALYZE

    async def analyze(self, image: MediaRef, crop_type: Optional[str], location: Any = None) -> DiseaseInfo:
        self.stage = Stage.ANALYZE
        prompt = ANALYZE_PROMPT.format(crop=crop_type or "crop", location=_location_hint(location))
        result = await self.client.generate([image, prompt], ANALYZE_CONFIG)
        return DiseaseInfo.from_payload(extract(result.raw_text, Shape.DISEASE))

    async def treat(self, disease: DiseaseInfo, crop_type: Optional[str]) -> TreatmentPlan:
        self.stage = Stage.TREAT
        prompt = TREAT_PROMPT.format(
            disease=disease.disease,
            severity=disease.severity,
            crop=crop_type or "General crop",
        )
        result = await self.client.generate(prompt, TREAT_CONFIG)
        if not result.raw_text or not result.raw_text.strip():
            # An empty reply is a policy decision, not a parse failure
            logger.info("Treatment stage returned no text, using fallback plan")
            return FALLBACK_TREATMENT.model_copy(deep=True)
        return TreatmentPlan.from_payload(extract(result.raw_text, Shape.TREATMENT))

    async def localize(self, summary: str, language: str) -> str:
        self.stage = Stage.LOCALIZE
        if language == self.base_language:
            return summary
        prompt = TRANSLATE_PROMPT.format(
            language_name=language_name(language),
            language=language,
            text=summary,
        )
        result = await self.client.generate(prompt, TRANSLATE_CONFIG)
        return result.raw_text.strip()

    @staticmethod
    def assemble(disease: DiseaseInfo, treatment: TreatmentPlan, localized_text: str,
                 summary: str, language: str) -> AdvisoryResult:
        disease = DiseaseInfo(
            disease=disease.disease or "Unknown disease",
            confidence=disease.confidence or DEFAULT_CONFIDENCE,
            severity=disease.severity or DEFAULT_SEVERITY,
            affected_area=disease.affected_area or "Unknown",
            symptoms=disease.symptoms,
        )
        treatment = TreatmentPlan(
            immediate=treatment.immediate or list(DEFAULT_IMMEDIATE),
            preventive=treatment.preventive or list(DEFAULT_PREVENTIVE),
            organic=treatment.organic or list(DEFAULT_ORGANIC),
            estimated_loss=treatment.estimated_loss or DEFAULT_ESTIMATED_LOSS,
            timeline=treatment.timeline or DEFAULT_TIMELINE,
        )
        return AdvisoryResult(
            disease=disease,
            treatment=treatment,
            localized_text=localized_text or summary,
            language=language,
        )

    async def run(self, image: MediaRef, crop_type: Optional[str] = None,
                  language: Optional[str] = BASE_LANGUAGE, location: Any = None) -> AdvisoryResult:
        requested = language or self.base_language
        target = normalize_language(requested)
        if target != requested:
            logger.info("Unsupported language %r, using %s", requested, target)

        disease = await self.analyze(image, crop_type, location)
        treatment = await self.treat(disease, crop_type)
        summary = compose_summary(disease, treatment)
        localized = await self.localize(summary, target)

        result = self.assemble(disease, treatment, localized, summary, requested)
        self.stage = Stage.DONE
        return result


async def detect_disease(client: ModelClient, image: MediaRef, crop_type: Optional[str] = None,
                         language: Optional[str] = BASE_LANGUAGE, location: Any = None) -> AdvisoryResult:
    return await DiseaseDetectionPipeline(client).run(image, crop_type, language, location)


# ---------------------------------------------------------------------------
# Agricultural chat
# ---------------------------------------------------------------------------

CHAT_CONFIG = GenerationConfig(temperature=0.7, max_output_tokens=1024, top_k=40, top_p=0.95)
CHAT_HISTORY_TURNS = 3

MAX_TOKENS_MESSAGE = (
    "Your question requires a detailed answer. Could you make it more specific? "
    "For example, ask about a particular crop or farming activity."
)
SAFETY_MESSAGE = (
    "I cannot provide advice on that topic due to safety guidelines. "
    "Please ask about farming practices, crops, or agricultural techniques."
)
EMPTY_MESSAGE = (
    "I apologize, I could not generate a response. "
    "Please try rephrasing your question or ask something more specific about farming."
)
ERROR_MESSAGE = (
    "I apologize, but I encountered an error processing your question. "
    "Please try asking again, perhaps in a simpler way. "
    'For example: "When should I plant maize?" or "How do I control pests?"'
)
ERROR_FOLLOW_UPS = [
    "What are the best crops for my region?",
    "How can I improve my soil?",
    "What should I do about pests?",
]

_FOLLOW_UP_RULES = [
    (("plant", "seed"), [
        "What seed variety should I use?",
        "How should I prepare my land?",
        "When is the best time to plant?",
    ]),
    (("fertilizer", "manure"), [
        "How much fertilizer do I need?",
        "What organic alternatives exist?",
        "When should I apply fertilizer?",
    ]),
    (("pest", "disease"), [
        "How do I identify this pest?",
        "What organic treatments work?",
        "How can I prevent this problem?",
    ]),
    (("water", "irrigation"), [
        "How much water do my crops need?",
        "What irrigation method is best?",
        "How often should I water?",
    ]),
    (("harvest", "sell"), [
        "When should I harvest?",
        "How do I store my harvest?",
        "Where can I get better prices?",
    ]),
]
DEFAULT_FOLLOW_UPS = [
    "What are the best crops for my region?",
    "How can I improve my yield?",
    "What should I watch out for?",
]


def follow_up_questions(message: str) -> List[str]:
    text = (message or "").lower()
    for keywords, questions in _FOLLOW_UP_RULES:
        if any(k in text for k in keywords):
            return list(questions)
    return list(DEFAULT_FOLLOW_UPS)


def empty_reply_message(reason: FinishReason) -> str:
    if reason == FinishReason.MAX_TOKENS:
        return MAX_TOKENS_MESSAGE
    if reason == FinishReason.SAFETY:
        return SAFETY_MESSAGE
    return EMPTY_MESSAGE


def _farmer_context(profile: Optional[FarmerProfile]) -> str:
    if profile is None:
        return ""
    crops = ", ".join(profile.crops) if profile.crops else "mixed crops"
    return (
        f"Farmer: {profile.farmSize or 'small-scale'} farm, grows {crops}, "
        f"{profile.location or 'East Africa'}. "
    )


def build_chat_prompt(message: str, history: Sequence[ChatTurn] = (),
                      farmer_profile: Optional[FarmerProfile] = None,
                      language: Optional[str] = BASE_LANGUAGE) -> str:
    conversation = "\n".join(
        f"{'Farmer' if turn.role == 'user' else 'Advisor'}: {turn.text}"
        for turn in list(history)[-CHAT_HISTORY_TURNS:]
    )
    prompt = "You are an agricultural advisor in Africa helping smallholder farmers.\n\n"
    prompt += _farmer_context(farmer_profile)
    if conversation:
        prompt += f"\nRecent conversation:\n{conversation}\n\n"
    prompt += f"\nFarmer asks: {message}\n\n"
    prompt += "Provide practical farming advice in 2-3 short sentences. Be direct and actionable."
    target = normalize_language(language)
    if target != BASE_LANGUAGE:
        prompt += f"\nReply in {language_name(target)}."
    return prompt


async def agricultural_chat(client: ModelClient, message: str, history: Optional[Sequence[ChatTurn]] = None,
                            farmer_profile: Optional[FarmerProfile] = None,
                            language: Optional[str] = BASE_LANGUAGE) -> ChatReply:
    """Answer one farmer question; errors become a canned apology."""
    try:
        prompt = build_chat_prompt(message, history or [], farmer_profile, language)
        result = await client.generate(prompt, CHAT_CONFIG)
        text = result.raw_text
        if not text or not text.strip():
            logger.error("Empty response received from model (finish=%s)", result.finish_reason.value)
            text = empty_reply_message(result.finish_reason)
        return ChatReply(response=text.strip(), followUpQuestions=follow_up_questions(message))
    except Exception as e:
        logger.error("Error in chat flow: %s", e, exc_info=True)
        return ChatReply(response=ERROR_MESSAGE, followUpQuestions=list(ERROR_FOLLOW_UPS))


# ---------------------------------------------------------------------------
# Weather advisory
# ---------------------------------------------------------------------------

WEATHER_CONFIG = GenerationConfig(temperature=0.3)

WEATHER_PROMPT = """You are a climate-smart agriculture advisor.

Weather Forecast:
{forecast}

Activity: {activity}
Crop: {crop}

Provide practical timing advice in JSON format:
{{
  "recommendation": "clear yes/no/wait recommendation",
  "optimalTiming": "specific dates or timeframe",
  "risks": ["weather-related risks to consider"],
  "reasoning": "why this timing is best"
}}

Consider:
- Rainfall patterns
- Temperature
- Soil moisture needs
- Activity-specific requirements"""


def _as_text(value: Any, default: str) -> str:
    if isinstance(value, str):
        return value.strip() or default
    if value in (None, [], {}):
        return default
    return str(value)


async def weather_advisory(client: ModelClient, location: Any, activity: str,
                           crop_type: Optional[str] = None) -> WeatherAdvisory:
    forecast = await fetch_weather(location)
    prompt = WEATHER_PROMPT.format(
        forecast=json.dumps(forecast, indent=2),
        activity=activity,
        crop=crop_type or "general farming",
    )
    result = await client.generate(prompt, WEATHER_CONFIG)
    payload: Dict[str, Any] = extract(result.raw_text, Shape.WEATHER)

    risks = payload.get("risks")
    risks = [str(r) for r in risks if r] if isinstance(risks, list) else []
    if not risks:
        risks = forecast_risks(forecast, activity) or list(Shape.WEATHER.defaults["risks"])

    reasoning = payload.get("reasoning")
    return WeatherAdvisory(
        recommendation=_as_text(payload.get("recommendation"), Shape.WEATHER.defaults["recommendation"]),
        optimalTiming=_as_text(payload.get("optimalTiming"), Shape.WEATHER.defaults["optimalTiming"]),
        risks=risks,
        reasoning=reasoning if isinstance(reasoning, str) and reasoning.strip() else None,
        weatherSummary=format_weather_summary(forecast),
    )
