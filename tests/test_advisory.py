import json

import pytest

from smartfarm.agents.advisory import (
    DEFAULT_FOLLOW_UPS,
    EMPTY_MESSAGE,
    ERROR_FOLLOW_UPS,
    ERROR_MESSAGE,
    FALLBACK_TREATMENT,
    MAX_TOKENS_MESSAGE,
    SAFETY_MESSAGE,
    DiseaseDetectionPipeline,
    Stage,
    agricultural_chat,
    build_chat_prompt,
    compose_summary,
    detect_disease,
    follow_up_questions,
    weather_advisory,
)
from smartfarm.models import ChatTurn, FarmerProfile, FinishReason, ModelCallResult
from smartfarm.services.gemini import MediaRef

IMAGE = MediaRef(data=b"\xff\xd8fake-jpeg")

DISEASE_JSON = json.dumps({
    "disease": "Maize streak virus",
    "confidence": 88,
    "severity": "severe",
    "affectedArea": "30%",
    "symptoms": ["yellow streaks", "stunting", "chlorosis", "extra symptom"],
})
TREATMENT_JSON = json.dumps({
    "immediate": ["Uproot infected plants"],
    "preventive": ["Plant resistant varieties"],
    "organic": ["Control leafhoppers with neem"],
    "estimatedLoss": "30-50% if untreated within 3 weeks",
    "timeline": "3-4 weeks",
})


async def test_english_request_issues_no_translation_call(fake_client):
    client = fake_client(DISEASE_JSON, TREATMENT_JSON)
    result = await detect_disease(client, IMAGE, crop_type="maize", language="en")

    assert len(client.calls) == 2
    assert result.disease.disease == "Maize streak virus"
    assert result.disease.confidence == 88
    assert result.disease.severity == "severe"
    assert result.disease.symptoms == ["yellow streaks", "stunting", "chlorosis"]
    assert result.treatment.immediate == ["Uproot infected plants"]
    assert result.localized_text == compose_summary(result.disease, result.treatment)
    assert result.language == "en"


async def test_unsupported_language_falls_back_to_english_summary(fake_client):
    client = fake_client(DISEASE_JSON, TREATMENT_JSON)
    result = await detect_disease(client, IMAGE, language="fr")

    assert len(client.calls) == 2
    assert result.localized_text.startswith("Disease: Maize streak virus")
    assert "Key Actions:\nUproot infected plants" in result.localized_text
    assert result.language == "fr"


async def test_supported_language_is_translated(fake_client):
    client = fake_client(DISEASE_JSON, TREATMENT_JSON, "Ugonjwa: virusi vya michirizi ya mahindi")
    result = await detect_disease(client, IMAGE, language="sw")

    assert len(client.calls) == 3
    prompt, _ = client.calls[2]
    assert "Swahili (sw)" in prompt
    assert "Disease: Maize streak virus" in prompt
    assert result.localized_text == "Ugonjwa: virusi vya michirizi ya mahindi"


async def test_empty_translation_uses_english_summary(fake_client):
    client = fake_client(DISEASE_JSON, TREATMENT_JSON, "   ")
    result = await detect_disease(client, IMAGE, language="yo")
    assert result.localized_text.startswith("Disease: Maize streak virus")


@pytest.mark.parametrize("empty", ["", "   \n  "])
async def test_empty_treatment_text_uses_fixed_fallback(fake_client, empty):
    client = fake_client(DISEASE_JSON, empty)
    result = await detect_disease(client, IMAGE)

    assert result.treatment.immediate == FALLBACK_TREATMENT.immediate
    assert result.treatment.preventive == FALLBACK_TREATMENT.preventive
    assert result.treatment.organic == FALLBACK_TREATMENT.organic
    assert result.treatment.estimated_loss == FALLBACK_TREATMENT.estimated_loss


async def test_garbled_replies_still_produce_complete_result(fake_client):
    client = fake_client("I could not read the picture", '{"immediate": []}')
    result = await detect_disease(client, IMAGE)

    assert result.disease.disease
    assert 0 < result.disease.confidence <= 100
    assert result.disease.severity in ("mild", "moderate", "severe")
    assert result.treatment.immediate
    assert result.treatment.preventive
    assert result.treatment.organic
    assert result.treatment.estimated_loss


async def test_invalid_severity_and_fractional_confidence_are_normalised(fake_client):
    reply = json.dumps({"disease": "Rust", "confidence": 0.82, "severity": "critical"})
    client = fake_client(reply, TREATMENT_JSON)
    result = await detect_disease(client, IMAGE)
    assert result.disease.confidence == 82
    assert result.disease.severity == "moderate"


@pytest.mark.parametrize("reply", [
    '{"disease": "Rust", "confidence": NaN, "severity": "mild"}',
    '{"disease": "Rust", "confidence": "nan", "severity": "mild"}',
    '{"disease": "Rust", "confidence": Infinity, "severity": "mild"}',
])
async def test_non_finite_confidence_uses_default(fake_client, reply):
    client = fake_client(reply, TREATMENT_JSON)
    result = await detect_disease(client, IMAGE)
    assert result.disease.disease == "Rust"
    assert result.disease.confidence == 70
    assert result.disease.severity == "mild"


async def test_pipeline_runs_stages_in_order(fake_client):
    client = fake_client(DISEASE_JSON, TREATMENT_JSON, "Cuta")
    pipeline = DiseaseDetectionPipeline(client)
    assert pipeline.stage == Stage.ANALYZE

    await pipeline.run(IMAGE, crop_type="maize", language="ha", location={"lat": 9.05, "lon": 7.49})

    assert pipeline.stage == Stage.DONE
    analyze_prompt, analyze_config = client.calls[0]
    assert analyze_prompt[0] is IMAGE
    assert "maize image" in analyze_prompt[1]
    assert "latitude 9.050" in analyze_prompt[1]
    assert analyze_config.temperature == 0.2
    assert "Disease: Maize streak virus" in client.calls[1][0]
    assert "Hausa" in client.calls[2][0]


async def test_model_error_propagates_from_pipeline(fake_client):
    client = fake_client(RuntimeError("quota exceeded"))
    with pytest.raises(RuntimeError):
        await detect_disease(client, IMAGE)


async def test_chat_reply_and_follow_ups(fake_client):
    client = fake_client("Plant maize at the start of the long rains.")
    reply = await agricultural_chat(client, "When should I plant maize?")
    assert reply.response == "Plant maize at the start of the long rains."
    assert reply.followUpQuestions == follow_up_questions("plant")
    assert len(client.calls) == 1


@pytest.mark.parametrize("reason, expected", [
    (FinishReason.MAX_TOKENS, MAX_TOKENS_MESSAGE),
    (FinishReason.SAFETY, SAFETY_MESSAGE),
    (FinishReason.OTHER, EMPTY_MESSAGE),
    (FinishReason.COMPLETE, EMPTY_MESSAGE),
])
async def test_chat_empty_reply_is_explained_by_finish_reason(fake_client, reason, expected):
    client = fake_client(ModelCallResult(raw_text="", finish_reason=reason))
    reply = await agricultural_chat(client, "Tell me everything")
    assert reply.response == expected


async def test_chat_errors_are_absorbed(fake_client):
    client = fake_client(ConnectionError("network down"))
    reply = await agricultural_chat(client, "How do I control pests?")
    assert reply.response == ERROR_MESSAGE
    assert reply.followUpQuestions == ERROR_FOLLOW_UPS


def test_chat_prompt_keeps_last_three_turns_and_profile():
    history = [ChatTurn(role="user" if i % 2 == 0 else "assistant", text=f"turn-{i}") for i in range(5)]
    profile = FarmerProfile(farmSize="2 acre", crops=["maize", "beans"], location="Kisumu")
    prompt = build_chat_prompt("Is it time to weed?", history, profile, "sw")

    assert "turn-0" not in prompt and "turn-1" not in prompt
    assert "Farmer: turn-2" in prompt
    assert "Advisor: turn-3" in prompt
    assert "Farmer: turn-4" in prompt
    assert "Farmer: 2 acre farm, grows maize, beans, Kisumu." in prompt
    assert "Farmer asks: Is it time to weed?" in prompt
    assert "Reply in Swahili." in prompt


def test_follow_up_questions_default():
    assert follow_up_questions("hello there") == DEFAULT_FOLLOW_UPS


async def test_weather_advisory_attaches_summary(fake_client):
    reply = json.dumps({
        "recommendation": "Wait",
        "optimalTiming": "After the heavy rain day",
        "risks": ["Runoff"],
        "reasoning": "Heavy rain expected",
    })
    client = fake_client(reply)
    advisory = await weather_advisory(client, {"lat": -1.28, "lon": 36.82}, "spraying", crop_type="beans")

    assert advisory.recommendation == "Wait"
    assert advisory.risks == ["Runoff"]
    assert advisory.weatherSummary.startswith("Current: 25°C, partly cloudy.")
    prompt, _ = client.calls[0]
    assert '"temperature": 25' in prompt
    assert "Activity: spraying" in prompt


async def test_weather_advisory_with_unparsable_reply(fake_client):
    client = fake_client("no idea")
    advisory = await weather_advisory(client, {"latitude": 6.5, "longitude": 3.4}, "planting")
    assert advisory.recommendation
    assert advisory.optimalTiming
    assert advisory.risks
    assert advisory.weatherSummary
