import json

import pytest
from fastapi.testclient import TestClient

from smartfarm.main import app, get_model_client

DISEASE_JSON = json.dumps({"disease": "Cassava mosaic", "confidence": 81, "severity": "moderate"})
TREATMENT_JSON = json.dumps({
    "immediate": ["Remove infected plants"],
    "preventive": ["Use clean cuttings"],
    "organic": ["Control whiteflies with neem"],
    "estimatedLoss": "20-40% if untreated within 4 weeks",
    "timeline": "4-6 weeks",
})


@pytest.fixture
def api(fake_client):
    """TestClient whose model collaborator is a fake; returns (client, fake)."""
    def _make(*replies):
        fake = fake_client(*replies)
        app.dependency_overrides[get_model_client] = lambda: fake
        return TestClient(app), fake
    yield _make
    app.dependency_overrides.clear()


def _image():
    return {"image": ("leaf.jpg", b"\xff\xd8\xff\xe0fake-jpeg-bytes", "image/jpeg")}


def test_health():
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert "timestamp" in body


def test_analyze_disease_english(api):
    client, fake = api(DISEASE_JSON, TREATMENT_JSON)
    response = client.post(
        "/api/analyze-disease",
        files=_image(),
        data={"cropType": "cassava", "language": "en", "location": '{"latitude": -1.3, "longitude": 36.8}'},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["disease"] == "Cassava mosaic"
    assert body["confidence"] == 81
    assert body["severity"] == "moderate"
    assert body["treatment"] == {
        "immediate": ["Remove infected plants"],
        "preventive": ["Use clean cuttings"],
        "organic": ["Control whiteflies with neem"],
    }
    assert body["estimatedLoss"] == "20-40% if untreated within 4 weeks"
    assert body["localizedText"].startswith("Disease: Cassava mosaic")
    assert len(fake.calls) == 2


def test_analyze_disease_unsupported_language_is_english(api):
    client, fake = api(DISEASE_JSON, TREATMENT_JSON)
    response = client.post("/api/analyze-disease", files=_image(), data={"language": "fr"})

    assert response.status_code == 200
    assert response.json()["localizedText"].startswith("Disease: Cassava mosaic")
    assert len(fake.calls) == 2


def test_analyze_disease_malformed_location_is_ignored(api):
    client, _ = api(DISEASE_JSON, TREATMENT_JSON)
    response = client.post("/api/analyze-disease", files=_image(), data={"location": "{not json"})
    assert response.status_code == 200


def test_analyze_disease_nan_confidence_is_still_200(api):
    reply = '{"disease": "Cassava mosaic", "confidence": "nan", "severity": "severe"}'
    client, _ = api(reply, TREATMENT_JSON)
    response = client.post("/api/analyze-disease", files=_image())
    assert response.status_code == 200, response.text
    assert response.json()["confidence"] == 70


def test_analyze_disease_requires_image(api):
    client, fake = api()
    response = client.post("/api/analyze-disease", data={"cropType": "maize"})
    assert response.status_code == 400
    assert response.json() == {"error": "No image provided"}
    assert fake.calls == []


def test_analyze_disease_pipeline_failure_is_500(api):
    client, _ = api(RuntimeError("model unavailable"))
    response = client.post("/api/analyze-disease", files=_image())
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to analyze image", "details": "model unavailable"}


def test_chat(api):
    client, fake = api("Apply well-rotted manure before planting.")
    response = client.post("/api/chat", json={
        "message": "What fertilizer should I use?",
        "history": [{"role": "user", "text": "Hi"}, {"role": "assistant", "text": "Hello"}],
        "farmerProfile": {"farmSize": "1 hectare", "crops": ["maize"]},
        "language": "en",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "Apply well-rotted manure before planting."
    assert body["followUpQuestions"][0] == "How much fertilizer do I need?"
    assert len(fake.calls) == 1


@pytest.mark.parametrize("payload", [None, {}, {"message": ""}, {"message": "   ", "history": []}])
def test_chat_without_message_is_400_and_no_model_call(api, payload):
    client, fake = api("should not be used")
    response = client.post("/api/chat", json=payload)
    assert response.status_code == 400
    assert response.json() == {"error": "No message provided"}
    assert fake.calls == []


def test_chat_model_error_still_200(api):
    client, _ = api(TimeoutError("deadline exceeded"))
    response = client.post("/api/chat", json={"message": "When do I harvest?"})
    assert response.status_code == 200
    assert response.json()["response"].startswith("I apologize")


def test_weather_advisory(api):
    reply = json.dumps({"recommendation": "Yes", "optimalTiming": "Tomorrow morning", "risks": []})
    client, fake = api(reply)
    response = client.post("/api/weather-advisory", json={
        "location": {"lat": -0.1, "lon": 34.7},
        "cropType": "sorghum",
        "activity": "planting",
    })

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["recommendation"] == "Yes"
    assert body["optimalTiming"] == "Tomorrow morning"
    assert body["risks"]
    assert body["weatherSummary"].startswith("Current: 25°C")
    assert len(fake.calls) == 1


@pytest.mark.parametrize("payload", [
    {"activity": "planting"},
    {"location": {"lat": 1.0, "lon": 2.0}},
    {"location": {"lat": 1.0, "lon": 2.0}, "activity": "dancing"},
    {"location": {"lat": 1.0}, "activity": "planting"},
    None,
])
def test_weather_advisory_validation(api, payload):
    client, fake = api()
    response = client.post("/api/weather-advisory", json=payload)
    assert response.status_code == 400
    assert "error" in response.json()
    assert fake.calls == []


def test_missing_model_client_is_503():
    app.dependency_overrides[get_model_client] = lambda: None
    try:
        response = TestClient(app).post("/api/chat", json={"message": "hello"})
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 503
