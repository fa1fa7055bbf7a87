# SmartFarm Agents
"""
Advisory flows built on the Gemini model client.

Exports:
- DiseaseDetectionPipeline / detect_disease: analyze -> treat -> localize
- agricultural_chat: farmer Q&A with finish-reason fallbacks
- weather_advisory: activity timing from the forecast
"""
from .advisory import (
    DiseaseDetectionPipeline,
    Stage,
    agricultural_chat,
    detect_disease,
    weather_advisory,
)

__all__ = [
    'DiseaseDetectionPipeline',
    'Stage',
    'agricultural_chat',
    'detect_disease',
    'weather_advisory',
]
