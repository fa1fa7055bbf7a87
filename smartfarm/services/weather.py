"""Synthetic forecast source and farmer-facing weather summaries."""
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

# Three-day synthetic outlook: (temp C, rainfall mm, conditions)
_STUB_OUTLOOK = [
    (26, 10, "light rain"),
    (24, 40, "moderate rain"),
    (27, 5, "mostly sunny"),
]


def _coords(location: Any) -> tuple:
    if isinstance(location, dict):
        lat = location.get("lat", location.get("latitude"))
        lon = location.get("lon", location.get("lng", location.get("longitude")))
    else:
        lat = getattr(location, "lat", None)
        lon = getattr(location, "lon", None)
    if lat is None or lon is None:
        raise ValueError("location requires lat and lng/lon")
    return float(lat), float(lon)


async def fetch_weather(location: Any, today: Optional[date] = None) -> Dict[str, Any]:
    """Return a stubbed forecast for `location`.

    No live provider is wired in; the shape mirrors what a provider adapter
    would normalise to: a `current` block and a short daily `forecast`.
    """
    lat, lon = _coords(location)
    start = today or date.today()
    return {
        "location": {"lat": lat, "lon": lon},
        "current": {
            "temperature": 25,
            "humidity": 70,
            "conditions": "partly cloudy",
            "rainfall": 0,
        },
        "forecast": [
            {
                "date": (start + timedelta(days=i + 1)).isoformat(),
                "temp": temp,
                "rainfall": rain,
                "conditions": cond,
            }
            for i, (temp, rain, cond) in enumerate(_STUB_OUTLOOK)
        ],
    }


def format_weather_summary(data: Dict[str, Any]) -> str:
    current = data.get("current") or {}
    days = "; ".join(
        f"{d.get('date')}: {d.get('temp')}°C, {d.get('rainfall')}mm rain"
        for d in data.get("forecast") or []
    )
    return (
        f"Current: {current.get('temperature')}°C, {current.get('conditions')}. "
        f"Next {len(data.get('forecast') or [])} days: {days}"
    )


def forecast_risks(data: Dict[str, Any], activity: Optional[str] = None) -> List[str]:
    """Simple rule-based risks, used when the model names none."""
    risks = []
    for d in data.get("forecast") or []:
        temp = d.get("temp")
        rain = d.get("rainfall") or 0
        if temp is not None and temp >= 40:
            risks.append(f"{d.get('date')}: high temperatures - plan for heat stress and irrigation.")
        if temp is not None and temp <= 2:
            risks.append(f"{d.get('date')}: frost risk - protect sensitive crops.")
        if rain >= 30:
            risks.append(f"{d.get('date')}: heavy rain ({rain}mm) - secure seedlings and improve drainage.")
    if activity in ("spraying", "fertilizing") and any((d.get("rainfall") or 0) >= 10 for d in data.get("forecast") or []):
        risks.append(f"Rain soon after {activity} may wash the application off; pick a dry window.")
    return risks
