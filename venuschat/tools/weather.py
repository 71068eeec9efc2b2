"""
Weather tool: simulated weather data.

Returns a fixed-shape report (location, temperature, condition, humidity) so
the tool-calling path can be demonstrated and tested without an external API.
"""

from __future__ import annotations

import random
from typing import Any

from pydantic import BaseModel, Field

from venuschat.tools.base import Tool


class WeatherInput(BaseModel):
    location: str = Field(
        min_length=1,
        description="The city or location name to get weather for. Use the SAME "
                    "LANGUAGE as the user's question.",
    )


class WeatherTool(Tool):
    name = "weather"
    description = (
        "Get the current weather information for a specific location. Use this tool "
        "when the user asks about weather conditions, temperature, or weather forecasts. "
        "Think about what location information you have or need before calling this tool."
    )
    input_model = WeatherInput

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    async def _run(self, params: WeatherInput) -> dict[str, Any]:
        return {
            "location": params.location,
            "temperature": 72 + self._rng.randint(-10, 10),
            "condition": "sunny",
            "humidity": 60 + self._rng.randint(0, 19),
        }
