"""
Meal plan generation.

Stateless call to the chat-completions service: structured request in,
{day: {meal: description}} out. Malformed model output is a distinct,
recoverable error (GenerationParseError); the caller decides whether to
try again.
"""
import json
import re
from typing import Any, Dict, Optional

import groq
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mealplan.core.errors import GenerationParseError, ProviderError, TransientProviderError
from mealplan.core.logging import log_event
from mealplan.features.mealplans.prompts import SYSTEM_PROMPT, build_meal_plan_prompt

FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

MealPlan = Dict[str, Dict[str, str]]


class MealPlanRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    diet_type: str = Field(min_length=1, max_length=100)
    calories: int = Field(gt=0, le=10000)
    allergies: Optional[str] = Field(default=None, max_length=500)
    cuisine: Optional[str] = Field(default=None, max_length=100)
    snacks: bool = False
    days: int = Field(default=7, ge=1, le=14)


def parse_meal_plan(content: Optional[str]) -> MealPlan:
    """Decode model output into a meal plan, tolerating Markdown code fences."""
    cleaned = FENCE_RE.sub("", content or "").strip()
    try:
        parsed: Any = json.loads(cleaned)
    except ValueError:
        raise GenerationParseError("Failed to parse meal plan, please try again")
    if not isinstance(parsed, dict) or not parsed:
        raise GenerationParseError("Invalid meal plan format, please try again")
    for day, meals in parsed.items():
        if not isinstance(meals, dict):
            raise GenerationParseError(f"Invalid meal plan format for {day}, please try again")
    return {
        str(day): {str(meal): str(text) for meal, text in meals.items()}
        for day, meals in parsed.items()
    }


class MealPlanGenerator:
    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str,
        base_url: Optional[str] = None,
        timeout_seconds: int = 60,
        client: Optional[Any] = None,
    ):
        self.model = model
        if client is not None:
            self._client = client
        elif api_key:
            self._client = groq.Groq(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_seconds,
                max_retries=0,
            )
        else:
            self._client = None

    def generate(self, request: MealPlanRequest, *, user_id: Optional[str] = None) -> MealPlan:
        if self._client is None:
            raise ProviderError("GROQ_API_KEY not configured", code="generation_disabled")

        prompt = build_meal_plan_prompt(
            diet_type=request.diet_type,
            calories=request.calories,
            allergies=request.allergies,
            cuisine=request.cuisine,
            snacks=request.snacks,
            days=request.days,
        )
        try:
            completion = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                max_tokens=1500,
            )
        except (groq.APIConnectionError, groq.RateLimitError, groq.InternalServerError) as e:
            raise TransientProviderError(f"Meal plan generation failed: {e}")
        except groq.APIError as e:
            raise ProviderError(f"Meal plan generation failed: {e}")

        content = completion.choices[0].message.content if completion.choices else None
        try:
            plan = parse_meal_plan(content)
        except GenerationParseError as e:
            log_event(
                "warning",
                "mealplan.parse_failed",
                user_id=user_id,
                error_code=e.code,
                extra={"content": content},
            )
            raise

        log_event("info", "mealplan.generated", user_id=user_id, extra={"days": len(plan)})
        return plan
