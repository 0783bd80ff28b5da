"""
Meal-plan generator.

Builds a week of meals with the chat-completions API and streams it back
as server-sent events: one ``day`` frame per day, then ``complete`` with
the weekly summary. The generated plan is also saved to ``meal_plans``.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from errors import MealPlanGenerationError, UpstreamAIError
from settings import Settings
from token_middleware import TokenLedger, with_token_consumption

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-mini"
MAX_PROMPT_LENGTH = 100000

JSON_BLOCK = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)

SUMMARY_FIELDS = (
    "weekly_summary",
    "nutritional_highlights",
    "shopping_optimization",
    "avg_calories_per_day",
    "ai_explanation",
)


class MealPlanRequest(BaseModel):
    user_id: str
    session_id: Optional[str] = None
    week_number: int = 1
    start_date: str
    end_date: Optional[str] = None
    inventory_count: int = 0
    has_preferences: bool = False


def extract_json_from_response(content: str) -> str:
    """Pull the JSON document out of a model reply (fenced block or outer braces)."""
    match = JSON_BLOCK.search(content)
    if match and match.group(1):
        return match.group(1).strip()

    first = content.find("{")
    last = content.rfind("}")
    if first == -1 or last == -1 or first >= last:
        raise MealPlanGenerationError(
            f"No valid JSON boundaries found in OpenAI response. "
            f"First brace at: {first}, Last brace at: {last}"
        )
    return content[first:last + 1]


def truncate_prompt(prompt: str, max_length: int = MAX_PROMPT_LENGTH) -> str:
    if len(prompt) <= max_length:
        return prompt
    logger.info(f"Prompt too long ({len(prompt)} chars), truncating to {max_length}")
    return prompt[:max_length] + "\n\n[TRUNCATED DUE TO LENGTH]"


def build_prompt(profile: Dict[str, Any], inventory: List[Any], week_number: int, start_date: str) -> str:
    return (
        f"Create a 7-day meal plan for week {week_number} starting {start_date}.\n"
        f"User profile:\n{json.dumps(profile, indent=2, default=str)}\n"
        f"Available inventory:\n{json.dumps(inventory, indent=2, default=str)}\n\n"
        "Reply with JSON only, shaped as:\n"
        '{"week_number": int, "start_date": "YYYY-MM-DD", "days": [{"date": "YYYY-MM-DD", '
        '"breakfast": meal, "lunch": meal, "dinner": meal, "snack": meal (optional), '
        '"daily_summary": str, "total_calories": number}], "weekly_summary": str, '
        '"nutritional_highlights": [str], "shopping_optimization": str, '
        '"avg_calories_per_day": number, "ai_explanation": {...}}\n'
        'where meal is {"title": str, "description": str, "ingredients": [str], '
        '"prep_time_min": number, "cook_time_min": number, "calories_est": number}. '
        "All numeric fields must be plain numbers without units."
    )


def encode_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def plan_events(plan: Dict[str, Any]) -> Iterator[str]:
    for day in plan.get("days") or []:
        yield encode_sse({"type": "day", "data": day})
    yield encode_sse({
        "type": "complete",
        "data": {name: plan.get(name) for name in SUMMARY_FIELDS},
    })


class MealPlanGenerator:
    """
    Meal-plan generation endpoint.

    Usage:
        generator = MealPlanGenerator(Settings.from_env())
        generator.mount(app, prefix="/functions/v1/meal-plan-generator")
    """

    def __init__(
        self,
        settings: Settings,
        ledger: Optional[TokenLedger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        model: str = DEFAULT_MODEL,
    ):
        self.settings = settings
        self.ledger = ledger or TokenLedger(settings)
        self.model = model
        self._client = http_client

    def mount(self, app: FastAPI, prefix: str = "/functions/v1/meal-plan-generator"):
        @app.post(prefix)
        async def generate_meal_plan(request: MealPlanRequest):
            return await self.handle(request)

    async def _request(self, method: str, url: str, timeout: float = 30.0, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, timeout=timeout, **kwargs)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.request(method, url, **kwargs)

    async def handle(self, request: MealPlanRequest):
        logger.info(
            f"Meal plan requested: user={request.user_id} week={request.week_number} "
            f"start={request.start_date} inventory={request.inventory_count}"
        )
        try:
            profile = await self.fetch_profile(request.user_id)
            inventory = await self.fetch_inventory(request.user_id)

            async def generate():
                return await self.generate_with_ai(profile, inventory, request.week_number, request.start_date)

            result = await with_token_consumption(
                self.ledger,
                request.user_id,
                "meal-plan-generator",
                "chat-completion",
                generate,
                openai_model=self.model,
                metadata={"week_number": request.week_number},
            )
            if isinstance(result, JSONResponse):
                return result

            await self.save_plan(request, result)
        except (UpstreamAIError, MealPlanGenerationError, httpx.HTTPError) as e:
            logger.error(f"Meal plan generation error for {request.user_id}: {e}")
            return JSONResponse(
                status_code=500,
                content={"error": "Failed to generate meal plan", "details": str(e)},
            )

        return StreamingResponse(
            plan_events(result),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    async def fetch_profile(self, user_id: str) -> Dict[str, Any]:
        response = await self._request(
            "GET",
            self.settings.rest_url("user_profile"),
            params={"user_id": f"eq.{user_id}"},
            headers=self.settings.service_headers(),
        )
        if response.status_code >= 400:
            logger.warning(f"Profile lookup failed for {user_id}: {response.status_code}")
            return {}
        profiles = response.json()
        return profiles[0] if profiles else {}

    async def fetch_inventory(self, user_id: str) -> List[Any]:
        response = await self._request(
            "GET",
            self.settings.rest_url("recipe_sessions"),
            params={"user_id": f"eq.{user_id}", "order": "created_at.desc", "limit": "1"},
            headers=self.settings.service_headers(),
        )
        if response.status_code >= 400:
            logger.warning(f"Inventory lookup failed for {user_id}: {response.status_code}")
            return []
        sessions = response.json()
        if not sessions:
            return []
        return sessions[0].get("inventory_final") or []

    async def generate_with_ai(
        self,
        profile: Dict[str, Any],
        inventory: List[Any],
        week_number: int,
        start_date: str,
    ) -> Dict[str, Any]:
        prompt = truncate_prompt(build_prompt(profile, inventory, week_number, start_date))
        logger.info(
            f"Calling {self.model} for week {week_number} "
            f"(prompt={len(prompt)} chars, inventory={len(inventory)})"
        )

        response = await self._request(
            "POST",
            f"{self.settings.openai_base_url}/chat/completions",
            timeout=120.0,
            headers={
                "Authorization": f"Bearer {self.settings.openai_api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "max_completion_tokens": 15000,
                "reasoning_effort": "low",
                "verbosity": "low",
            },
        )
        if response.status_code >= 400:
            logger.error(f"OpenAI API error {response.status_code}: {response.text[:1000]}")
            raise UpstreamAIError(
                f"OpenAI API error: {response.status_code}\nDetails: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        data = response.json()
        choices = data.get("choices") or []
        content = choices[0].get("message", {}).get("content") if choices else None
        if not content:
            raise MealPlanGenerationError("No content received from OpenAI")

        try:
            plan = json.loads(extract_json_from_response(content))
        except json.JSONDecodeError as e:
            logger.error(f"JSON parsing error: {e} content={content[:1000]!r}")
            raise MealPlanGenerationError(f"Failed to parse OpenAI response as JSON: {e}") from e

        logger.info(
            f"Meal plan generated: {len(plan.get('days') or [])} days, "
            f"avg {plan.get('avg_calories_per_day')} kcal/day, usage={data.get('usage')}"
        )
        return plan

    async def save_plan(self, request: MealPlanRequest, plan: Dict[str, Any]) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        response = await self._request(
            "POST",
            self.settings.rest_url("meal_plans"),
            headers=self.settings.service_headers(),
            json={
                "user_id": request.user_id,
                "session_id": request.session_id,
                "plan_data": plan,
                "created_at": now,
                "updated_at": now,
            },
        )
        if response.status_code >= 400:
            logger.error(f"Failed to save meal plan for {request.user_id}: {response.text}")
            return False
        logger.info(f"Meal plan saved for {request.user_id}")
        return True
