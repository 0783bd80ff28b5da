"""
Meal-plan generation stream.

The ``meal-plan-generator`` function answers with server-sent events, one
``day`` frame per generated day and a final ``complete`` frame carrying the
weekly summary. The client shows seven placeholder days immediately and
swaps each one for the real day as it arrives.
"""

import json
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import httpx

from errors import InsufficientTokensError, MealPlanGenerationError, UpstreamAIError
from settings import Settings

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
MEAL_TYPES = ("breakfast", "lunch", "dinner", "snack")
DAY_NAMES = ("lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche")

STATUS_LOADING = "loading"
STATUS_READY = "ready"
STATUS_ERROR = "error"


@dataclass
class MealSlot:
    title: str
    description: str = ""
    ingredients: List[str] = field(default_factory=list)
    prep_time_min: float = 0
    cook_time_min: float = 0
    calories_est: float = 0

    @classmethod
    def from_edge(cls, data: Dict[str, Any]) -> "MealSlot":
        return cls(
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
            ingredients=list(data.get("ingredients") or []),
            prep_time_min=_number(data.get("prep_time_min")),
            cook_time_min=_number(data.get("cook_time_min")),
            calories_est=_number(data.get("calories_est")),
        )


@dataclass
class MealPlanDay:
    date: str
    day_name: str
    status: str = STATUS_LOADING
    meals: Dict[str, MealSlot] = field(default_factory=dict)
    daily_summary: str = ""
    total_calories: float = 0


@dataclass
class MealPlan:
    id: str
    week_number: int
    start_date: str
    days: List[MealPlanDay]
    created_at: str
    updated_at: str
    nutritional_summary: Optional[Any] = None
    estimated_weekly_cost: Optional[float] = None
    batch_cooking_days: List[str] = field(default_factory=list)
    ai_explanation: Optional[Dict[str, Any]] = None
    weekly_summary: Optional[str] = None
    nutritional_highlights: List[str] = field(default_factory=list)
    shopping_optimization: Optional[str] = None
    avg_calories_per_day: Optional[float] = None


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def day_name(day: date) -> str:
    return DAY_NAMES[day.weekday()]


def get_week_start_date(week_number: int, reference_start_date: Optional[Union[str, date]] = None) -> date:
    """
    Monday of the requested plan week.

    Week 1 is the week containing `reference_start_date` (today when not
    given); later weeks follow on.
    """
    if reference_start_date is None:
        reference = date.today()
    elif isinstance(reference_start_date, str):
        reference = date.fromisoformat(reference_start_date[:10])
    else:
        reference = reference_start_date
    monday = reference - timedelta(days=reference.weekday())
    return monday + timedelta(weeks=max(week_number, 1) - 1)


def create_skeleton_day(day: date) -> MealPlanDay:
    return MealPlanDay(date=day.isoformat(), day_name=day_name(day), status=STATUS_LOADING)


def transform_edge_day(data: Dict[str, Any]) -> MealPlanDay:
    """Turn a generator ``day`` payload into a ready `MealPlanDay`."""
    raw_date = str(data.get("date") or "")[:10]
    parsed = date.fromisoformat(raw_date)

    meals = {}
    for meal_type in MEAL_TYPES:
        meal = data.get(meal_type)
        if isinstance(meal, dict):
            meals[meal_type] = MealSlot.from_edge(meal)

    total = _number(data.get("total_calories"))
    if not total:
        total = sum(meal.calories_est for meal in meals.values())

    return MealPlanDay(
        date=parsed.isoformat(),
        day_name=day_name(parsed),
        status=STATUS_READY,
        meals=meals,
        daily_summary=str(data.get("daily_summary") or ""),
        total_calories=total,
    )


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one ``data: {...}`` line. Anything else, or bad JSON, gives None."""
    if not line.startswith("data: "):
        return None
    try:
        event = json.loads(line[len("data: "):])
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse SSE data: {e} line={line[:200]!r}")
        return None
    if not isinstance(event, dict) or "type" not in event:
        logger.warning(f"Ignoring SSE event without a type: {line[:200]!r}")
        return None
    return event


class MealPlanGenerationStream:
    """
    Accumulates ``day`` events for one week.

    `days` always has seven entries in date order; slots without a real day
    keep their placeholder.
    """

    def __init__(
        self,
        week_number: int,
        start_date: date,
        on_update: Optional[Callable[[MealPlan], Any]] = None,
        on_progress: Optional[Callable[[float], Any]] = None,
    ):
        self.week_number = week_number
        self.start_date = start_date
        self.on_update = on_update
        self.on_progress = on_progress

        self.skeleton_days = [
            create_skeleton_day(start_date + timedelta(days=offset))
            for offset in range(DAYS_PER_WEEK)
        ]
        self._received: Dict[str, MealPlanDay] = {}
        self.plan_id = f"week-{week_number}-{int(time.time() * 1000)}"
        self.summary: Dict[str, Any] = {}
        self.completed = False
        self.created_at = _now()

    @property
    def days(self) -> List[MealPlanDay]:
        return [self._received.get(day.date, day) for day in self.skeleton_days]

    @property
    def ready_count(self) -> int:
        return sum(1 for day in self._received.values() if day.status == STATUS_READY)

    @property
    def progress(self) -> float:
        return min(90.0, self.ready_count / DAYS_PER_WEEK * 80)

    def feed_line(self, line: str) -> Optional[str]:
        """Apply one raw SSE line. Returns the event type it carried, if any."""
        event = parse_sse_line(line)
        if event is None:
            return None
        self.apply(event)
        return event["type"]

    def apply(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        data = event.get("data")
        if not isinstance(data, dict):
            data = {}

        if event_type == "day":
            try:
                day = transform_edge_day(data)
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed day event: {e}")
                return

            if day.date not in {slot.date for slot in self.skeleton_days}:
                logger.warning(f"Ignoring day {day.date} outside week starting {self.start_date}")
                return

            self._received[day.date] = day
            logger.info(
                f"Meal plan day received: {day.date} ({day.day_name}), "
                f"{self.ready_count}/{DAYS_PER_WEEK} ready"
            )
            if self.on_update:
                self.on_update(self.snapshot())
            if self.on_progress:
                self.on_progress(self.progress)

        elif event_type == "complete":
            self.summary = dict(data)
            self.plan_id = data.get("id") or self.plan_id
            self.completed = True
            logger.info(f"Meal plan generation complete for week {self.week_number}")

        else:
            logger.debug(f"Ignoring SSE event type {event_type}")

    def snapshot(self) -> MealPlan:
        plan_id = self.plan_id if self.completed else f"week-{self.week_number}-skeleton"
        return self._build(plan_id, self.days)

    def finish(self) -> MealPlan:
        """
        Close out the week.

        Raises MealPlanGenerationError when no day arrived at all. If the
        stream ended without ``complete``, unfilled slots are marked as
        errors rather than left loading.
        """
        if self.ready_count == 0:
            raise MealPlanGenerationError("No meal plan days received from generation")

        days = self.days
        if not self.completed:
            missing = [day.date for day in days if day.status == STATUS_LOADING]
            if missing:
                logger.warning(f"Stream ended without completion, days missing: {missing}")
            days = [
                replace(day, status=STATUS_ERROR) if day.status == STATUS_LOADING else day
                for day in days
            ]

        plan = self._build(self.plan_id, days)
        logger.info(f"Meal plan {plan.id} ready with {self.ready_count} generated days")
        return plan

    def _build(self, plan_id: str, days: List[MealPlanDay]) -> MealPlan:
        summary = self.summary
        return MealPlan(
            id=plan_id,
            week_number=self.week_number,
            start_date=self.start_date.isoformat(),
            days=days,
            created_at=self.created_at,
            updated_at=_now(),
            nutritional_summary=summary.get("nutritional_summary"),
            estimated_weekly_cost=summary.get("estimated_weekly_cost"),
            batch_cooking_days=list(summary.get("batch_cooking_days") or []),
            ai_explanation=summary.get("ai_explanation"),
            weekly_summary=summary.get("weekly_summary"),
            nutritional_highlights=list(summary.get("nutritional_highlights") or []),
            shopping_optimization=summary.get("shopping_optimization"),
            avg_calories_per_day=summary.get("avg_calories_per_day"),
        )


class MealPlanClient:
    """Calls ``meal-plan-generator`` and consumes its event stream."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = http_client

    def _headers(self, access_token: Optional[str]) -> Dict[str, str]:
        token = access_token or self.settings.supabase_anon_key or ""
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if self.settings.supabase_anon_key:
            headers["apikey"] = self.settings.supabase_anon_key
        return headers

    async def stream_lines(self, payload: Dict[str, Any], access_token: Optional[str] = None) -> AsyncIterator[str]:
        if self._client is not None:
            async for line in self._stream(self._client, payload, access_token):
                yield line
            return
        async with httpx.AsyncClient(timeout=None) as client:
            async for line in self._stream(client, payload, access_token):
                yield line

    async def _stream(self, client: httpx.AsyncClient, payload, access_token) -> AsyncIterator[str]:
        async with client.stream(
            "POST",
            self.settings.function_url("meal-plan-generator"),
            headers=self._headers(access_token),
            json=payload,
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise _upstream_error(response.status_code, body)
            async for line in response.aiter_lines():
                yield line

    async def generate(
        self,
        user_id: str,
        week_number: int,
        access_token: Optional[str] = None,
        inventory_count: int = 0,
        has_preferences: bool = True,
        reference_start_date: Optional[Union[str, date]] = None,
        on_update: Optional[Callable[[MealPlan], Any]] = None,
        on_progress: Optional[Callable[[float], Any]] = None,
    ) -> MealPlan:
        start = get_week_start_date(week_number, reference_start_date)
        stream = MealPlanGenerationStream(week_number, start, on_update=on_update, on_progress=on_progress)
        if on_update:
            on_update(stream.snapshot())

        payload = {
            "user_id": user_id,
            "week_number": week_number,
            "start_date": start.isoformat(),
            "end_date": (start + timedelta(days=DAYS_PER_WEEK - 1)).isoformat(),
            "inventory_count": inventory_count,
            "has_preferences": has_preferences,
        }
        logger.info(f"Requesting meal plan for week {week_number} starting {start} (user={user_id})")

        try:
            async for line in self.stream_lines(payload, access_token):
                stream.feed_line(line)
        except httpx.HTTPError as e:
            logger.error(f"Meal plan stream failed for week {week_number}: {e}")
            raise UpstreamAIError(f"Meal plan stream failed: {e}", status_code=0) from e

        plan = stream.finish()
        if on_progress:
            on_progress(100.0)
        return plan


def _upstream_error(status_code: int, body: str) -> UpstreamAIError:
    if status_code == 402:
        try:
            details = json.loads(body).get("details")
        except (ValueError, AttributeError):
            details = None
        logger.warning(f"Meal plan generation refused: insufficient tokens ({details})")
        return InsufficientTokensError(details, body=body)
    logger.error(f"Meal plan generator returned {status_code}: {body[:500]}")
    return UpstreamAIError(f"HTTP error! status: {status_code}", status_code=status_code, body=body)
