import asyncio
import json
import sys
from datetime import date
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from errors import InsufficientTokensError, MealPlanGenerationError, UpstreamAIError
from meal_plan_stream import (
    MealPlanClient,
    MealPlanGenerationStream,
    get_week_start_date,
    parse_sse_line,
    transform_edge_day,
)
from settings import Settings

SETTINGS = Settings(supabase_url="https://project.supabase.co", supabase_anon_key="anon-key")


def day_payload(day, calories=2000):
    return {
        "date": day,
        "breakfast": {"title": "Porridge", "ingredients": ["oats", "milk"], "calories_est": 400},
        "lunch": {"title": "Salade niçoise", "prep_time_min": 15, "calories_est": 650},
        "dinner": {"title": "Saumon et riz", "cook_time_min": 25, "calories_est": 750},
        "snack": {"title": "Pomme", "calories_est": 200},
        "daily_summary": "Journée équilibrée",
        "total_calories": calories,
    }


def sse(event_type, data):
    return "data: " + json.dumps({"type": event_type, "data": data})


def test_week_start_is_monday_of_reference_week():
    assert get_week_start_date(1, "2025-01-08") == date(2025, 1, 6)
    assert get_week_start_date(2, date(2025, 1, 6)) == date(2025, 1, 13)
    assert get_week_start_date(1, "2025-01-12T10:00:00Z") == date(2025, 1, 6)


def test_transform_edge_day():
    day = transform_edge_day(day_payload("2025-01-07"))

    assert day.status == "ready"
    assert day.day_name == "mardi"
    assert set(day.meals) == {"breakfast", "lunch", "dinner", "snack"}
    assert day.meals["breakfast"].ingredients == ["oats", "milk"]
    assert day.total_calories == 2000


def test_transform_edge_day_sums_calories_when_total_missing():
    payload = day_payload("2025-01-07")
    del payload["total_calories"]
    assert transform_edge_day(payload).total_calories == 2000


def test_parse_sse_line():
    assert parse_sse_line(sse("day", {"date": "2025-01-06"}))["type"] == "day"
    assert parse_sse_line("") is None
    assert parse_sse_line(": keep-alive") is None
    assert parse_sse_line("data: {broken") is None
    assert parse_sse_line('data: {"data": {}}') is None


def test_three_days_then_complete_leaves_remaining_days_loading():
    updates = []
    progress = []
    stream = MealPlanGenerationStream(
        1, date(2025, 1, 6), on_update=updates.append, on_progress=progress.append
    )

    for day in ("2025-01-06", "2025-01-07", "2025-01-08"):
        stream.feed_line(sse("day", day_payload(day)))
    stream.feed_line(sse("complete", {"id": "plan-42", "weekly_summary": "Semaine légère", "avg_calories_per_day": 2000}))

    plan = stream.finish()

    assert plan.id == "plan-42"
    assert [day.date for day in plan.days] == [
        "2025-01-06", "2025-01-07", "2025-01-08", "2025-01-09",
        "2025-01-10", "2025-01-11", "2025-01-12",
    ]
    assert [day.status for day in plan.days] == ["ready"] * 3 + ["loading"] * 4
    assert plan.weekly_summary == "Semaine légère"
    assert plan.avg_calories_per_day == 2000

    assert len(updates) == 3
    assert all(len(update.days) == 7 for update in updates)
    assert updates[0].id == "week-1-skeleton"
    assert progress == pytest.approx([80 / 7, 160 / 7, 240 / 7])


def test_stream_ending_without_complete_marks_missing_days_as_errors():
    stream = MealPlanGenerationStream(1, date(2025, 1, 6))
    stream.feed_line(sse("day", day_payload("2025-01-06")))

    plan = stream.finish()

    assert plan.days[0].status == "ready"
    assert [day.status for day in plan.days[1:]] == ["error"] * 6
    assert stream.days[1].status == "loading"


def test_stream_without_days_is_an_error():
    stream = MealPlanGenerationStream(1, date(2025, 1, 6))
    stream.feed_line(sse("complete", {}))

    with pytest.raises(MealPlanGenerationError):
        stream.finish()


def test_malformed_and_foreign_events_are_ignored():
    stream = MealPlanGenerationStream(1, date(2025, 1, 6))

    assert stream.feed_line("data: {not json") is None
    assert stream.feed_line("event: ping") is None
    assert stream.feed_line(sse("day", {"date": "yesterday"})) == "day"
    assert stream.feed_line(sse("day", day_payload("2025-02-01"))) == "day"
    assert stream.feed_line(sse("day", "not a dict")) == "day"
    assert stream.feed_line(sse("progress", {"percent": 10})) == "progress"

    assert stream.ready_count == 0
    assert len(stream.days) == 7


def test_repeated_day_replaces_earlier_one():
    stream = MealPlanGenerationStream(1, date(2025, 1, 6))
    stream.feed_line(sse("day", day_payload("2025-01-06", calories=1800)))
    stream.feed_line(sse("day", day_payload("2025-01-06", calories=2100)))

    assert stream.ready_count == 1
    assert stream.days[0].total_calories == 2100


def test_progress_is_capped():
    stream = MealPlanGenerationStream(1, date(2025, 1, 6))
    for offset in range(6, 13):
        stream.feed_line(sse("day", day_payload(f"2025-01-{offset:02d}")))
    assert stream.progress == 80
    assert stream.ready_count == 7


def sse_client(requests, body, status=200):
    def handler(request):
        requests.append(request)
        return httpx.Response(status, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_client_streams_plan_from_generator():
    requests = []
    body = "\n\n".join([
        sse("day", day_payload("2025-01-06")),
        sse("day", day_payload("2025-01-07")),
        sse("complete", {"id": "plan-7"}),
    ]) + "\n\n"
    updates = []
    progress = []

    async def scenario():
        client = MealPlanClient(SETTINGS, http_client=sse_client(requests, body))
        return await client.generate(
            "user-1",
            1,
            access_token="user-jwt",
            reference_start_date="2025-01-08",
            on_update=updates.append,
            on_progress=progress.append,
        )

    plan = asyncio.run(scenario())

    assert plan.id == "plan-7"
    assert plan.start_date == "2025-01-06"
    assert [day.status for day in plan.days][:3] == ["ready", "ready", "loading"]
    assert len(updates) == 3
    assert progress[-1] == 100.0

    request = requests[0]
    assert str(request.url) == "https://project.supabase.co/functions/v1/meal-plan-generator"
    assert request.headers["authorization"] == "Bearer user-jwt"
    payload = json.loads(request.content)
    assert payload["start_date"] == "2025-01-06"
    assert payload["end_date"] == "2025-01-12"
    assert payload["week_number"] == 1


def test_client_raises_insufficient_tokens_on_402():
    body = json.dumps({
        "error": "Insufficient tokens",
        "code": "INSUFFICIENT_TOKENS",
        "details": {"currentBalance": 10, "requiredTokens": 60, "needsUpgrade": True},
    })

    async def scenario():
        client = MealPlanClient(SETTINGS, http_client=sse_client([], body, status=402))
        with pytest.raises(InsufficientTokensError) as excinfo:
            await client.generate("user-1", 1, reference_start_date="2025-01-06")
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.status_code == 402
    assert error.current_balance == 10
    assert error.required_tokens == 60
    assert error.needs_upgrade is True


def test_client_raises_on_server_error():
    async def scenario():
        client = MealPlanClient(SETTINGS, http_client=sse_client([], "boom", status=500))
        with pytest.raises(UpstreamAIError) as excinfo:
            await client.generate("user-1", 1, reference_start_date="2025-01-06")
        return excinfo.value

    error = asyncio.run(scenario())
    assert str(error) == "HTTP error! status: 500"
    assert error.body == "boom"
