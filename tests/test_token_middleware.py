import asyncio
import json
import sys
from pathlib import Path

import httpx

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from settings import Settings
from token_middleware import (
    TokenCheckResult,
    TokenConsumptionRequest,
    TokenLedger,
    calculate_openai_cost,
    convert_usd_to_tokens,
    insufficient_tokens_body,
    tokens_for_request,
    with_token_consumption,
)

SETTINGS = Settings(
    supabase_url="https://project.supabase.co",
    supabase_service_role_key="service-key",
)


class DummyPostgrest:
    """Routes PostgREST calls by table and records them."""

    def __init__(self, balance=500, subscription="active", missing_balance=False, consume_status=200):
        self.balance = balance
        self.subscription = subscription
        self.missing_balance = missing_balance
        self.consume_status = consume_status
        self.calls = []

    def __call__(self, request):
        path = request.url.path.replace("/rest/v1/", "")
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, body))

        if path == "user_token_balance" and request.method == "GET":
            if self.missing_balance:
                return httpx.Response(406, json={"code": "PGRST116", "message": "0 rows"})
            return httpx.Response(200, json={"balance": self.balance, "user_id": "user-1"})
        if path == "user_token_balance" and request.method == "POST":
            return httpx.Response(201)
        if path == "user_subscriptions":
            if self.subscription is None:
                return httpx.Response(406, json={"code": "PGRST116", "message": "0 rows"})
            return httpx.Response(200, json={"status": self.subscription})
        if path == "rpc/consume_tokens":
            if self.consume_status >= 400:
                return httpx.Response(self.consume_status, json={"message": "balance locked"})
            return httpx.Response(200, json={"success": True, "new_balance": self.balance - body["p_token_amount"]})
        if path == "rpc/add_tokens":
            return httpx.Response(200, json={"success": True, "new_balance": self.balance + body["p_token_amount"]})
        return httpx.Response(404)


def make_ledger(postgrest):
    return TokenLedger(SETTINGS, http_client=httpx.AsyncClient(transport=httpx.MockTransport(postgrest)))


def test_cost_calculation():
    assert calculate_openai_cost("gpt-4o", 1_000_000, 1_000_000) == 12.5
    assert calculate_openai_cost("gpt-4o-realtime-preview", audio_tokens=10_000) == 1.0
    assert calculate_openai_cost("dall-e-3", 100, 100) == 0.0
    assert calculate_openai_cost("unknown-model", 100, 100) == 0.0


def test_usd_conversion_rounds_up():
    assert convert_usd_to_tokens(0.3) == 300
    assert convert_usd_to_tokens(0.0001) == 1
    assert convert_usd_to_tokens(0) == 0


def test_tokens_for_request():
    exact = TokenConsumptionRequest(
        user_id="user-1",
        edge_function_name="meal-plan-generator",
        operation_type="chat-completion",
        openai_model="gpt-5-mini",
        openai_input_tokens=10_000,
        openai_output_tokens=5_000,
    )
    assert tokens_for_request(exact)[0] == 5

    priced = TokenConsumptionRequest("user-1", "image", "image-generation", openai_cost_usd=0.04)
    assert tokens_for_request(priced) == (40, 0.04)

    assert tokens_for_request(TokenConsumptionRequest("user-1", "voice", "voice-realtime"))[0] == 100
    assert tokens_for_request(TokenConsumptionRequest("user-1", "x", "something-new"))[0] == 50


def test_insufficient_tokens_body():
    body = insufficient_tokens_body(10, 100, True)
    assert body["code"] == "INSUFFICIENT_TOKENS"
    assert body["details"]["currentBalance"] == 10
    assert body["details"]["requiredTokens"] == 100
    assert body["details"]["needsUpgrade"] is True
    assert "subscription" in body["details"]["message"]

    assert "run out of tokens" in insufficient_tokens_body(0, 5, False)["details"]["message"]


def test_check_balance_with_subscription():
    postgrest = DummyPostgrest(balance=500)
    result = asyncio.run(make_ledger(postgrest).check_token_balance("user-1", 100))

    assert result.has_enough_tokens is True
    assert result.current_balance == 500
    assert result.is_subscribed is True
    assert result.subscription_status == "active"
    assert [call[1] for call in postgrest.calls] == ["user_token_balance", "user_subscriptions"]


def test_check_balance_without_subscription_row():
    postgrest = DummyPostgrest(balance=50, subscription=None)
    result = asyncio.run(make_ledger(postgrest).check_token_balance("user-1", 100))

    assert result.has_enough_tokens is False
    assert result.is_subscribed is False
    assert result.subscription_status is None


def test_missing_balance_row_is_created_at_zero():
    postgrest = DummyPostgrest(missing_balance=True)
    result = asyncio.run(make_ledger(postgrest).check_token_balance("user-1", 10))

    assert result.has_enough_tokens is False
    assert result.current_balance == 0
    assert result.error is None
    method, path, body = postgrest.calls[-1]
    assert (method, path) == ("POST", "user_token_balance")
    assert body["balance"] == 0
    assert body["user_id"] == "user-1"


def test_consume_tokens_calls_rpc():
    postgrest = DummyPostgrest(balance=500)
    result = asyncio.run(make_ledger(postgrest).consume_tokens(TokenConsumptionRequest(
        user_id="user-1",
        edge_function_name="voice-coach-realtime",
        operation_type="voice-realtime",
        metadata={"session": "s1"},
    )))

    assert result.success is True
    assert result.consumed == 100
    assert result.remaining_balance == 400

    method, path, body = postgrest.calls[-1]
    assert path == "rpc/consume_tokens"
    assert body["p_token_amount"] == 100
    assert body["p_edge_function_name"] == "voice-coach-realtime"
    assert body["p_metadata"] == {"session": "s1"}


def test_consume_tokens_refuses_when_balance_short():
    postgrest = DummyPostgrest(balance=20, subscription="canceled")
    result = asyncio.run(make_ledger(postgrest).consume_tokens(
        TokenConsumptionRequest("user-1", "voice-coach-realtime", "voice-realtime")
    ))

    assert result.success is False
    assert result.consumed == 0
    assert result.needs_upgrade is True
    assert "rpc/consume_tokens" not in [call[1] for call in postgrest.calls]


def test_consume_tokens_reports_rpc_failure():
    postgrest = DummyPostgrest(balance=500, consume_status=500)
    result = asyncio.run(make_ledger(postgrest).consume_tokens(
        TokenConsumptionRequest("user-1", "voice-coach-realtime", "voice-realtime")
    ))

    assert result.success is False
    assert result.error == "balance locked"


def test_add_tokens():
    postgrest = DummyPostgrest(balance=100)
    result = asyncio.run(make_ledger(postgrest).add_tokens("user-1", 1000, "purchase"))

    assert result.success is True
    assert result.remaining_balance == 1100
    assert postgrest.calls[-1][2]["p_source"] == "purchase"


class DummyLedger:
    def __init__(self, balance, subscribed=False):
        self.balance = balance
        self.subscribed = subscribed
        self.consumed = []

    async def check_token_balance(self, user_id, required_tokens):
        return TokenCheckResult(
            has_enough_tokens=self.balance >= required_tokens,
            current_balance=self.balance,
            required_tokens=required_tokens,
            is_subscribed=self.subscribed,
        )

    async def consume_tokens(self, request):
        self.consumed.append(request)


def test_with_token_consumption_returns_402_without_running_operation():
    ledger = DummyLedger(balance=10)
    ran = []

    async def operation():
        ran.append(True)
        return "result"

    response = asyncio.run(with_token_consumption(ledger, "user-1", "fn", "chat-completion", operation))

    assert response.status_code == 402
    body = json.loads(response.body)
    assert body["details"]["requiredTokens"] == 50
    assert body["details"]["needsUpgrade"] is True
    assert ran == []
    assert ledger.consumed == []


def test_with_token_consumption_charges_after_success():
    ledger = DummyLedger(balance=1000, subscribed=True)

    async def operation():
        return {"days": []}

    result = asyncio.run(with_token_consumption(
        ledger, "user-1", "meal-plan-generator", "chat-completion", operation,
        openai_model="gpt-5-mini", metadata={"week_number": 2},
    ))

    assert result == {"days": []}
    assert len(ledger.consumed) == 1
    assert ledger.consumed[0].edge_function_name == "meal-plan-generator"
    assert ledger.consumed[0].metadata == {"week_number": 2}
