"""
Token balance checks and consumption for AI-calling endpoints.

Balances live in Postgres behind PostgREST (``user_token_balance``,
``user_subscriptions`` and the ``consume_tokens`` / ``add_tokens``
functions). Every endpoint that spends OpenAI money checks the balance
first and answers HTTP 402 with a structured body when it is too low.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar, Union

import httpx
from fastapi.responses import JSONResponse

from settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# USD per 1M tokens, or flat prices for image/audio models
OPENAI_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o": {"input_cost_per_1m": 2.50, "output_cost_per_1m": 10.00},
    "gpt-5-mini": {"input_cost_per_1m": 0.15, "output_cost_per_1m": 0.60},
    "gpt-4o-mini": {"input_cost_per_1m": 0.15, "output_cost_per_1m": 0.60},
    "dall-e-3": {"standard": 0.040, "hd": 0.080},
    "whisper-1": {"per_minute": 0.006},
    "gpt-4o-realtime-preview": {
        "input_cost_per_1m": 5.00,
        "output_cost_per_1m": 20.00,
        "audio_cost_per_1m": 100.00,
    },
}

TOKEN_USD_RATE = 0.001

ESTIMATED_COSTS: Dict[str, int] = {
    "image-generation": 80,
    "audio-transcription": 10,
    "voice-realtime": 100,
    "chat-completion": 20,
    "body-scan-analysis": 150,
    "meal-analysis": 100,
    "training-analysis": 120,
}
DEFAULT_ESTIMATED_COST = 50

NO_ROWS_CODE = "PGRST116"


def calculate_openai_cost(
    model: str,
    input_tokens: Optional[int] = None,
    output_tokens: Optional[int] = None,
    audio_tokens: Optional[int] = None,
) -> float:
    """USD cost of one call; 0 for models without per-token pricing."""
    pricing = OPENAI_PRICING.get(model)
    if not pricing:
        return 0.0

    total = 0.0
    if "input_cost_per_1m" in pricing and input_tokens:
        total += input_tokens / 1_000_000 * pricing["input_cost_per_1m"]
    if "output_cost_per_1m" in pricing and output_tokens:
        total += output_tokens / 1_000_000 * pricing["output_cost_per_1m"]
    if "audio_cost_per_1m" in pricing and audio_tokens:
        total += audio_tokens / 1_000_000 * pricing["audio_cost_per_1m"]
    return total


def convert_usd_to_tokens(usd_amount: float) -> int:
    # round() first so float noise (0.3/0.001 == 299.99999999999994) doesn't lose a token
    return math.ceil(round(usd_amount / TOKEN_USD_RATE, 9))


@dataclass
class TokenCheckResult:
    has_enough_tokens: bool
    current_balance: int
    required_tokens: int
    is_subscribed: bool
    subscription_status: Optional[str] = None
    error: Optional[str] = None


@dataclass
class TokenConsumptionRequest:
    user_id: str
    edge_function_name: str
    operation_type: str
    openai_model: Optional[str] = None
    openai_input_tokens: Optional[int] = None
    openai_output_tokens: Optional[int] = None
    openai_cost_usd: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenConsumptionResult:
    success: bool
    remaining_balance: int
    consumed: int
    error: Optional[str] = None
    needs_upgrade: Optional[bool] = None


def tokens_for_request(request: TokenConsumptionRequest) -> Tuple[int, float]:
    """Tokens to charge and the USD cost they stand for."""
    cost_usd = request.openai_cost_usd or 0.0
    if request.openai_model and (request.openai_input_tokens or request.openai_output_tokens):
        cost_usd = calculate_openai_cost(
            request.openai_model,
            request.openai_input_tokens,
            request.openai_output_tokens,
        )
        return convert_usd_to_tokens(cost_usd), cost_usd
    if request.openai_cost_usd:
        return convert_usd_to_tokens(request.openai_cost_usd), cost_usd
    return ESTIMATED_COSTS.get(request.operation_type, DEFAULT_ESTIMATED_COST), cost_usd


def insufficient_tokens_body(balance: int, required: int, needs_upgrade: bool) -> Dict[str, Any]:
    if needs_upgrade:
        message = "You need a subscription to continue using AI features."
    else:
        message = "You have run out of tokens. Please purchase more tokens or upgrade your subscription."
    return {
        "error": "Insufficient tokens",
        "code": "INSUFFICIENT_TOKENS",
        "details": {
            "currentBalance": balance,
            "requiredTokens": required,
            "needsUpgrade": needs_upgrade,
            "message": message,
        },
    }


def insufficient_tokens_response(balance: int, required: int, needs_upgrade: bool) -> JSONResponse:
    return JSONResponse(
        status_code=402,
        content=insufficient_tokens_body(balance, required, needs_upgrade),
    )


class TokenLedger:
    """Reads and moves token balances through PostgREST with the service key."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.settings = settings
        self.timeout = timeout
        self._client = http_client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {**self.settings.service_headers(), **kwargs.pop("headers", {})}
        url = self.settings.rest_url(path)
        if self._client is not None:
            return await self._client.request(method, url, headers=headers, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, headers=headers, **kwargs)

    async def _select_single(self, table: str, columns: str, user_id: str) -> httpx.Response:
        return await self._request(
            "GET",
            table,
            params={"select": columns, "user_id": f"eq.{user_id}"},
            headers={"Accept": "application/vnd.pgrst.object+json"},
        )

    async def check_token_balance(self, user_id: str, required_tokens: int) -> TokenCheckResult:
        try:
            response = await self._select_single("user_token_balance", "balance,user_id", user_id)

            if response.status_code >= 400:
                error = _error_payload(response)
                if error.get("code") == NO_ROWS_CODE:
                    return await self._initialize_balance(user_id, required_tokens)
                logger.error(f"Error fetching token balance for {user_id}: {error}")
                return TokenCheckResult(
                    has_enough_tokens=False,
                    current_balance=0,
                    required_tokens=required_tokens,
                    is_subscribed=False,
                    error=error.get("message") or response.text,
                )

            balance = int(response.json().get("balance") or 0)

            subscription = await self._select_single("user_subscriptions", "status,stripe_subscription_id", user_id)
            status = None
            if subscription.status_code < 400:
                status = subscription.json().get("status")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Unexpected error checking token balance for {user_id}: {e}")
            return TokenCheckResult(
                has_enough_tokens=False,
                current_balance=0,
                required_tokens=required_tokens,
                is_subscribed=False,
                error=str(e),
            )

        return TokenCheckResult(
            has_enough_tokens=balance >= required_tokens,
            current_balance=balance,
            required_tokens=required_tokens,
            is_subscribed=status == "active",
            subscription_status=status,
        )

    async def _initialize_balance(self, user_id: str, required_tokens: int) -> TokenCheckResult:
        logger.info(f"No token balance for {user_id}, creating one")
        response = await self._request(
            "POST",
            "user_token_balance",
            json={
                "user_id": user_id,
                "balance": 0,
                "last_reset_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        result = TokenCheckResult(
            has_enough_tokens=False,
            current_balance=0,
            required_tokens=required_tokens,
            is_subscribed=False,
        )
        if response.status_code >= 400:
            logger.error(f"Failed to create token balance for {user_id}: {response.text}")
            result.error = "Failed to initialize token balance"
        return result

    async def consume_tokens(self, request: TokenConsumptionRequest) -> TokenConsumptionResult:
        tokens, cost_usd = tokens_for_request(request)

        check = await self.check_token_balance(request.user_id, tokens)
        if not check.has_enough_tokens:
            logger.warning(
                f"Insufficient tokens for {request.user_id}: "
                f"balance={check.current_balance} required={tokens}"
            )
            return TokenConsumptionResult(
                success=False,
                remaining_balance=check.current_balance,
                consumed=0,
                error="Insufficient tokens",
                needs_upgrade=not check.is_subscribed,
            )

        try:
            response = await self._request("POST", "rpc/consume_tokens", json={
                "p_user_id": request.user_id,
                "p_token_amount": tokens,
                "p_edge_function_name": request.edge_function_name,
                "p_operation_type": request.operation_type,
                "p_openai_model": request.openai_model,
                "p_openai_input_tokens": request.openai_input_tokens,
                "p_openai_output_tokens": request.openai_output_tokens,
                "p_openai_cost_usd": cost_usd or None,
                "p_metadata": request.metadata,
            })
            if response.status_code >= 400:
                error = _error_payload(response)
                logger.error(f"Error consuming tokens for {request.user_id}: {error}")
                return TokenConsumptionResult(
                    success=False,
                    remaining_balance=check.current_balance,
                    consumed=0,
                    error=error.get("message") or response.text,
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Unexpected error consuming tokens for {request.user_id}: {e}")
            return TokenConsumptionResult(success=False, remaining_balance=0, consumed=0, error=str(e))

        logger.info(
            f"Consumed {tokens} tokens for {request.user_id} "
            f"({request.edge_function_name}/{request.operation_type})"
        )
        return TokenConsumptionResult(
            success=bool(data.get("success")),
            remaining_balance=data.get("new_balance", 0),
            consumed=tokens,
        )

    async def add_tokens(
        self,
        user_id: str,
        amount: int,
        source: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TokenConsumptionResult:
        try:
            response = await self._request("POST", "rpc/add_tokens", json={
                "p_user_id": user_id,
                "p_token_amount": amount,
                "p_source": source,
                "p_metadata": metadata or {},
            })
            if response.status_code >= 400:
                error = _error_payload(response)
                logger.error(f"Error adding tokens for {user_id}: {error}")
                return TokenConsumptionResult(
                    success=False,
                    remaining_balance=0,
                    consumed=0,
                    error=error.get("message") or response.text,
                )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Unexpected error adding tokens for {user_id}: {e}")
            return TokenConsumptionResult(success=False, remaining_balance=0, consumed=0, error=str(e))

        return TokenConsumptionResult(
            success=bool(data.get("success")),
            remaining_balance=data.get("new_balance", 0),
            consumed=0,
        )


def _error_payload(response: httpx.Response) -> Dict[str, Any]:
    try:
        payload = response.json()
    except ValueError:
        return {"message": response.text}
    return payload if isinstance(payload, dict) else {"message": str(payload)}


async def with_token_consumption(
    ledger: TokenLedger,
    user_id: str,
    edge_function_name: str,
    operation_type: str,
    operation: Callable[[], Awaitable[T]],
    openai_model: Optional[str] = None,
    openai_input_tokens: Optional[int] = None,
    openai_output_tokens: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Union[JSONResponse, T]:
    """
    Run `operation` if the user can afford it, then charge for it.

    Returns a 402 response instead of running the operation when the
    balance is short.
    """
    if openai_input_tokens and openai_output_tokens:
        estimated = convert_usd_to_tokens(calculate_openai_cost(
            openai_model or "gpt-5-mini", openai_input_tokens, openai_output_tokens
        ))
    else:
        estimated = DEFAULT_ESTIMATED_COST

    check = await ledger.check_token_balance(user_id, estimated)
    if not check.has_enough_tokens:
        return insufficient_tokens_response(check.current_balance, estimated, not check.is_subscribed)

    result = await operation()

    await ledger.consume_tokens(TokenConsumptionRequest(
        user_id=user_id,
        edge_function_name=edge_function_name,
        operation_type=operation_type,
        openai_model=openai_model,
        openai_input_tokens=openai_input_tokens,
        openai_output_tokens=openai_output_tokens,
        metadata=metadata or {},
    ))
    return result
