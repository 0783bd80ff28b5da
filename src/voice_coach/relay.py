"""
Voice coach relay.

Server side of the SDP exchange. The client posts its offer here; the
relay forwards the raw SDP to the OpenAI Realtime endpoint with the
server-held API key and hands the answer back. Media then flows directly
between the client and OpenAI.

Adds:
- POST {prefix}/session - SDP offer in, SDP answer out
- GET {prefix}/health - configuration status
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import quote

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from errors import UpstreamAIError
from settings import Settings, mask_key
from token_middleware import TokenLedger, insufficient_tokens_response

from .config import DEFAULT_MODEL, DEFAULT_VOICE

logger = logging.getLogger(__name__)

REALTIME_SESSION_TOKENS = 100
MAX_RETRIES = 2

TROUBLESHOOTING = {
    "step1": "Verify OPENAI_API_KEY is set in the relay environment",
    "step2": 'Ensure the key starts with "sk-" and is a valid OpenAI API key',
    "step3": "Check that the key has access to the Realtime API in your OpenAI account",
    "step4": "Verify your OpenAI account has sufficient credits and is not rate-limited",
}


class SessionRequest(BaseModel):
    sdp: Optional[str] = None
    model: str = DEFAULT_MODEL
    voice: str = DEFAULT_VOICE
    instructions: Optional[str] = None
    user_id: Optional[str] = None


def validate_api_key(api_key: Optional[str]) -> Optional[str]:
    """Return a description of what is wrong with the key, or None."""
    if not api_key:
        return "OPENAI_API_KEY is not set in environment"
    if not api_key.startswith("sk-"):
        return "OPENAI_API_KEY format is invalid (should start with sk-)"
    if len(api_key) < 20:
        return "OPENAI_API_KEY appears to be too short"
    return None


def retry_delay(attempt: int) -> float:
    return min(1.0 * (2 ** attempt), 5.0)


def _error(status_code: int, error: str, details=None, **extra) -> JSONResponse:
    content = {"error": error, "details": details}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


class VoiceCoachRelay:
    """
    SDP relay between voice clients and the OpenAI Realtime API.

    Usage:
        relay = VoiceCoachRelay(Settings.from_env())
        relay.mount(app, prefix="/functions/v1/voice-coach-realtime")
    """

    def __init__(
        self,
        settings: Settings,
        ledger: Optional[TokenLedger] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.ledger = ledger or TokenLedger(settings)
        self.timeout = timeout
        self._client = http_client
        self._sleep = sleep

    def mount(self, app: FastAPI, prefix: str = "/functions/v1/voice-coach-realtime"):
        @app.get(f"{prefix}/health")
        async def health():
            return self.health()

        @app.post(f"{prefix}/session")
        async def create_session(request: Request):
            return await self._handle_session(request)

    def health(self) -> dict:
        key = self.settings.openai_api_key
        logger.info("Health check requested")
        return {
            "status": "ok",
            "mode": "webrtc-unified",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "hasOpenAIKey": bool(key),
            "openaiKeyLength": len(key) if key else 0,
            "openaiKeyPrefix": mask_key(key),
            "message": (
                "Relay is configured and ready for WebRTC"
                if key else "OPENAI_API_KEY is not configured"
            ),
        }

    async def _handle_session(self, request: Request):
        request_id = str(uuid.uuid4())[:8]
        logger.info(f"[{request_id}] WebRTC session creation requested")

        if not request.headers.get("authorization") and not request.headers.get("apikey"):
            logger.error(f"[{request_id}] Missing authentication")
            return _error(401, "Missing authentication", "Authorization header or apikey required")

        api_key = self.settings.openai_api_key
        key_problem = validate_api_key(api_key)
        if key_problem:
            logger.error(f"[{request_id}] OPENAI_API_KEY validation failed: {key_problem}")
            return _error(
                500,
                "OpenAI API key not configured correctly",
                key_problem,
                troubleshooting=TROUBLESHOOTING,
            )

        content_type = request.headers.get("content-type", "")
        try:
            if "application/json" in content_type:
                body = await request.json()
                if not isinstance(body, dict):
                    logger.error(f"[{request_id}] JSON body is not an object")
                    return _error(400, "Invalid request body", "Expected a JSON object")
                session = SessionRequest(**body)
                if not session.sdp:
                    logger.error(f"[{request_id}] Missing SDP in JSON body")
                    return _error(400, "Missing SDP", 'Expected { "sdp": "...", ... } in request body')

                logger.info(
                    f"[{request_id}] Received SDP offer (json, {len(session.sdp)} bytes, "
                    f"model={session.model}, voice={session.voice}, user={session.user_id})"
                )

                if session.user_id:
                    check = await self.ledger.check_token_balance(session.user_id, REALTIME_SESSION_TOKENS)
                    if not check.has_enough_tokens:
                        logger.warning(
                            f"[{request_id}] Insufficient tokens for realtime session "
                            f"(user={session.user_id}, balance={check.current_balance})"
                        )
                        return insufficient_tokens_response(
                            check.current_balance, REALTIME_SESSION_TOKENS, not check.is_subscribed
                        )
                    logger.info(f"[{request_id}] Token pre-check passed (balance={check.current_balance})")

            elif "application/sdp" in content_type or "text/plain" in content_type:
                sdp = (await request.body()).decode("utf-8", errors="replace")
                if not sdp.strip():
                    logger.error(f"[{request_id}] Empty SDP offer")
                    return _error(400, "Empty SDP offer")
                session = SessionRequest(
                    sdp=sdp,
                    model=request.query_params.get("model") or DEFAULT_MODEL,
                    voice=request.query_params.get("voice") or DEFAULT_VOICE,
                )
                logger.info(f"[{request_id}] Received SDP offer (plain, {len(sdp)} bytes)")

            else:
                logger.error(f"[{request_id}] Unsupported content type: {content_type}")
                return _error(
                    400,
                    "Unsupported content type",
                    "Expected application/json, application/sdp, or text/plain",
                )

            answer = await self.create_realtime_session(session.sdp, api_key, session.model, session.voice)
        except (UpstreamAIError, httpx.HTTPError, ValueError) as e:
            logger.error(f"[{request_id}] Failed to create realtime session: {e}")
            return _error(500, str(e), type(e).__name__)

        logger.info(f"[{request_id}] Returning SDP answer ({len(answer)} bytes)")
        return Response(content=answer, media_type="application/sdp")

    async def create_realtime_session(
        self,
        sdp_offer: str,
        api_key: str,
        model: str = DEFAULT_MODEL,
        voice: str = DEFAULT_VOICE,
    ) -> str:
        """POST the raw offer to OpenAI, retrying server errors with backoff."""
        url = f"{self.settings.openai_base_url}/realtime?model={quote(model, safe='')}"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/sdp",
        }

        attempt = 0
        while True:
            logger.info(
                f"Sending SDP to OpenAI (model={model}, voice={voice}, "
                f"key={mask_key(api_key)}, attempt={attempt + 1})"
            )
            response = await self._post(url, sdp_offer, headers)
            if response.status_code < 400:
                logger.info(f"Received SDP answer from OpenAI ({len(response.text)} bytes)")
                return response.text

            body = response.text
            logger.error(f"OpenAI returned {response.status_code}: {body[:500]}")
            if response.status_code >= 500 and attempt < MAX_RETRIES:
                delay = retry_delay(attempt)
                logger.warning(f"Retrying after {delay:.0f}s due to server error")
                await self._sleep(delay)
                attempt += 1
                continue

            raise UpstreamAIError(
                f"OpenAI API error {response.status_code}: {_error_details(response.status_code, body)}",
                status_code=response.status_code,
                body=body,
            )

    async def _post(self, url: str, content: str, headers: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, content=content, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, content=content, headers=headers)


def _error_details(status_code: int, body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None

    message = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message")

    if status_code == 400 and not (message or "").strip() and (payload is not None or not body.strip()):
        logger.error(
            "400 with empty error details; likely causes: invalid SDP, model not "
            "available for this key, or no Realtime API access"
        )
        return "Empty error response. This usually indicates an issue with the request format or API access."
    if message:
        return message
    return body
