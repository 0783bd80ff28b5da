"""Error types shared by the voice coach, relay and generation clients."""

from typing import Any, Dict, Optional


class TwinForgeError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(TwinForgeError):
    """Required settings (URLs, keys) are missing or malformed."""


class MicrophonePermissionError(TwinForgeError):
    """The microphone could not be opened. Needs user action, never retried."""


class TransportError(TwinForgeError):
    """The peer connection, data channel or relay request failed."""


class ConnectionTimeoutError(TransportError):
    """A transport wait (connection or data channel) ran out of time."""


class RelayError(TransportError):
    """The backend relay answered the SDP exchange with an error status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Failed to create session: {status_code} - {body}")


class PlaybackNotAllowedError(TwinForgeError):
    """The audio output refused to start until the user acts (NotAllowedError)."""

    name = "NotAllowedError"


class SessionStateError(TwinForgeError):
    """An operation was attempted in a session state that does not allow it."""


class UpstreamAIError(TwinForgeError):
    """An AI-calling endpoint answered with a non-2xx status."""

    def __init__(self, message: str, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class InsufficientTokensError(UpstreamAIError):
    """HTTP 402 from the token middleware."""

    def __init__(self, details: Optional[Dict[str, Any]] = None, body: str = ""):
        self.details = details or {}
        self.current_balance = self.details.get("currentBalance", 0)
        self.required_tokens = self.details.get("requiredTokens", 0)
        self.needs_upgrade = bool(self.details.get("needsUpgrade", False))
        message = self.details.get("message") or "Insufficient tokens"
        super().__init__(message, status_code=402, body=body)


class MealPlanGenerationError(TwinForgeError):
    """The meal-plan stream ended without usable days."""


class ScanPipelineError(TwinForgeError):
    """A body-scan step failed or was invoked out of order."""

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step}: {message}")
