"""
Event channel over the WebRTC data channel.

Carries JSON control messages out (``session.update``, ``response.create``,
...) and server events in (transcripts, VAD signals, acknowledgements).
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from errors import ConnectionTimeoutError, TransportError

from .events import Subscribers

logger = logging.getLogger(__name__)

SESSION_UPDATED = "session.updated"
SPEECH_STARTED = "input_audio_buffer.speech_started"
SPEECH_STOPPED = "input_audio_buffer.speech_stopped"

IMPORTANT_TYPES = {
    SESSION_UPDATED,
    "conversation.item.input_audio_transcription.delta",
    "conversation.item.input_audio_transcription.completed",
    "response.audio_transcript.delta",
    "response.audio_transcript.done",
    "response.done",
    "error",
    SPEECH_STARTED,
    SPEECH_STOPPED,
    "conversation.item.created",
}


class EventChannel:
    """
    JSON message channel bound to one data channel.

    Outbound messages are dropped (and logged) unless the channel is open.
    Inbound messages are decoded and fanned out to `listeners`; a listener
    that raises never affects the others.
    """

    def __init__(
        self,
        data_channel,
        listeners: Optional[Subscribers] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._channel = data_channel
        self._clock = clock
        self.listeners = listeners if listeners is not None else Subscribers("data channel message")
        self.last_speech_detected_at: Optional[float] = None

        self._open_waiters: List[asyncio.Future] = []
        self._type_waiters: Dict[str, List[asyncio.Future]] = {}

        data_channel.on("open", self._on_open)
        data_channel.on("close", self._on_close)
        data_channel.on("message", self._on_message)

        logger.info(f"Data channel created: label={self.label} state={self.ready_state}")

    @property
    def label(self) -> str:
        return getattr(self._channel, "label", "")

    @property
    def ready_state(self) -> str:
        return getattr(self._channel, "readyState", "closed")

    @property
    def is_open(self) -> bool:
        return self.ready_state == "open"

    def subscribe(self, handler: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        return self.listeners.subscribe(handler)

    def send(self, message: Dict[str, Any]) -> bool:
        """Send one control message. Returns False when it was not sent."""
        message_type = message.get("type")
        if not self.is_open:
            logger.error(
                f"Cannot send {message_type}: data channel not open (state={self.ready_state})"
            )
            return False

        try:
            payload = json.dumps(message)
            self._channel.send(payload)
        except Exception as e:
            logger.error(f"Error sending {message_type} (state={self.ready_state}): {e}")
            return False

        logger.info(f"Message sent: {message_type} ({len(payload)} bytes)")
        return True

    async def wait_open(self, timeout: float) -> None:
        """Return once the channel is open; raise on close or timeout."""
        if self.is_open:
            logger.info("Data channel already open")
            return
        if self.ready_state in ("closing", "closed"):
            logger.error(f"Data channel is {self.ready_state}, it will not open")
            raise TransportError("Data channel closed before opening")

        logger.info(f"Waiting for data channel to open (state={self.ready_state})")
        waiter = asyncio.get_running_loop().create_future()
        self._open_waiters.append(waiter)
        started = time.monotonic()
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"Data channel open timeout after {time.monotonic() - started:.1f}s "
                f"(state={self.ready_state})"
            )
            raise ConnectionTimeoutError("Data channel open timeout") from None
        finally:
            if waiter in self._open_waiters:
                self._open_waiters.remove(waiter)

        logger.info(f"Data channel opened after {time.monotonic() - started:.2f}s")

    def expect(self, message_type: str) -> asyncio.Future:
        """Future resolved with the next inbound message of `message_type`."""
        waiter = asyncio.get_running_loop().create_future()
        self._type_waiters.setdefault(message_type, []).append(waiter)
        return waiter

    def discard(self, message_type: str, waiter: asyncio.Future) -> None:
        waiters = self._type_waiters.get(message_type)
        if waiters and waiter in waiters:
            waiters.remove(waiter)
        if not waiter.done():
            waiter.cancel()

    def close(self) -> None:
        try:
            self._channel.close()
        except Exception as e:
            logger.warning(f"Error closing data channel: {e}")
        self._fail_waiters(TransportError("Data channel closed"))

    def _on_open(self) -> None:
        logger.info(f"Data channel open: label={self.label}")
        for waiter in list(self._open_waiters):
            if not waiter.done():
                waiter.set_result(None)

    def _on_close(self) -> None:
        logger.info(f"Data channel closed: label={self.label}")
        self._fail_waiters(TransportError("Data channel closed before opening"))

    def _fail_waiters(self, error: Exception) -> None:
        for waiter in list(self._open_waiters):
            if not waiter.done():
                waiter.set_exception(error)
        for waiters in self._type_waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(error)
        self._type_waiters.clear()

    def _on_message(self, raw) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")

        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Error parsing data channel message: {e} data={raw!r:.200}")
            return

        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning(f"Ignoring data channel frame without a type: {raw!r:.200}")
            return

        message_type = message["type"]
        if message_type in IMPORTANT_TYPES:
            has_content = bool(message.get("delta") or message.get("transcript"))
            logger.info(f"Important message: {message_type} (content={has_content})")

        if message_type == SESSION_UPDATED:
            logger.info("Session configuration confirmed by server")
        elif message_type == SPEECH_STARTED:
            self.last_speech_detected_at = self._clock()
            logger.info("Speech detected, VAD active")

        for waiter in self._type_waiters.pop(message_type, []):
            if not waiter.done():
                waiter.set_result(message)

        self.listeners.publish(message)
