"""
Realtime voice session.

Negotiates a WebRTC session with the OpenAI Realtime API through the
``voice-coach-realtime`` relay: the local offer goes to the relay, the
answer comes back as raw SDP. `connect()` returns only once the transport
is connected and the ``oai-events`` data channel is open.

Usage:
    session = create_realtime_session()
    session.on_message(handle_event)
    await session.connect(RealtimeConfig(model="gpt-realtime-mini", voice="alloy"))
    await session.configure_session(coach_prompt, "voice")
    ...
    await session.disconnect()
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import httpx
from aiortc import RTCPeerConnection, RTCSessionDescription

from errors import (
    ConfigurationError,
    ConnectionTimeoutError,
    RelayError,
    SessionStateError,
    TransportError,
)
from settings import Settings

from .channel import SESSION_UPDATED, EventChannel
from .config import DATA_CHANNEL_LABEL, RealtimeConfig, SessionUpdate, VoiceSessionTimeouts
from .events import AppEventBus, Subscribers
from .health import HealthMonitor
from .media import AudioDiagnostics, MediaBridge

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CONFIGURING = "configuring"
    CONFIGURED = "configured"
    CLOSED = "closed"
    FAILED = "failed"


ESTABLISHED_STATES = (SessionState.CONNECTED, SessionState.CONFIGURING, SessionState.CONFIGURED)

# WebSocket-style ready states for callers written against a socket API
READY_CONNECTING = 0
READY_OPEN = 1
READY_CLOSED = 3


@dataclass
class ConnectionDiagnostics:
    state: str
    is_connected: bool
    session_configured: bool
    audio_input_active: bool
    peer_connection_state: str
    ice_connection_state: str
    data_channel_state: str
    local_stream_active: bool
    audio_tracks_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RealtimeVoiceSession:
    """
    One voice-coach connection.

    Owns the peer connection, the media bridge, the event channel and the
    health monitor. Nothing is shared between instances; create a new
    session (or reconnect this one) after a failure.
    """

    def __init__(
        self,
        settings: Settings,
        timeouts: Optional[VoiceSessionTimeouts] = None,
        peer_connection_factory: Callable[[], Any] = RTCPeerConnection,
        media: Optional[MediaBridge] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        event_bus: Optional[AppEventBus] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.timeouts = timeouts or VoiceSessionTimeouts()
        self.event_bus = event_bus or AppEventBus()
        self.media = media or MediaBridge(event_bus=self.event_bus)
        self._peer_connection_factory = peer_connection_factory
        self._http_client = http_client
        self._clock = clock

        self.state = SessionState.NEW
        self.config: Optional[RealtimeConfig] = None
        self.is_connected = False
        self.session_configured = False

        self._pc = None
        self._channel: Optional[EventChannel] = None
        self._health: Optional[HealthMonitor] = None
        self._reverify_handle: Optional[asyncio.TimerHandle] = None
        self._track_tasks: Set[asyncio.Future] = set()

        self._message_handlers = Subscribers("message")
        self._error_handlers = Subscribers("error")
        self._connect_handlers = Subscribers("connect")
        self._disconnect_handlers = Subscribers("disconnect")

    # -- subscriptions -----------------------------------------------------

    def on_message(self, handler: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        return self._message_handlers.subscribe(handler)

    def on_error(self, handler: Callable[[Exception], Any]) -> Callable[[], None]:
        return self._error_handlers.subscribe(handler)

    def on_connect(self, handler: Callable[[], Any]) -> Callable[[], None]:
        return self._connect_handlers.subscribe(handler)

    def on_disconnect(self, handler: Callable[[], Any]) -> Callable[[], None]:
        return self._disconnect_handlers.subscribe(handler)

    # -- state -------------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self.is_connected

    @property
    def ready_state(self) -> int:
        if self._pc is None:
            return READY_CLOSED
        state = self._pc.connectionState
        if state in ("new", "connecting"):
            return READY_CONNECTING
        if state == "connected":
            return READY_OPEN
        return READY_CLOSED

    @property
    def last_speech_detected_at(self) -> Optional[float]:
        return self._channel.last_speech_detected_at if self._channel else None

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.info(f"Session state: {self.state.value} -> {state.value}")
            self.state = state

    # -- connection --------------------------------------------------------

    async def connect(self, config: Optional[RealtimeConfig] = None) -> None:
        if self.is_connected and self._pc is not None:
            logger.info("Already connected, skipping")
            return
        if self.state == SessionState.CONNECTING:
            raise SessionStateError("A connection attempt is already in progress")

        if self._pc is not None or self._channel is not None or self._health is not None:
            # Left over from a session the transport closed or failed under us
            logger.info("Releasing resources of the previous connection")
            await self._teardown()

        config = config or RealtimeConfig()
        self.config = config
        self._set_state(SessionState.CONNECTING)

        try:
            await self._establish(config)
        except (Exception, asyncio.CancelledError) as e:
            pc = self._pc
            logger.error(
                f"Connection failed: {e} "
                f"(connection={getattr(pc, 'connectionState', 'none')}, "
                f"ice={getattr(pc, 'iceConnectionState', 'none')})"
            )
            await self._teardown()
            self._set_state(SessionState.FAILED)
            raise

    async def _establish(self, config: RealtimeConfig) -> None:
        missing = self.settings.missing_client_settings()
        if missing:
            logger.error(f"Missing Supabase configuration: {missing}")
            raise ConfigurationError(f"Supabase configuration missing: {', '.join(missing)}")

        logger.info(
            f"Starting realtime connection (model={config.model}, voice={config.voice}, "
            f"temperature={config.temperature}, max_tokens={config.max_tokens})"
        )

        pc = self._peer_connection_factory()
        self._pc = pc
        self.media.create_audio_element()

        pc.on("track", lambda track: self._on_track(pc, track))
        pc.on("connectionstatechange", lambda: self._on_connection_state_change(pc))
        pc.on("iceconnectionstatechange", lambda: logger.info(
            f"ICE connection state: {pc.iceConnectionState}"
        ))

        track = await self.media.acquire_microphone()
        pc.addTrack(track)
        logger.info("Microphone track added to peer connection")

        data_channel = pc.createDataChannel(DATA_CHANNEL_LABEL)
        self._channel = EventChannel(data_channel, listeners=self._message_handlers, clock=self._clock)
        self._channel.subscribe(self._on_channel_message)

        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        local_sdp = pc.localDescription.sdp
        logger.info(f"SDP offer created ({len(local_sdp)} bytes)")

        answer_sdp = await self._exchange_sdp(local_sdp, config)
        await pc.setRemoteDescription(RTCSessionDescription(sdp=answer_sdp, type="answer"))
        logger.info("SDP answer applied")

        await self._wait_for_connection(pc)
        await self._channel.wait_open(self.timeouts.data_channel_open)

        self.is_connected = True
        self._set_state(SessionState.CONNECTED)
        logger.info("Connected to realtime API, data channel ready")
        self._connect_handlers.publish()

        self.media.verify_audio_input()
        loop = asyncio.get_running_loop()
        self._reverify_handle = loop.call_later(
            self.timeouts.audio_reverify_delay, self._reverify_audio_input
        )

        self._health = HealthMonitor(
            probe=self._health_probe,
            last_speech=lambda: self.last_speech_detected_at,
            interval=self.timeouts.health_check_interval,
            clock=self._clock,
        )
        self._health.start()

    async def _exchange_sdp(self, sdp: str, config: RealtimeConfig) -> str:
        url = f"{self.settings.function_url('voice-coach-realtime')}/session"
        key = self.settings.supabase_anon_key
        headers = {
            "Authorization": f"Bearer {key}",
            "apikey": key,
        }
        body = {
            "sdp": sdp,
            "model": config.model,
            "voice": config.voice,
            "instructions": config.instructions,
        }
        if config.user_id:
            body["user_id"] = config.user_id

        logger.info(f"Sending SDP offer to {url}")
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeouts.relay_request) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Session relay request failed: {e}")
            raise TransportError(f"Failed to reach session relay: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Relay returned {response.status_code}: {response.text[:500]}")
            raise RelayError(response.status_code, response.text)

        logger.info(f"Received SDP answer ({len(response.text)} bytes)")
        return response.text

    async def _wait_for_connection(self, pc) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info("Waiting for connection to establish")

        while True:
            if self._pc is not pc:
                raise TransportError("Peer connection lost")

            state = pc.connectionState
            ice_state = pc.iceConnectionState
            elapsed = loop.time() - started

            if state == "connected" or ice_state in ("connected", "completed"):
                logger.info(
                    f"Connection established in {elapsed:.2f}s "
                    f"(connection={state}, ice={ice_state})"
                )
                return

            if state == "failed" or ice_state == "failed":
                raise TransportError("WebRTC connection failed")

            if elapsed >= self.timeouts.connection:
                raise ConnectionTimeoutError("Connection timeout")

            await asyncio.sleep(self.timeouts.connection_poll)

    def _on_track(self, pc, track) -> None:
        if pc is not self._pc:
            return
        task = asyncio.ensure_future(self.media.attach_remote_track(track))
        self._track_tasks.add(task)
        task.add_done_callback(self._track_tasks.discard)

    def _on_connection_state_change(self, pc) -> None:
        if pc is not self._pc:
            return

        state = pc.connectionState
        logger.info(f"Connection state changed: {state}")
        if state not in ("failed", "closed"):
            return
        if self.state not in ESTABLISHED_STATES:
            # connect() notices on its own while still establishing
            return

        self.is_connected = False
        self._set_state(SessionState.FAILED if state == "failed" else SessionState.CLOSED)
        self._disconnect_handlers.publish()
        if state == "failed":
            self._error_handlers.publish(TransportError("WebRTC connection failed"))

    def _on_channel_message(self, message: Dict[str, Any]) -> None:
        if message.get("type") == "error":
            error = message.get("error") or {}
            logger.error(f"Realtime API error: {error.get('message', error)}")

    def _health_probe(self) -> Dict[str, Any]:
        # Re-sample the tracks so a microphone that ended mid-session shows up
        self.media.verify_audio_input()
        return self.get_connection_diagnostics().to_dict()

    def _reverify_audio_input(self) -> None:
        self._reverify_handle = None
        if self.state not in ESTABLISHED_STATES:
            return
        logger.info("Re-verifying audio input after connection stabilization")
        self.media.verify_audio_input()

    # -- teardown ----------------------------------------------------------

    async def disconnect(self) -> None:
        """Tear everything down. Safe to call at any time, any number of times."""
        logger.info("Disconnecting")
        was_connected = self.is_connected
        await self._teardown()
        self._set_state(SessionState.CLOSED)
        if was_connected:
            self._disconnect_handlers.publish()

    async def _teardown(self) -> None:
        if self._reverify_handle is not None:
            self._reverify_handle.cancel()
            self._reverify_handle = None

        if self._health is not None:
            self._health.stop()
            self._health = None

        for task in list(self._track_tasks):
            task.cancel()
        self._track_tasks.clear()

        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()

        pc, self._pc = self._pc, None
        if pc is not None:
            try:
                await pc.close()
            except Exception as e:
                logger.warning(f"Error closing peer connection: {e}")

        try:
            await self.media.release()
        except Exception as e:
            logger.warning(f"Error releasing media: {e}")

        self.is_connected = False
        self.session_configured = False
        logger.info("Cleanup complete")

    # -- control messages --------------------------------------------------

    def send_message(self, message: Dict[str, Any]) -> bool:
        if self._channel is None:
            logger.error(f"Cannot send {message.get('type')}: no data channel")
            return False
        return self._channel.send(message)

    async def configure_session(self, instructions: str, mode: Optional[str] = None) -> None:
        """
        Send ``session.update`` once and wait briefly for ``session.updated``.

        Continues after `timeouts.configure_ack` seconds without an
        acknowledgement. A second call is ignored.
        """
        if self.session_configured or self.state in (SessionState.CONFIGURING, SessionState.CONFIGURED):
            logger.warning("Session already configured, skipping")
            return

        channel = self._channel
        if self.state != SessionState.CONNECTED or channel is None or not channel.is_open:
            raise SessionStateError(f"Cannot configure session in state {self.state.value}")

        logger.info(f"Configuring session (mode={mode}, prompt_length={len(instructions)})")
        self._set_state(SessionState.CONFIGURING)

        update = SessionUpdate.for_config(instructions, self.config)
        ack = channel.expect(SESSION_UPDATED)
        try:
            if not channel.send(update.to_message()):
                self._set_state(SessionState.CONNECTED)
                raise TransportError("Failed to send session.update")
            logger.info("Session configuration sent, VAD and transcription enabled")

            try:
                await asyncio.wait_for(ack, timeout=self.timeouts.configure_ack)
            except asyncio.TimeoutError:
                logger.warning("Session configuration confirmation timeout, continuing anyway")
            except TransportError:
                if self._channel is channel:
                    raise
        finally:
            channel.discard(SESSION_UPDATED, ack)

        if self._channel is not channel or self.state != SessionState.CONFIGURING:
            logger.info("Session torn down while waiting for configuration")
            return
        self.session_configured = True
        self._set_state(SessionState.CONFIGURED)

    def send_text_message(self, text: str) -> bool:
        sent = self.send_message({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            },
        })
        if not sent:
            return False
        logger.debug(f"Text message sent: {text[:80]}")
        return self.send_message({"type": "response.create"})

    def cancel_response(self) -> bool:
        logger.debug("Response cancellation requested")
        return self.send_message({"type": "response.cancel"})

    # -- diagnostics -------------------------------------------------------

    def get_connection_diagnostics(self) -> ConnectionDiagnostics:
        pc = self._pc
        return ConnectionDiagnostics(
            state=self.state.value,
            is_connected=self.is_connected,
            session_configured=self.session_configured,
            audio_input_active=self.media.audio_input_active,
            peer_connection_state=pc.connectionState if pc is not None else "none",
            ice_connection_state=pc.iceConnectionState if pc is not None else "none",
            data_channel_state=self._channel.ready_state if self._channel is not None else "none",
            local_stream_active=self.media.local_track_count > 0,
            audio_tracks_count=len(self.media.local_tracks),
        )

    def get_audio_diagnostics(self) -> AudioDiagnostics:
        return self.media.get_audio_diagnostics()

    async def enable_audio_playback(self) -> bool:
        return await self.media.enable_audio_playback()

    def log_audio_diagnostics(self) -> None:
        audio = self.get_audio_diagnostics()
        connection = self.get_connection_diagnostics()
        logger.info(f"Audio diagnostics: {audio.to_dict()}")
        logger.info(f"Connection diagnostics: {connection.to_dict()}")
        if audio.is_autoplay_blocked:
            logger.warning("Audio autoplay is blocked, call enable_audio_playback() after a user gesture")
        elif not audio.is_playback_started:
            logger.warning("Audio playback not started")


def create_realtime_session(settings: Optional[Settings] = None, **kwargs) -> RealtimeVoiceSession:
    """Build a fresh session, reading settings from the environment if not given."""
    return RealtimeVoiceSession(settings or Settings.from_env(), **kwargs)
