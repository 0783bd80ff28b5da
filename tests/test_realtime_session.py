import asyncio
import json
import sys
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from errors import (
    ConfigurationError,
    ConnectionTimeoutError,
    MicrophonePermissionError,
    RelayError,
    SessionStateError,
)
from settings import Settings
from voice_coach.config import RealtimeConfig, VoiceSessionTimeouts
from voice_coach.media import AudioElementHost, MediaBridge
from voice_coach.session import RealtimeVoiceSession, SessionState


class DummyDataChannel:
    def __init__(self, label, ack=True):
        self.label = label
        self.readyState = "connecting"
        self.sent = []
        self.ack = ack
        self._handlers = {}

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event, *args):
        for handler in self._handlers.get(event, []):
            handler(*args)

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def send(self, data):
        self.sent.append(json.loads(data))
        if self.ack and self.sent[-1]["type"] == "session.update":
            asyncio.get_running_loop().call_soon(
                self.emit, "message", json.dumps({"type": "session.updated", "session": {}})
            )

    def close(self):
        self.readyState = "closed"

    def sent_types(self):
        return [message["type"] for message in self.sent]


class DummyPeerConnection:
    def __init__(self, connect=True, open_channel=True, ack=True):
        self.connect = connect
        self.open_channel = open_channel
        self.ack = ack
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription = None
        self.remoteDescription = None
        self.tracks = []
        self.channels = []
        self.closed = False
        self._handlers = {}

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def emit(self, event, *args):
        for handler in self._handlers.get(event, []):
            handler(*args)

    def addTrack(self, track):
        self.tracks.append(track)

    def createDataChannel(self, label):
        channel = DummyDataChannel(label, ack=self.ack)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return SimpleNamespace(sdp="v=0\r\no=offer\r\n", type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        if self.connect:
            asyncio.get_running_loop().call_soon(self._connected)

    def _connected(self):
        self.connectionState = "connected"
        self.iceConnectionState = "completed"
        self.emit("connectionstatechange")
        if self.open_channel:
            self.channels[0].open()

    def fail(self):
        self.connectionState = "failed"
        self.emit("connectionstatechange")

    async def close(self):
        self.closed = True
        self.connectionState = "closed"


class DummyTrack:
    kind = "audio"

    def __init__(self, name="mic"):
        self.id = name
        self.label = name
        self.readyState = "live"
        self.enabled = True

    def stop(self):
        self.readyState = "ended"


class DummySink:
    def __init__(self):
        self.started = False

    def start(self):
        self.started = True

    def write(self, samples):
        pass

    def stop(self):
        self.started = False


SETTINGS = Settings(supabase_url="https://project.supabase.co", supabase_anon_key="anon-key")

FAST = VoiceSessionTimeouts(
    connection=0.5,
    connection_poll=0.01,
    data_channel_open=0.3,
    configure_ack=0.1,
    health_check_interval=60.0,
    audio_reverify_delay=0.05,
)


def relay_client(requests, status=200, body="v=0\r\no=answer\r\n"):
    def handler(request):
        requests.append(request)
        return httpx.Response(status, text=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def grant_microphone(constraints):
    return DummyTrack()


async def deny_microphone(constraints):
    raise PermissionError("Permission denied")


def make_session(pcs, requests, microphone=grant_microphone, status=200, body="v=0\r\no=answer\r\n",
                 settings=SETTINGS, **pc_options):
    def factory():
        pc = DummyPeerConnection(**pc_options)
        pcs.append(pc)
        return pc

    media = MediaBridge(host=AudioElementHost(), microphone_factory=microphone, sink_factory=DummySink)
    return RealtimeVoiceSession(
        settings,
        timeouts=FAST,
        peer_connection_factory=factory,
        media=media,
        http_client=relay_client(requests, status, body),
    )


def test_connect_resolves_once_connected_and_channel_open():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect(RealtimeConfig(model="gpt-realtime-mini", voice="alloy"))
        diagnostics = session.get_connection_diagnostics()
        state = session.state
        await session.disconnect()
        return diagnostics, state

    diagnostics, state = asyncio.run(scenario())

    assert diagnostics.is_connected is True
    assert diagnostics.peer_connection_state == "connected"
    assert diagnostics.data_channel_state == "open"
    assert diagnostics.audio_input_active is True
    assert state == SessionState.CONNECTED

    pc = pcs[0]
    assert len(pc.tracks) == 1
    assert pc.channels[0].label == "oai-events"
    assert pc.remoteDescription.type == "answer"
    assert pc.remoteDescription.sdp == "v=0\r\no=answer\r\n"

    request = requests[0]
    assert str(request.url) == "https://project.supabase.co/functions/v1/voice-coach-realtime/session"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer anon-key"
    payload = json.loads(request.content)
    assert payload["model"] == "gpt-realtime-mini"
    assert payload["voice"] == "alloy"
    assert payload["sdp"] == "v=0\r\no=offer\r\n"
    assert "user_id" not in payload


def test_connect_sends_user_id_when_given():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect(RealtimeConfig(user_id="user-1"))
        await session.disconnect()

    asyncio.run(scenario())
    assert json.loads(requests[0].content)["user_id"] == "user-1"


def test_connect_twice_is_a_noop():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect()
        await session.connect()
        await session.disconnect()

    asyncio.run(scenario())
    assert len(pcs) == 1
    assert len(requests) == 1


def test_microphone_denied_fails_and_closes_peer_connection():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, microphone=deny_microphone)
        with pytest.raises(MicrophonePermissionError) as excinfo:
            await session.connect()
        return session, excinfo.value

    session, error = asyncio.run(scenario())

    assert "Microphone access required" in str(error)
    assert pcs[0].closed is True
    assert requests == []
    assert session.state == SessionState.FAILED
    assert session.media.host.elements == []
    assert session.get_connection_diagnostics().peer_connection_state == "none"


def test_relay_error_includes_status_and_body():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, status=500, body="relay error")
        with pytest.raises(RelayError) as excinfo:
            await session.connect()
        return session, excinfo.value

    session, error = asyncio.run(scenario())

    assert "500" in str(error)
    assert "relay error" in str(error)
    assert error.status_code == 500
    assert pcs[0].closed is True
    assert session.media.local_track_count == 0
    assert session.state == SessionState.FAILED


def test_missing_client_settings_fail_before_any_resource():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, settings=Settings())
        with pytest.raises(ConfigurationError) as excinfo:
            await session.connect()
        return excinfo.value

    error = asyncio.run(scenario())
    assert "VITE_SUPABASE_URL" in str(error)
    assert "VITE_SUPABASE_ANON_KEY" in str(error)
    assert pcs == []


def test_connection_timeout():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, connect=False)
        with pytest.raises(ConnectionTimeoutError) as excinfo:
            await session.connect()
        return session, excinfo.value

    session, error = asyncio.run(scenario())
    assert str(error) == "Connection timeout"
    assert pcs[0].closed is True
    assert session.connected is False


def test_data_channel_open_timeout():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, open_channel=False)
        with pytest.raises(ConnectionTimeoutError) as excinfo:
            await session.connect()
        return session, excinfo.value

    session, error = asyncio.run(scenario())
    assert str(error) == "Data channel open timeout"
    assert session.state == SessionState.FAILED
    assert session.connected is False


def test_configure_session_sends_update_once():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect(RealtimeConfig(voice="verse", temperature=0.6))
        await session.configure_session("Coach prompt", "voice")
        await session.configure_session("Coach prompt", "voice")
        state = session.state
        await session.disconnect()
        return state

    state = asyncio.run(scenario())

    channel = pcs[0].channels[0]
    updates = [message for message in channel.sent if message["type"] == "session.update"]
    assert len(updates) == 1
    assert state == SessionState.CONFIGURED

    session_config = updates[0]["session"]
    assert session_config["instructions"] == "Coach prompt"
    assert session_config["voice"] == "verse"
    assert session_config["temperature"] == 0.6
    assert session_config["max_response_output_tokens"] == 4096
    assert session_config["modalities"] == ["text", "audio"]
    assert session_config["input_audio_transcription"] == {"model": "whisper-1"}
    assert session_config["turn_detection"] == {
        "type": "server_vad",
        "threshold": 0.5,
        "prefix_padding_ms": 300,
        "silence_duration_ms": 700,
        "create_response": True,
    }


def test_configure_session_continues_without_acknowledgement():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, ack=False)
        await session.connect()
        await session.configure_session("Coach prompt", "voice")
        result = (session.state, session.session_configured)
        await session.disconnect()
        return result

    state, configured = asyncio.run(scenario())
    assert state == SessionState.CONFIGURED
    assert configured is True


def test_configure_session_before_connect_is_rejected():
    async def scenario():
        session = make_session([], [])
        with pytest.raises(SessionStateError):
            await session.configure_session("Coach prompt", "voice")

    asyncio.run(scenario())


def test_disconnect_then_connect_leaves_no_leaked_resources():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect()
        first_track = session.media.local_tracks[0]
        await session.disconnect()
        after_disconnect = (session.media.local_track_count, len(session.media.host.elements))
        await session.connect()
        result = (
            first_track.readyState,
            after_disconnect,
            session.media.local_track_count,
            len(session.media.host.elements),
        )
        await session.disconnect()
        return result

    first_state, after_disconnect, tracks, elements = asyncio.run(scenario())

    assert first_state == "ended"
    assert after_disconnect == (0, 0)
    assert tracks == 1
    assert elements == 1
    assert pcs[0].closed is True


def test_disconnect_is_idempotent_and_notifies_once():
    pcs, requests = [], []
    events = []

    async def scenario():
        session = make_session(pcs, requests)
        session.on_disconnect(lambda: events.append("disconnect"))
        await session.connect()
        await session.disconnect()
        await session.disconnect()
        return session.state

    state = asyncio.run(scenario())
    assert state == SessionState.CLOSED
    assert events == ["disconnect"]


def test_transport_failure_after_connect_notifies_subscribers():
    pcs, requests = [], []
    events = []

    async def scenario():
        session = make_session(pcs, requests)
        session.on_connect(lambda: events.append("connect"))
        session.on_disconnect(lambda: events.append("disconnect"))
        session.on_error(lambda error: events.append(f"error: {error}"))
        await session.connect()
        pcs[0].fail()
        state = session.state
        await session.disconnect()
        return state

    state = asyncio.run(scenario())
    assert state == SessionState.FAILED
    assert events == ["connect", "disconnect", "error: WebRTC connection failed"]


def test_messages_reach_subscribers_and_text_messages_are_sent():
    pcs, requests = [], []
    received = []

    async def scenario():
        session = make_session(pcs, requests)
        unsubscribe = session.on_message(received.append)
        await session.connect()
        channel = pcs[0].channels[0]
        channel.emit("message", json.dumps({"type": "input_audio_buffer.speech_started"}))
        unsubscribe()
        channel.emit("message", json.dumps({"type": "response.done"}))
        sent_text = session.send_text_message("How many squats today?")
        sent_cancel = session.cancel_response()
        last_speech = session.last_speech_detected_at
        await session.disconnect()
        return channel, sent_text, sent_cancel, last_speech

    channel, sent_text, sent_cancel, last_speech = asyncio.run(scenario())

    assert [message["type"] for message in received] == ["input_audio_buffer.speech_started"]
    assert last_speech is not None
    assert sent_text is True
    assert sent_cancel is True
    assert channel.sent_types() == ["conversation.item.create", "response.create", "response.cancel"]
    assert channel.sent[0]["item"]["content"] == [{"type": "input_text", "text": "How many squats today?"}]


def test_send_without_connection_returns_false():
    session = make_session([], [])
    assert session.send_message({"type": "response.create"}) is False
    assert session.ready_state == 3


def test_reconnect_after_transport_failure_releases_old_connection():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect()
        old_health = session._health
        pcs[0].fail()
        await session.connect()
        result = (
            old_health.running,
            session.media.local_track_count,
            len(session.media.local_tracks),
            len(session.media.host.elements),
            session.state,
        )
        await session.disconnect()
        return result

    old_running, live_tracks, tracks, elements, state = asyncio.run(scenario())

    assert pcs[0].closed is True
    assert pcs[0].channels[0].readyState == "closed"
    assert old_running is False
    assert live_tracks == 1
    assert tracks == 1
    assert elements == 1
    assert state == SessionState.CONNECTED
    assert len(pcs) == 2


def test_health_check_notices_microphone_ending_mid_session():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests)
        await session.connect()
        healthy = session._health.check()
        session.media.local_tracks[0].stop()
        degraded = session._health.check()
        await session.disconnect()
        return healthy, degraded

    healthy, degraded = asyncio.run(scenario())

    assert healthy.anomalies == []
    assert degraded.audio_input_active is False
    assert degraded.anomalies == ["audio_input_inactive"]


def test_disconnect_while_configuring_ends_configure_quietly():
    pcs, requests = [], []

    async def scenario():
        session = make_session(pcs, requests, ack=False)
        await session.connect()
        configuring = asyncio.ensure_future(session.configure_session("Coach prompt", "voice"))
        await asyncio.sleep(0.01)
        await session.disconnect()
        await configuring
        return session

    session = asyncio.run(scenario())

    assert session.state == SessionState.CLOSED
    assert session.session_configured is False
