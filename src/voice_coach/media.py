"""
Media bridge for realtime voice sessions.

Owns the local microphone track sent to the peer and the hidden audio
output that renders the coach's voice. Output start-up can be refused by
the audio backend (the NotAllowedError case); that is recoverable through
`MediaBridge.enable_audio_playback()` once the user acts.
"""

import asyncio
import fractions
import logging
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable, List, Optional

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from errors import MicrophonePermissionError, PlaybackNotAllowedError

from .config import MicrophoneConstraints
from .events import AUTOPLAY_BLOCKED_EVENT, AppEventBus

logger = logging.getLogger(__name__)

MICROPHONE_REQUIRED = "Microphone access required for voice sessions"


class MicrophoneTrack(MediaStreamTrack):
    """
    Audio track fed by a sounddevice input stream.

    PortAudio delivers blocks on its own thread; they are handed to the
    event loop and turned into s16 `AudioFrame`s on `recv()`.
    """

    kind = "audio"

    def __init__(self, constraints: MicrophoneConstraints, device=None, queue_size: int = 50):
        super().__init__()
        import sounddevice as sd

        self.constraints = constraints
        self.enabled = True
        self.label = str(device) if device is not None else "default input"
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._pts = 0
        # PortAudio has no echo/noise/gain processing of its own; the
        # constraints travel with the track for diagnostics.
        self._stream = sd.InputStream(
            samplerate=constraints.sample_rate,
            channels=constraints.channel_count,
            dtype="int16",
            blocksize=constraints.frame_size,
            device=device,
            callback=self._on_audio,
        )
        self._stream.start()

    def _on_audio(self, indata, frames, time_info, status):
        if status:
            logger.debug(f"Microphone status: {status}")
        self._loop.call_soon_threadsafe(self._enqueue, indata.copy())

    def _enqueue(self, chunk: np.ndarray) -> None:
        if self._queue.full():
            # Drop the oldest block rather than grow latency
            self._queue.get_nowait()
        self._queue.put_nowait(chunk)

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        chunk = await self._queue.get()
        if not self.enabled:
            chunk = np.zeros_like(chunk)

        rate = self.constraints.sample_rate
        layout = "mono" if self.constraints.channel_count == 1 else "stereo"
        frame = AudioFrame.from_ndarray(chunk.reshape(1, -1), format="s16", layout=layout)
        frame.sample_rate = rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, rate)
        self._pts += chunk.shape[0]
        return frame

    def stop(self) -> None:
        super().stop()
        try:
            self._stream.stop()
            self._stream.close()
        except Exception as e:
            logger.warning(f"Error closing microphone stream: {e}")


async def open_microphone(constraints: MicrophoneConstraints) -> MediaStreamTrack:
    """Default microphone acquisition."""
    return MicrophoneTrack(constraints)


class SoundDeviceSink:
    """Plays PCM blocks on the default output device."""

    def __init__(self, sample_rate: int = 48000, channels: int = 2, device=None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self._stream = None

    def start(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        try:
            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype="int16",
                device=self.device,
            )
            self._stream.start()
        except (sd.PortAudioError, OSError, ValueError) as e:
            self._stream = None
            raise PlaybackNotAllowedError(f"Audio output refused to start: {e}") from e

    def write(self, samples: np.ndarray) -> None:
        if self._stream is None:
            return
        if samples.shape[1] != self.channels:
            samples = np.repeat(samples[:, :1], self.channels, axis=1)
        self._stream.write(np.ascontiguousarray(samples))

    def stop(self) -> None:
        if self._stream is None:
            return
        try:
            self._stream.stop()
            self._stream.close()
        finally:
            self._stream = None


class AudioElement:
    """
    Hidden output element for the remote voice.

    Mirrors the bits of an HTML audio element the session relies on:
    volume/muted/paused, ready and network states, and a source stream.
    Remote frames are always drained; they reach the sink only while
    playing.
    """

    HAVE_NOTHING = 0
    HAVE_ENOUGH_DATA = 4
    NETWORK_EMPTY = 0
    NETWORK_IDLE = 1
    NETWORK_LOADING = 2

    def __init__(self, sink):
        self.sink = sink
        self.autoplay = True
        self.hidden = True
        self.volume = 1.0
        self.muted = False
        self.paused = True
        self.ready_state = self.HAVE_NOTHING
        self.network_state = self.NETWORK_EMPTY
        self.src_object: Optional[MediaStreamTrack] = None
        self._render_task: Optional[asyncio.Task] = None

    def set_source(self, track: MediaStreamTrack) -> None:
        if self._render_task is not None:
            self._render_task.cancel()
        self.src_object = track
        self.network_state = self.NETWORK_LOADING
        self._render_task = asyncio.ensure_future(self._render(track))

    async def play(self) -> None:
        self.sink.start()
        self.paused = False
        logger.info(f"Audio playback started (volume={self.volume}, muted={self.muted})")

    def pause(self) -> None:
        if not self.paused:
            logger.warning("Audio playback paused")
        self.paused = True

    async def _render(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("Remote audio track ended")
                self.network_state = self.NETWORK_IDLE
                break

            if self.ready_state != self.HAVE_ENOUGH_DATA:
                self.ready_state = self.HAVE_ENOUGH_DATA
                logger.info(f"Audio data loaded ({frame.sample_rate} Hz)")

            if self.paused or self.muted or self.volume <= 0:
                continue

            samples = frame.to_ndarray().reshape(-1, len(frame.layout.channels))
            if self.volume < 1.0:
                samples = (samples * self.volume).astype(samples.dtype)
            try:
                await asyncio.to_thread(self.sink.write, samples)
            except Exception as e:
                logger.error(f"Audio playback error: {e}")

    async def release(self) -> None:
        self.pause()
        task, self._render_task = self._render_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.src_object = None
        self.network_state = self.NETWORK_EMPTY
        self.sink.stop()


class AudioElementHost:
    """Where output elements live while a session owns them."""

    def __init__(self):
        self.elements: List[AudioElement] = []

    def append(self, element: AudioElement) -> None:
        self.elements.append(element)

    def remove(self, element: AudioElement) -> None:
        if element in self.elements:
            self.elements.remove(element)


@dataclass
class AudioDiagnostics:
    has_audio_element: bool
    is_playback_started: bool
    is_autoplay_blocked: bool
    volume: float
    muted: bool
    ready_state: int
    network_state: int
    paused: bool
    has_stream: bool
    stream_active: bool
    audio_tracks: int

    def to_dict(self) -> dict:
        return asdict(self)


class MediaBridge:
    """Microphone capture plus remote audio rendering for one session."""

    def __init__(
        self,
        event_bus: Optional[AppEventBus] = None,
        host: Optional[AudioElementHost] = None,
        microphone_factory: Callable[[MicrophoneConstraints], Awaitable[MediaStreamTrack]] = open_microphone,
        sink_factory: Callable[[], object] = SoundDeviceSink,
        constraints: Optional[MicrophoneConstraints] = None,
    ):
        self.event_bus = event_bus or AppEventBus()
        self.host = host or AudioElementHost()
        self.constraints = constraints or MicrophoneConstraints()
        self._microphone_factory = microphone_factory
        self._sink_factory = sink_factory

        self.local_tracks: List[MediaStreamTrack] = []
        self.audio_element: Optional[AudioElement] = None
        self.audio_playback_started = False
        self.audio_autoplay_blocked = False
        self.audio_input_active = False

    @property
    def local_track_count(self) -> int:
        return sum(1 for track in self.local_tracks if track.readyState == "live")

    async def acquire_microphone(self) -> MediaStreamTrack:
        logger.info(
            f"Requesting microphone access (echo_cancellation={self.constraints.echo_cancellation}, "
            f"noise_suppression={self.constraints.noise_suppression}, "
            f"auto_gain_control={self.constraints.auto_gain_control}, "
            f"rate={self.constraints.sample_rate})"
        )
        try:
            track = await self._microphone_factory(self.constraints)
        except Exception as e:
            logger.error(f"Failed to get microphone access: {e}")
            raise MicrophonePermissionError(MICROPHONE_REQUIRED) from e

        self.local_tracks.append(track)
        logger.info(f"Microphone access granted: {getattr(track, 'label', track.id)}")
        return track

    def create_audio_element(self) -> AudioElement:
        if self.audio_element is not None:
            return self.audio_element
        element = AudioElement(self._sink_factory())
        self.host.append(element)
        self.audio_element = element
        logger.info(f"Audio element created (autoplay={element.autoplay}, volume={element.volume})")
        return element

    async def attach_remote_track(self, track: MediaStreamTrack) -> None:
        logger.info(f"Received remote {track.kind} track {track.id}")
        if track.kind != "audio":
            return
        if self.audio_element is None:
            logger.warning("Remote audio track arrived without an audio element")
            return
        self.audio_element.set_source(track)
        await self.ensure_audio_playback()

    async def ensure_audio_playback(self) -> None:
        if self.audio_element is None or self.audio_playback_started:
            return

        logger.info("Attempting to start audio playback")
        try:
            await self.audio_element.play()
        except PlaybackNotAllowedError as e:
            logger.warning(f"Autoplay blocked: {e}. User interaction required to start audio")
            if not self.audio_autoplay_blocked:
                self.audio_autoplay_blocked = True
                self._notify_autoplay_blocked()
            return
        except Exception as e:
            logger.error(f"Failed to start audio playback: {e}")
            return

        self.audio_playback_started = True
        self.audio_autoplay_blocked = False

    def _notify_autoplay_blocked(self) -> None:
        logger.warning("Autoplay blocked, call enable_audio_playback() after user interaction")
        self.event_bus.dispatch(AUTOPLAY_BLOCKED_EVENT, {
            "message": "Click to enable the coach's audio",
            "action": "enable_audio_playback",
        })

    async def enable_audio_playback(self) -> bool:
        """Retry playback from a user gesture. True when audio is playing."""
        if self.audio_element is None:
            logger.error("No audio element available")
            return False
        if self.audio_playback_started:
            return True

        try:
            await self.audio_element.play()
        except Exception as e:
            logger.error(f"Failed to enable audio playback: {e}")
            return False

        self.audio_playback_started = True
        self.audio_autoplay_blocked = False
        logger.info("Audio playback enabled by user interaction")
        return True

    def verify_audio_input(self) -> bool:
        """Log the state of each local track and record whether one is live."""
        if not self.local_tracks:
            logger.warning("No local audio stream")
            self.audio_input_active = False
            return False

        active = False
        for index, track in enumerate(self.local_tracks):
            enabled = getattr(track, "enabled", True)
            if track.readyState == "live" and enabled:
                active = True
                logger.info(f"Audio track {index} live: {getattr(track, 'label', track.id)}")
            else:
                logger.warning(
                    f"Audio track {index} may not be working (state={track.readyState}, enabled={enabled})"
                )

        self.audio_input_active = active
        if active:
            logger.info("Audio input verification passed")
        else:
            logger.error("Audio input verification failed, speech may not be detected")
        return active

    def get_audio_diagnostics(self) -> AudioDiagnostics:
        element = self.audio_element
        source = element.src_object if element is not None else None
        stream_active = source is not None and source.readyState == "live"
        return AudioDiagnostics(
            has_audio_element=element is not None,
            is_playback_started=self.audio_playback_started,
            is_autoplay_blocked=self.audio_autoplay_blocked,
            volume=element.volume if element is not None else 0.0,
            muted=element.muted if element is not None else False,
            ready_state=element.ready_state if element is not None else 0,
            network_state=element.network_state if element is not None else 0,
            paused=element.paused if element is not None else True,
            has_stream=source is not None,
            stream_active=stream_active,
            audio_tracks=1 if stream_active else 0,
        )

    async def release(self) -> None:
        """Stop local tracks and remove the output element."""
        for track in self.local_tracks:
            try:
                track.stop()
            except Exception as e:
                logger.warning(f"Error stopping local track: {e}")
        self.local_tracks = []

        element, self.audio_element = self.audio_element, None
        if element is not None:
            try:
                await element.release()
            except Exception as e:
                logger.warning(f"Error releasing audio element: {e}")
            self.host.remove(element)

        self.audio_playback_started = False
        self.audio_autoplay_blocked = False
        self.audio_input_active = False
