"""Configuration records for realtime voice sessions."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

DEFAULT_MODEL = "gpt-realtime-mini"
DEFAULT_VOICE = "alloy"
DATA_CHANNEL_LABEL = "oai-events"


@dataclass
class RealtimeConfig:
    """What the caller asks for when opening a session."""
    model: str = DEFAULT_MODEL
    voice: str = DEFAULT_VOICE
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    instructions: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class MicrophoneConstraints:
    """Capture constraints requested for the local microphone."""
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True
    sample_rate: int = 24000
    channel_count: int = 1
    # Samples per frame handed to the peer connection (20 ms at 24 kHz)
    frame_size: int = 480


@dataclass
class TurnDetectionConfig:
    """Server-side voice activity detection."""
    type: str = "server_vad"
    threshold: float = 0.5
    prefix_padding_ms: int = 300
    # Long enough to survive natural pauses
    silence_duration_ms: int = 700
    create_response: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "threshold": self.threshold,
            "prefix_padding_ms": self.prefix_padding_ms,
            "silence_duration_ms": self.silence_duration_ms,
            "create_response": self.create_response,
        }


@dataclass
class VoiceSessionTimeouts:
    """Timeouts and periods, in seconds."""
    connection: float = 15.0
    connection_poll: float = 0.1
    data_channel_open: float = 10.0
    configure_ack: float = 3.0
    health_check_interval: float = 30.0
    audio_reverify_delay: float = 1.0
    relay_request: float = 30.0


@dataclass
class SessionUpdate:
    """Body of the ``session.update`` control message."""
    instructions: str
    voice: str = DEFAULT_VOICE
    temperature: float = 0.8
    max_response_output_tokens: int = 4096
    transcription_model: str = "whisper-1"
    turn_detection: TurnDetectionConfig = field(default_factory=TurnDetectionConfig)

    @classmethod
    def for_config(cls, instructions: str, config: Optional[RealtimeConfig]) -> "SessionUpdate":
        update = cls(instructions=instructions)
        if config is not None:
            update.voice = config.voice or DEFAULT_VOICE
            if config.temperature:
                update.temperature = config.temperature
            if config.max_tokens:
                update.max_response_output_tokens = config.max_tokens
        return update

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "session.update",
            "session": {
                "instructions": self.instructions,
                "modalities": ["text", "audio"],
                "voice": self.voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "input_audio_transcription": {"model": self.transcription_model},
                "turn_detection": self.turn_detection.to_payload(),
                "temperature": self.temperature,
                "max_response_output_tokens": self.max_response_output_tokens,
            },
        }
