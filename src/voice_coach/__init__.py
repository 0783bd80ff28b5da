"""
Voice Coach - realtime voice sessions with the OpenAI Realtime API.

- Client negotiates WebRTC through the relay
- Microphone audio streams straight to OpenAI
- Server VAD and transcription events arrive on the data channel
- The coach's voice plays through a hidden audio output
"""

from .config import RealtimeConfig, VoiceSessionTimeouts
from .events import AUTOPLAY_BLOCKED_EVENT, AppEventBus
from .media import MediaBridge
from .relay import VoiceCoachRelay
from .session import RealtimeVoiceSession, SessionState, create_realtime_session

__all__ = [
    "AUTOPLAY_BLOCKED_EVENT",
    "AppEventBus",
    "MediaBridge",
    "RealtimeConfig",
    "RealtimeVoiceSession",
    "SessionState",
    "VoiceCoachRelay",
    "VoiceSessionTimeouts",
    "create_realtime_session",
]
