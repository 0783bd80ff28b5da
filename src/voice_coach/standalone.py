"""
Talk to the voice coach from a terminal.

Run with:
    python -m voice_coach.standalone --instructions "You are a friendly fitness coach."

Needs VITE_SUPABASE_URL and VITE_SUPABASE_ANON_KEY pointing at a relay.
Press Enter to (re)enable audio output if the device refused to start,
Ctrl+C to hang up.
"""

import argparse
import asyncio
import logging
import sys

from .config import DEFAULT_MODEL, DEFAULT_VOICE, RealtimeConfig
from .events import AUTOPLAY_BLOCKED_EVENT
from .session import create_realtime_session

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "You are a supportive wellness coach. Keep answers short and spoken."


def print_event(message: dict) -> None:
    message_type = message.get("type")
    if message_type == "conversation.item.input_audio_transcription.completed":
        print(f"You: {message.get('transcript', '').strip()}", file=sys.stderr)
    elif message_type == "response.audio_transcript.done":
        print(f"Coach: {message.get('transcript', '').strip()}", file=sys.stderr)
    elif message_type == "error":
        print(f"Error: {message.get('error')}", file=sys.stderr)


async def run(args) -> None:
    session = create_realtime_session()
    session.on_message(print_event)
    session.event_bus.subscribe(
        AUTOPLAY_BLOCKED_EVENT,
        lambda detail: print(f"{detail['message']} (press Enter)", file=sys.stderr),
    )

    await session.connect(RealtimeConfig(model=args.model, voice=args.voice, instructions=args.instructions))
    await session.configure_session(args.instructions, "voice")
    print("Connected. Start talking.", file=sys.stderr)

    loop = asyncio.get_running_loop()
    try:
        while session.connected:
            await loop.run_in_executor(None, sys.stdin.readline)
            if await session.enable_audio_playback():
                session.log_audio_diagnostics()
    finally:
        await session.disconnect()


def main():
    parser = argparse.ArgumentParser(description="Voice coach terminal client")
    parser.add_argument("--model", default=DEFAULT_MODEL)
    parser.add_argument("--voice", default=DEFAULT_VOICE)
    parser.add_argument("--instructions", default=DEFAULT_INSTRUCTIONS)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nStopping...", file=sys.stderr)


if __name__ == "__main__":
    main()
