"""Periodic health checks for an established voice session."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class HealthSnapshot:
    """One sample of session state taken by the monitor."""
    connection_state: str
    is_connected: bool
    data_channel_state: str
    audio_input_active: bool
    seconds_since_last_speech: Optional[float] = None
    anomalies: List[str] = field(default_factory=list)


class HealthMonitor:
    """
    Samples a session every `interval` seconds and logs inconsistencies.

    Never acts on what it sees; reconnection is left to the caller.
    """

    def __init__(
        self,
        probe: Callable[[], dict],
        last_speech: Callable[[], Optional[float]],
        interval: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self.probe = probe
        self.last_speech = last_speech
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._run())
        logger.info(f"Health monitoring started (every {self.interval:.0f}s)")

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            logger.info("Health monitoring stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check()
            except Exception as e:
                logger.error(f"Health check failed: {e}", exc_info=True)

    def check(self) -> HealthSnapshot:
        diagnostics = self.probe()
        last = self.last_speech()
        since_speech = self._clock() - last if last else None

        snapshot = HealthSnapshot(
            connection_state=diagnostics.get("peer_connection_state", "none"),
            is_connected=bool(diagnostics.get("is_connected")),
            data_channel_state=diagnostics.get("data_channel_state", "none"),
            audio_input_active=bool(diagnostics.get("audio_input_active")),
            seconds_since_last_speech=since_speech,
        )

        speech = f"{since_speech:.0f}s ago" if since_speech is not None else "never"
        logger.info(
            f"Health check: connection={snapshot.connection_state} "
            f"channel={snapshot.data_channel_state} "
            f"audio_input={snapshot.audio_input_active} last_speech={speech}"
        )

        if snapshot.is_connected and not snapshot.audio_input_active:
            snapshot.anomalies.append("audio_input_inactive")
            logger.warning("Health check: connected but audio input is not active")

        if snapshot.is_connected and snapshot.data_channel_state != "open":
            snapshot.anomalies.append("data_channel_not_open")
            logger.error(
                f"Health check: connected but data channel is {snapshot.data_channel_state}"
            )

        return snapshot
