############################################################
#
# aiorch - AI Request Orchestration and Embedding Pipeline
#
# base.py: Shared stop handling for worker processes
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Stop signalling shared by the worker loops."""

import asyncio
import os
import signal
import socket
from typing import Optional

from aiorch.app.core.clock import SYSTEM_CLOCK, Clock
from aiorch.app.logging_config import get_logger

logger = get_logger(__name__)


def default_worker_id(role: str) -> str:
    return f"{role}-{socket.gethostname()}-{os.getpid()}"


class StoppableWorker:
    """A loop that stops between units of work when asked to."""

    def __init__(self, worker_id: str, clock: Clock = SYSTEM_CLOCK):
        self.worker_id = worker_id
        self._clock = clock
        self._stop: Optional[asyncio.Event] = None

    @property
    def stop_event(self) -> asyncio.Event:
        if self._stop is None:
            self._stop = asyncio.Event()
        return self._stop

    @property
    def stopping(self) -> bool:
        return self._stop is not None and self._stop.is_set()

    def request_stop(self) -> None:
        if not self.stopping:
            logger.info("worker_stop_requested", worker_id=self.worker_id)
        self.stop_event.set()

    def install_signal_handlers(self) -> None:
        """SIGINT/SIGTERM request a stop; the current unit of work still finishes."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

    async def _sleep(self, seconds: float) -> None:
        """Sleep on the clock, waking early when a stop is requested."""
        if self.stopping or seconds <= 0:
            return
        sleeper = asyncio.ensure_future(self._clock.sleep(seconds))
        stopper = asyncio.ensure_future(self.stop_event.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            stopper.cancel()
