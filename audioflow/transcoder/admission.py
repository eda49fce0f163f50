"""
Process-local admission control for transcode pipelines.

A pipeline is admitted only while fewer than ``max_concurrent`` slots are held
*and* the resident memory of this process is at or below the configured
ceiling. Memory is sampled on every poll because it, not the job count, is
the resource that actually runs out: each pipeline holds stream buffers and a
child process with its own pipe buffers.
"""

import itertools
import logging
import threading
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

import anyio
import psutil

from audioflow.configs import Policy
from audioflow.transcoder.errors import AdmissionTimeout

logger = logging.getLogger(__name__)

_MB = 1024 * 1024
_slot_ids = itertools.count(1)


def process_rss() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss


@dataclass(eq=False)
class Slot:
    """Token for one unit of pipeline concurrency."""

    id: int = field(default_factory=lambda: next(_slot_ids))
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False


class AdmissionController:
    def __init__(self, policy: Policy, memory_probe: Callable[[], int] = process_rss):
        self.policy = policy
        self._memory_probe = memory_probe
        self._held = 0
        self._lock = threading.Lock()

    @property
    def held(self) -> int:
        return self._held

    @property
    def max_concurrent(self) -> int:
        return self.policy.max_concurrent

    def has_capacity(self) -> bool:
        return self._held < self.policy.max_concurrent

    def memory_usage(self) -> int:
        return self._memory_probe()

    def _try_acquire(self) -> Slot | None:
        with self._lock:
            if self._held >= self.policy.max_concurrent:
                return None
            self._held += 1
            held = self._held
        logger.debug("Job slot acquired. Active jobs: %d", held)
        return Slot()

    async def acquire(self) -> Slot:
        """
        Wait until a slot is free and memory is below the ceiling, then take the slot.

        Raises:
            AdmissionTimeout: If both conditions did not hold at once within ``policy.wait_timeout``.
        """
        start = time.monotonic()
        ceiling = self.policy.memory_ceiling

        while True:
            rss = self.memory_usage()
            if rss > ceiling:
                logger.warning(
                    "Memory usage %.1fMB exceeds limit %.1fMB. Waiting before starting next job...",
                    rss / _MB,
                    ceiling / _MB,
                )
            else:
                slot = self._try_acquire()
                if slot is not None:
                    logger.debug(
                        "Job slot granted. RSS at start: %.1fMB (limit %s)",
                        rss / _MB,
                        "unlimited" if ceiling == float("inf") else f"{ceiling / _MB:.1f}MB",
                    )
                    return slot
                logger.warning(
                    "Job slot unavailable (active: %d/%d). Waiting...", self._held, self.policy.max_concurrent
                )

            elapsed = time.monotonic() - start
            if elapsed > self.policy.wait_timeout:
                raise AdmissionTimeout(elapsed, self.policy.wait_timeout, self._held, self.policy.max_concurrent)

            await anyio.sleep(self.policy.poll_interval)

    def release(self, slot: Slot) -> None:
        with self._lock:
            if slot.released:
                logger.warning("Job slot %d released twice; ignoring", slot.id)
                return
            slot.released = True
            if self._held > 0:
                self._held -= 1
            held = self._held
        logger.debug(
            "Job slot released after %.1fs. Active jobs: %d", time.monotonic() - slot.acquired_at, held
        )

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[Slot]:
        """Hold a slot for the duration of the ``async with`` block."""
        slot = await self.acquire()
        try:
            yield slot
        finally:
            self.release(slot)
