"""Fire-and-forget delivery of verification codes.

Issuing a code never waits on SMTP or the SMS gateway: the workflow submits a
``DeliveryJob`` and returns. A small pool of asyncio workers drains a bounded
queue, running the blocking senders in the default executor with a
per-attempt timeout and a fixed number of attempts. A send that outlives its
attempt is waited on again by the next attempt instead of being started a
second time. Delivery failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from keyward.logging import get_logger
from keyward.storage.models import ChannelType

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ATTEMPT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_DELAY_SECONDS = 0.5
DEFAULT_WORKERS = 2
DEFAULT_QUEUE_SIZE = 1000

# Queued by stop() to wake idle workers
_STOP = object()


class CodeSender(Protocol):
    def send_verification_code(self, destination: str, code: str) -> bool: ...


@dataclass(frozen=True)
class DeliveryJob:
    channel: ChannelType
    destination: str
    code: str


def _drain(future: asyncio.Future) -> None:
    if not future.cancelled():
        future.exception()


class DeliveryDispatcher:
    """Bounded queue plus worker tasks bound to the running event loop."""

    def __init__(
        self,
        senders: Dict[ChannelType, CodeSender],
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        attempt_timeout: float = DEFAULT_ATTEMPT_TIMEOUT_SECONDS,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        workers: int = DEFAULT_WORKERS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.senders = senders
        self.max_attempts = max(1, max_attempts)
        self.attempt_timeout = attempt_timeout
        self.retry_delay = retry_delay
        self.worker_count = max(1, workers)
        self.queue_size = queue_size
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._stopping = False

    def _ensure_started(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        # A new loop (e.g. a fresh asyncio.run) needs its own queue and workers
        if self._loop is not loop or self._queue is None:
            queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
            self._loop = loop
            self._queue = queue
            self._workers = [
                loop.create_task(self._worker(index, queue))
                for index in range(self.worker_count)
            ]
            logger.info("delivery_workers_started", workers=self.worker_count)
        return self._queue

    def submit(self, job: DeliveryJob) -> bool:
        """Queue a job without blocking. Returns False if it was dropped."""
        if self._stopping:
            logger.warning("delivery_dispatcher_stopped", channel=job.channel.value)
            return False
        try:
            queue = self._ensure_started()
        except RuntimeError:
            logger.warning("delivery_no_running_loop", channel=job.channel.value)
            return False
        try:
            queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("delivery_queue_full", channel=job.channel.value)
            return False
        return True

    async def _worker(self, index: int, queue: asyncio.Queue) -> None:
        while not self._stopping:
            job = await queue.get()
            try:
                if job is _STOP:
                    break
                await self.deliver(job)
            except Exception as exc:
                logger.error(
                    "delivery_worker_error",
                    worker=index,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            finally:
                queue.task_done()

    @staticmethod
    def _start_send(sender: CodeSender, job: DeliveryJob) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        call = functools.partial(
            contextvars.copy_context().run,
            sender.send_verification_code,
            job.destination,
            job.code,
        )
        return loop.run_in_executor(None, call)

    async def deliver(self, job: DeliveryJob) -> bool:
        """Run one job to completion; True once any attempt succeeds."""
        sender = self.senders.get(job.channel)
        if sender is None:
            logger.error("delivery_sender_missing", channel=job.channel.value)
            return False
        pending: Optional[asyncio.Future] = None
        try:
            for attempt in range(1, self.max_attempts + 1):
                if pending is None:
                    pending = self._start_send(sender, job)
                done, _ = await asyncio.wait({pending}, timeout=self.attempt_timeout)
                if not done:
                    logger.warning(
                        "delivery_attempt_timeout", channel=job.channel.value, attempt=attempt
                    )
                    sent = False
                else:
                    finished, pending = pending, None
                    try:
                        sent = bool(finished.result())
                    except Exception as exc:
                        logger.warning(
                            "delivery_attempt_failed",
                            channel=job.channel.value,
                            attempt=attempt,
                            error_type=type(exc).__name__,
                            error=str(exc),
                        )
                        sent = False
                if sent:
                    logger.info("delivery_succeeded", channel=job.channel.value, attempt=attempt)
                    return True
                if attempt < self.max_attempts and self.retry_delay > 0:
                    await asyncio.sleep(self.retry_delay)
        finally:
            # A send still in flight finishes in its thread; its outcome is discarded
            if pending is not None:
                pending.add_done_callback(_drain)
        logger.error(
            "delivery_abandoned", channel=job.channel.value, attempts=self.max_attempts
        )
        return False

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def stop(self) -> None:
        """Stop the workers for good; queued jobs are discarded."""
        self._stopping = True
        workers, self._workers = self._workers, []
        queue, self._queue = self._queue, None
        loop, self._loop = self._loop, None
        # Workers bound to an earlier, finished loop were cancelled with it
        if workers and loop is asyncio.get_running_loop():
            if queue is not None:
                for _ in workers:
                    try:
                        queue.put_nowait(_STOP)
                    except asyncio.QueueFull:
                        break
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("delivery_workers_stopped")
