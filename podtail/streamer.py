"""
Per-pod log streaming task
"""

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

import structlog

from .exceptions import StreamError
from .models import LogEvent, PodIdentity, StreamOutcome

logger = structlog.get_logger(__name__)


class PodStreamer:
    """
    Tails one pod's log into the shared output channel

    The streamer owns a single asyncio task. Lines are put on the bounded
    channel one at a time, so a slow writer blocks the streamer instead of
    losing lines. The streamer never restarts itself; restarts are decided by
    the supervisor on its next discovery cycle.
    """

    def __init__(self,
                 pod: PodIdentity,
                 source,
                 channel: asyncio.Queue,
                 follow: bool,
                 color: str,
                 container: Optional[str] = None,
                 tail_lines: Optional[int] = None,
                 since_seconds: Optional[int] = None):
        """
        Args:
            pod: Pod to tail
            source: Object with a ``stream_log_lines`` async generator (normally a KubernetesClient)
            channel: Shared queue of LogEvents drained by the writer
            follow: Keep the stream open for new lines
            color: Color assigned to this pod for the process lifetime
            container: Container to tail, the first one when None
            tail_lines: Lines of history to request
            since_seconds: Only request history newer than this
        """
        self.pod = pod
        self.source = source
        self.channel = channel
        self.follow = follow
        self.color = color
        self.container = container
        self.tail_lines = tail_lines
        self.since_seconds = since_seconds

        self.lines_emitted = 0
        # Event loop time of the last line put on the channel
        self.last_line_at: Optional[float] = None
        self.outcome: Optional[StreamOutcome] = None
        self.error: Optional[BaseException] = None
        self._cancel_requested = False
        self._read_to_end = False
        self._task: Optional[asyncio.Task] = None
        self._callbacks: List[Callable[["PodStreamer"], None]] = []

    def start(self) -> "PodStreamer":
        if self._task is not None:
            raise RuntimeError(f"streamer for {self.pod} already started")
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"podtail:{self.pod}")
        self._task.add_done_callback(self._finished)
        logger.info("Started log stream", pod=str(self.pod), follow=self.follow, color=self.color)
        return self

    async def _run(self) -> None:
        lines = self.source.stream_log_lines(
            self.pod,
            follow=self.follow,
            container=self.container,
            tail_lines=self.tail_lines,
            since_seconds=self.since_seconds,
        )
        loop = asyncio.get_running_loop()
        try:
            async for line in lines:
                if self._cancel_requested:
                    return
                await self.channel.put(LogEvent(pod=self.pod, line=line, received_at=datetime.now()))
                self.lines_emitted += 1
                self.last_line_at = loop.time()
            self._read_to_end = True
        finally:
            await lines.aclose()

    def _finished(self, task: asyncio.Task) -> None:
        # A cancel that lands after the last line was read does not undo the completion
        if task.cancelled():
            self.outcome = StreamOutcome.COMPLETED if self._read_to_end else StreamOutcome.CANCELLED
        elif task.exception() is not None:
            self.error = task.exception()
            self.outcome = StreamOutcome.FAILED
            if isinstance(self.error, StreamError):
                logger.warning("Log stream failed", pod=str(self.pod), error=str(self.error))
            else:
                logger.error("Log stream crashed", pod=str(self.pod),
                             error=repr(self.error), exc_info=self.error)
        elif self._read_to_end:
            self.outcome = StreamOutcome.COMPLETED
        else:
            self.outcome = StreamOutcome.CANCELLED

        logger.info("Log stream ended", pod=str(self.pod),
                    outcome=self.outcome.value, lines=self.lines_emitted)

        for callback in self._callbacks:
            callback(self)

    def add_done_callback(self, callback: Callable[["PodStreamer"], None]) -> None:
        """Call ``callback(streamer)`` once the task has fully stopped"""
        self._callbacks.append(callback)

    def cancel(self) -> bool:
        """
        Request the stream to stop. Safe to call repeatedly.

        Once this returns no further LogEvent from this streamer reaches the
        channel. The task itself may take a moment longer to unwind.

        Returns:
            True if this call issued the cancellation, False if it was already requested
        """
        if self._cancel_requested:
            return False
        self._cancel_requested = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    async def wait(self) -> Optional[StreamOutcome]:
        """Wait for the task to stop and return how it ended"""
        if self._task is not None:
            await asyncio.wait([self._task])
        return self.outcome
