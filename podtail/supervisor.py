"""
Stream reconciliation engine

The supervisor periodically resolves the configured selectors, diffs the
result against the pods currently being tailed, and starts or cancels
PodStreamers to converge. All bookkeeping happens on the event loop thread:
reconcile passes are serialized by a lock and streamer completions arrive as
task done-callbacks, so active-set mutations never interleave.
"""

import asyncio
import math
from typing import Dict, Iterable, List, Optional, Set, Tuple

import structlog

from .formatter import ColorRegistry
from .models import DEFAULT_PALETTE, PodIdentity, ReconcileResult, Selector, StreamOutcome
from .resolver import ResourceResolver
from .streamer import PodStreamer

logger = structlog.get_logger(__name__)


class StreamSupervisor:
    """Keeps exactly one PodStreamer running per currently matching pod"""

    def __init__(self,
                 resolver: ResourceResolver,
                 source,
                 selectors: Iterable[Selector],
                 follow: bool = False,
                 refresh_interval: float = 30,
                 colors: Optional[ColorRegistry] = None,
                 channel: Optional[asyncio.Queue] = None,
                 channel_capacity: int = 1024,
                 container: Optional[str] = None,
                 tail_lines: Optional[int] = None,
                 since_seconds: Optional[int] = None,
                 shutdown_timeout: float = 5.0):
        """
        Initialize the supervisor

        Args:
            resolver: Resolves selectors to pod identities
            source: Log source handed to every PodStreamer
            selectors: Selectors to keep resolving
            follow: Follow streams instead of reading to the current end of log
            refresh_interval: Seconds between discovery passes, 0 for a single pass
            colors: Shared color registry, also used by the writer
            channel: Output channel, created with ``channel_capacity`` when None
            channel_capacity: Bound of the created output channel
            container: Container to tail in every pod
            tail_lines: Lines of history per pod
            since_seconds: History age limit per pod
            shutdown_timeout: Longest wait for streams to acknowledge shutdown
        """
        self.resolver = resolver
        self.source = source
        self.selectors: List[Selector] = list(selectors)
        self.follow = follow
        self.refresh_interval = refresh_interval
        self.colors = colors or ColorRegistry(DEFAULT_PALETTE)
        self.channel = channel if channel is not None else asyncio.Queue(maxsize=channel_capacity)
        self.container = container
        self.tail_lines = tail_lines
        self.since_seconds = since_seconds
        self.shutdown_timeout = shutdown_timeout

        self.active: Dict[PodIdentity, PodStreamer] = {}
        # Cancelled streamers whose tasks have not finished yet
        self._stopping: Dict[PodIdentity, PodStreamer] = {}
        # Pods whose follow stream was read to its end
        self._completed: Set[PodIdentity] = set()
        # Loop time of the last line seen from a pod whose stream ended on its own
        self._resume_from: Dict[PodIdentity, float] = {}

        self.cycles = 0
        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()

    @property
    def active_pods(self) -> Set[PodIdentity]:
        return set(self.active)

    async def reconcile_once(self) -> ReconcileResult:
        """Run one discovery cycle: resolve, diff, then start and stop streamers"""
        async with self._lock:
            resolution = await self.resolver.resolve_all(self.selectors)
            desired = resolution.desired
            self.cycles += 1

            # Identities that dropped out may come back as fresh pods later
            self._completed &= desired
            for pod in set(self._resume_from) - desired:
                del self._resume_from[pod]

            result = ReconcileResult(
                desired=desired,
                failed_selectors={s: e.reason for s, e in resolution.failures.items()},
            )

            for pod in sorted(set(self.active) - desired):
                self._stop(pod)
                result.stopped.append(pod)

            for pod in sorted(desired - set(self.active)):
                if pod in self._stopping:
                    logger.debug("Previous stream still stopping, deferring start", pod=str(pod))
                    continue
                if pod in self._completed and pod in resolution.terminated:
                    continue
                self._start(pod)
                result.started.append(pod)

        if result.changed or resolution.failures:
            logger.info("Reconciled pod streams", cycle=self.cycles, **result.to_dict())
        else:
            logger.debug("Pod streams unchanged", cycle=self.cycles, active=len(self.active))
        return result

    def _history_options(self, resume_at: Optional[float]) -> Tuple[Optional[int], Optional[int]]:
        """
        tail_lines and since_seconds for a new stream

        A pod whose previous stream ended on its own is resumed from the loop
        time ``resume_at`` of its last line instead of replaying the configured
        history.
        """
        if resume_at is None:
            return self.tail_lines, self.since_seconds

        since = max(1, math.ceil(asyncio.get_running_loop().time() - resume_at))
        if self.since_seconds is not None:
            since = min(since, self.since_seconds)
        return None, since

    def _start(self, pod: PodIdentity) -> PodStreamer:
        self._completed.discard(pod)
        resume_at = self._resume_from.pop(pod, None)
        tail_lines, since_seconds = self._history_options(resume_at)
        streamer = PodStreamer(
            pod,
            self.source,
            self.channel,
            follow=self.follow,
            color=self.colors.color_for(pod),
            container=self.container,
            tail_lines=tail_lines,
            since_seconds=since_seconds,
        )
        # Carried over so a retry that fails before its first line resumes from the same point
        streamer.last_line_at = resume_at
        if resume_at is not None:
            logger.debug("Resuming log stream", pod=str(pod), since_seconds=since_seconds)
        streamer.add_done_callback(self._on_streamer_done)
        self.active[pod] = streamer
        streamer.start()
        return streamer

    def _stop(self, pod: PodIdentity) -> None:
        streamer = self.active.pop(pod, None)
        if streamer is None:
            return
        streamer.cancel()
        if not streamer.done:
            self._stopping[pod] = streamer
        logger.info("Stopping log stream", pod=str(pod))

    def _on_streamer_done(self, streamer: PodStreamer) -> None:
        pod = streamer.pod
        if self.active.get(pod) is streamer:
            del self.active[pod]
        if self._stopping.get(pod) is streamer:
            del self._stopping[pod]

        if not self.follow or streamer.outcome == StreamOutcome.CANCELLED:
            return
        if streamer.outcome == StreamOutcome.COMPLETED:
            self._completed.add(pod)
        if streamer.last_line_at is not None:
            self._resume_from[pod] = streamer.last_line_at

    async def run(self) -> None:
        """
        Run the discovery loop until stopped

        Without follow, a single pass is made and the call returns once every
        stream has read to its end. With a zero refresh interval the initial
        streams run until ``stop()`` is called.
        """
        logger.info("Starting stream supervisor",
                    selectors=[str(s) for s in self.selectors],
                    follow=self.follow,
                    refresh_interval=self.refresh_interval)

        await self.reconcile_once()

        if not self.follow:
            await self.wait_for_streams()
            logger.info("All log streams completed")
            return

        while not self._stop_event.is_set():
            if self.refresh_interval <= 0:
                await self._stop_event.wait()
                break
            if await self._sleep(self.refresh_interval):
                break
            await self.reconcile_once()

        logger.info("Stream supervisor stopped", cycles=self.cycles)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until stopped. Returns True when stopped."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def wait_for_streams(self) -> None:
        """Wait until no streamer is active or stopping, or until stopped"""
        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        try:
            while (self.active or self._stopping) and not self._stop_event.is_set():
                tasks = {s.task for s in list(self.active.values()) + list(self._stopping.values())
                         if s.task is not None}
                await asyncio.wait(tasks | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()

    def stop(self) -> None:
        """Ask the discovery loop to end. Streams are cancelled by shutdown()."""
        self._stop_event.set()

    async def shutdown(self) -> None:
        """Cancel every stream and wait briefly for them to unwind"""
        self.stop()
        for pod in list(self.active):
            self._stop(pod)

        tasks = [s.task for s in self._stopping.values() if s.task is not None]
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
        if pending:
            logger.warning("Log streams did not stop in time", pending=len(pending))
