"""
Execution coordinator: pulls jobs from the store and runs the processor.

On a managed platform this is deployment wiring (an event
source with batch size 1 bound to a function with one reserved concurrent
execution). Here it is an explicit, testable loop:

    receive(1) -> process with timeout -> acknowledge on success

Failures and timeouts are never acknowledged; the job comes back after its
visibility timeout expires. That is the only retry mechanism.

Design decisions:
- A semaphore of max_concurrency slots is the hard cap on active processor
  invocations. A slot is taken before receive() and released only when the
  invocation actually returns, so an abandoned (timed out) invocation still
  counts against the cap until it finishes
- Timed-out invocations are abandoned, not interrupted; the processor's
  idempotence makes the eventual redelivery safe
- Idle polling backs off exponentially and resets as soon as a job arrives
- visibility_timeout must cover visibility_safety_margin x processing_timeout,
  so a slow but successful execution is never redelivered alongside itself
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pipeline.message_store import MessageStore
from pipeline.processor import OrderProcessor
from shared.exceptions import ConfigurationError, ProcessingTimeout, PublishError
from shared.models import OrderJob, OrderResult
from shared.settings import PipelineSettings

logger = logging.getLogger("coordinator")


class RunStatus(str, Enum):
    """What one pass of the coordinator loop did."""
    IDLE = "idle"                       # Nothing visible in the store
    ACKNOWLEDGED = "acknowledged"       # Processed and removed from the store
    FAILED = "failed"                   # Processor raised; left for redelivery
    TIMED_OUT = "timed_out"             # Processor exceeded its budget; left for redelivery
    PUBLISH_FAILED = "publish_failed"   # Completion event not relayed; left for redelivery


@dataclass
class RunReport:
    """Outcome of one coordinator pass, for logs and tests."""
    status: RunStatus
    job_id: Optional[str] = None
    order_id: Optional[str] = None
    delivery_count: int = 0
    result: Optional[OrderResult] = None
    error: Optional[str] = None


class ExecutionCoordinator:
    """
    Runs the processor against the store with a global concurrency cap.

    Example:
        coordinator = ExecutionCoordinator(store, processor, processing_timeout=30)
        coordinator.start()     # background loops
        ...
        coordinator.stop()

        # or drive it by hand, e.g. in tests
        report = coordinator.run_once()
    """

    def __init__(
        self,
        store: MessageStore,
        processor: OrderProcessor,
        max_concurrency: int = 1,
        processing_timeout: float = 30.0,
        visibility_safety_margin: float = 6.0,
        poll_interval: float = 0.5,
        max_poll_interval: float = 5.0,
    ):
        """
        Initialize the coordinator.

        Args:
            store: Where jobs are received from and acknowledged to
            processor: The business step run for each job
            max_concurrency: Maximum processor invocations active at once
            processing_timeout: Seconds an invocation may run before it is abandoned
            visibility_safety_margin: Required ratio of the store's visibility
                timeout to processing_timeout
            poll_interval: Initial idle wait between empty receives
            max_poll_interval: Cap for the idle backoff

        Raises:
            ConfigurationError: The store's visibility timeout is too short
        """
        if max_concurrency < 1:
            raise ConfigurationError("max_concurrency must be >= 1")
        if processing_timeout <= 0:
            raise ConfigurationError("processing_timeout must be > 0")

        required = visibility_safety_margin * processing_timeout
        if store.visibility_timeout < required:
            raise ConfigurationError(
                f"Visibility timeout {store.visibility_timeout:g}s is shorter than "
                f"{visibility_safety_margin:g} x processing timeout ({required:g}s)"
            )

        self.store = store
        self.processor = processor
        self.max_concurrency = max_concurrency
        self.processing_timeout = processing_timeout
        self.poll_interval = poll_interval
        self.max_poll_interval = max(max_poll_interval, poll_interval)

        self._slots = threading.BoundedSemaphore(max_concurrency)
        self._executor: Optional[ThreadPoolExecutor] = None

        self._counter_lock = threading.Lock()
        self._active = 0
        self._peak = 0

        self._stop = threading.Event()
        self._loops: list[threading.Thread] = []

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        store: MessageStore,
        processor: OrderProcessor,
    ) -> "ExecutionCoordinator":
        return cls(
            store=store,
            processor=processor,
            max_concurrency=settings.max_concurrency,
            processing_timeout=settings.processing_timeout_seconds,
            visibility_safety_margin=settings.visibility_safety_margin,
            poll_interval=settings.poll_interval_seconds,
            max_poll_interval=settings.max_poll_interval_seconds,
        )

    # =========================================================================
    # Single pass
    # =========================================================================

    def run_once(self, slot_timeout: Optional[float] = None) -> RunReport:
        """
        Receive at most one job and process it.

        Args:
            slot_timeout: How long to wait for a free slot (None waits forever)

        Returns:
            A report describing what happened. IDLE if no slot was free in
            time or nothing was visible.
        """
        if not self._slots.acquire(timeout=slot_timeout):
            return RunReport(status=RunStatus.IDLE)

        try:
            jobs = self.store.receive(max_count=1)
        except Exception:
            self._slots.release()
            raise

        if not jobs:
            self._slots.release()
            return RunReport(status=RunStatus.IDLE)

        job = jobs[0]
        future = self._get_executor().submit(self._invoke, job)
        # The slot belongs to the invocation, not to this call
        future.add_done_callback(self._release_slot)
        return self._settle(job, future)

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._counter_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_concurrency,
                    thread_name_prefix="order-processor",
                )
            return self._executor

    def _invoke(self, job: OrderJob) -> OrderResult:
        with self._counter_lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        try:
            return self.processor.process(job)
        finally:
            with self._counter_lock:
                self._active -= 1

    def _release_slot(self, _future: Future) -> None:
        self._slots.release()

    def _settle(self, job: OrderJob, future: Future) -> RunReport:
        report = RunReport(
            status=RunStatus.FAILED,
            job_id=job.job_id,
            order_id=job.order_id,
            delivery_count=job.delivery_count,
        )

        try:
            result = future.result(timeout=self.processing_timeout)
        except FutureTimeout:
            error = ProcessingTimeout(job.order_id, self.processing_timeout)
            logger.error(f"{error}; abandoning job {job.job_id} until its visibility expires")
            report.status = RunStatus.TIMED_OUT
            report.error = str(error)
            return report
        except PublishError as e:
            logger.error(f"Completion event for order {job.order_id} not published: {e}; job {job.job_id} not acknowledged")
            report.status = RunStatus.PUBLISH_FAILED
            report.error = str(e)
            return report
        except Exception as e:
            logger.error(f"Job {job.job_id} failed (delivery_count={job.delivery_count}): {e}")
            report.error = str(e)
            return report

        if not self.store.acknowledge(job.job_id):
            logger.warning(
                f"Job {job.job_id} was no longer in the store when acknowledged "
                f"(order {job.order_id})"
            )
        report.status = RunStatus.ACKNOWLEDGED
        report.result = result
        return report

    # =========================================================================
    # Background loops
    # =========================================================================

    def start(self) -> None:
        """Start one polling loop per concurrency slot."""
        if any(t.is_alive() for t in self._loops):
            return
        self._stop.clear()
        self._loops = [
            threading.Thread(
                target=self._run_loop,
                name=f"coordinator-{i + 1}",
                daemon=True,
            )
            for i in range(self.max_concurrency)
        ]
        for thread in self._loops:
            thread.start()
        logger.info(f"ExecutionCoordinator started with {self.max_concurrency} loop(s)")

    def _run_loop(self) -> None:
        idle_wait = self.poll_interval
        while not self._stop.is_set():
            try:
                report = self.run_once(slot_timeout=self.poll_interval)
            except Exception:
                logger.exception("Coordinator pass failed")
                report = RunReport(status=RunStatus.IDLE)

            if report.status == RunStatus.IDLE:
                self._stop.wait(idle_wait)
                idle_wait = min(idle_wait * 2, self.max_poll_interval)
            else:
                idle_wait = self.poll_interval

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loops. Invocations already running are not interrupted."""
        self._stop.set()
        for thread in self._loops:
            thread.join(timeout=timeout)
        self._loops = []
        with self._counter_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
        logger.info("ExecutionCoordinator stopped")

    # =========================================================================
    # Inspection
    # =========================================================================

    @property
    def active_invocations(self) -> int:
        return self._active

    @property
    def peak_concurrency(self) -> int:
        """Highest number of simultaneously active invocations observed."""
        return self._peak
