"""
In-memory message store with per-group FIFO and visibility timeouts.

This is the queue the whole pipeline hangs off. It mirrors the semantics of a
FIFO queue with message groups:

- Jobs sharing a group key are delivered strictly in enqueue order
- While a job of a group is in flight, nothing else from that group is handed out
- A received job is hidden for the visibility timeout; if it is not
  acknowledged by then it becomes visible again with delivery_count + 1
- After max_deliveries redeliveries the job goes to the dead-letter sink
- Dedupe tokens admit a job once per dedupe window

Design decisions:
- One Condition guards all state, so receive can long-poll and producers,
  consumers and the sweeper never need external locking
- Un-acknowledged jobs stay at the head of their group's deque; expiry only
  clears the in-flight marker, which keeps redelivery ordering trivially FIFO
- Groups are served round-robin so a busy group cannot starve the others
- The clock is injectable so visibility can be tested without sleeping
"""

import json
import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Any, Callable, Optional

from shared.exceptions import CapacityExceeded, DeadLettered, JobNotFound, OrderValidationError
from shared.models import JobStatus, OrderJob, QueueStats, utcnow
from shared.settings import PipelineSettings

logger = logging.getLogger("message_store")

Clock = Callable[[], float]


class DeadLetterSink:
    """
    Parking area for jobs that exceeded their delivery budget.

    Jobs stay here until an operator redrives them; nothing in the pipeline
    reads from the sink automatically.
    """

    def __init__(self, name: str = "orders-dlq"):
        self.name = name
        self._jobs: "OrderedDict[str, OrderJob]" = OrderedDict()
        self._lock = threading.Lock()

    def put(self, job: OrderJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[OrderJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def remove(self, job_id: str) -> Optional[OrderJob]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def list(self) -> list[OrderJob]:
        """Dead-lettered jobs, oldest first."""
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs


class MessageStore:
    """
    Ordered, at-least-once store of pending order jobs.

    Example usage:
        store = MessageStore(visibility_timeout=180)
        job_id = store.enqueue({"sku": "A-1"}, group_key="customer-42")

        for job in store.receive(max_count=1):
            ...  # process
            store.acknowledge(job.job_id)
    """

    def __init__(
        self,
        visibility_timeout: float = 180.0,
        max_deliveries: int = 3,
        max_payload_bytes: int = 256 * 1024,
        max_group_backlog: int = 10_000,
        dedupe_window: float = 300.0,
        default_group_key: str = "orders",
        dead_letter_sink: Optional[DeadLetterSink] = None,
        clock: Clock = time.monotonic,
        sweep_interval: float = 1.0,
    ):
        """
        Initialize the store.

        Args:
            visibility_timeout: Seconds a received job stays hidden
            max_deliveries: Redeliveries allowed before dead-lettering
            max_payload_bytes: Upper bound on the JSON-encoded payload
            max_group_backlog: Jobs (pending + in flight) allowed per group
            dedupe_window: Seconds a dedupe token is remembered
            default_group_key: Group used when the caller supplies none
            dead_letter_sink: Where exhausted jobs go (defaults to a new sink)
            clock: Monotonic time source in seconds
            sweep_interval: Period of the background sweeper and of
                wake-ups while long-polling
        """
        if visibility_timeout <= 0:
            raise ValueError("visibility_timeout must be > 0")
        if max_deliveries < 0:
            raise ValueError("max_deliveries must be >= 0")

        self.visibility_timeout = visibility_timeout
        self.max_deliveries = max_deliveries
        self.max_payload_bytes = max_payload_bytes
        self.max_group_backlog = max_group_backlog
        self.dedupe_window = dedupe_window
        self.default_group_key = default_group_key
        self.dead_letters = dead_letter_sink if dead_letter_sink is not None else DeadLetterSink()
        self._clock = clock
        self._sweep_interval = sweep_interval

        self._cond = threading.Condition()
        # job_id -> job, for every job that is pending or in flight
        self._jobs: dict[str, OrderJob] = {}
        # group_key -> job ids in enqueue order; the head is the only candidate
        self._groups: "OrderedDict[str, deque[str]]" = OrderedDict()
        # job_id -> visibility deadline, for in-flight jobs only
        self._deadlines: dict[str, float] = {}
        # dedupe token -> (snapshot of the admitted job, expiry)
        self._dedupe: dict[str, tuple[OrderJob, float]] = {}

        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    @classmethod
    def from_settings(
        cls,
        settings: PipelineSettings,
        clock: Clock = time.monotonic,
    ) -> "MessageStore":
        """Build a store configured from pipeline settings."""
        return cls(
            visibility_timeout=settings.visibility_timeout_seconds,
            max_deliveries=settings.max_deliveries,
            max_payload_bytes=settings.max_payload_bytes,
            max_group_backlog=settings.max_group_backlog,
            dedupe_window=settings.dedupe_window_seconds,
            default_group_key=settings.default_group_key,
            dead_letter_sink=DeadLetterSink(settings.dead_letter_destination),
            clock=clock,
            sweep_interval=settings.sweep_interval_seconds,
        )

    # =========================================================================
    # Producer side
    # =========================================================================

    def enqueue(
        self,
        payload: dict[str, Any],
        *,
        order_id: Optional[str] = None,
        group_key: Optional[str] = None,
        dedupe_token: Optional[str] = None,
    ) -> str:
        """
        Add a job to the end of its group.

        Returns:
            The job id. For a repeated dedupe token, the id of the job that
            was admitted first.

        Raises:
            OrderValidationError: Payload is not a JSON object or is too large
            CapacityExceeded: The group's backlog is full
        """
        job, _ = self.admit(
            payload,
            order_id=order_id,
            group_key=group_key,
            dedupe_token=dedupe_token,
        )
        return job.job_id

    def admit(
        self,
        payload: dict[str, Any],
        *,
        order_id: Optional[str] = None,
        group_key: Optional[str] = None,
        dedupe_token: Optional[str] = None,
    ) -> tuple[OrderJob, bool]:
        """
        Same as enqueue, but returns a copy of the job and whether it was newly created.
        """
        encoded = self._encode_payload(payload)
        group = group_key or self.default_group_key

        with self._cond:
            now = self._clock()
            self._expire_dedupe_tokens(now)

            if dedupe_token is not None and dedupe_token in self._dedupe:
                original, _ = self._dedupe[dedupe_token]
                logger.info(
                    f"Duplicate submission for token {dedupe_token!r}; "
                    f"returning job {original.job_id}"
                )
                return original.model_copy(deep=True), False

            queue = self._groups.get(group)
            if queue is not None and len(queue) >= self.max_group_backlog:
                logger.warning(f"Rejecting job for group '{group}': backlog full")
                raise CapacityExceeded(group, self.max_group_backlog)

            fields: dict[str, Any] = {
                "group_key": group,
                "payload": json.loads(encoded),
                "dedupe_token": dedupe_token,
            }
            if order_id:
                fields["order_id"] = order_id
            job = OrderJob(**fields)

            self._jobs[job.job_id] = job
            self._groups.setdefault(group, deque()).append(job.job_id)
            if dedupe_token is not None:
                self._dedupe[dedupe_token] = (job.model_copy(deep=True), now + self.dedupe_window)

            self._cond.notify_all()

        logger.info(f"Enqueued job {job.job_id} (order {job.order_id}, group '{group}')")
        return job.model_copy(deep=True), True

    def _encode_payload(self, payload: Any) -> str:
        if not isinstance(payload, dict):
            raise OrderValidationError("Order payload must be a JSON object")
        try:
            encoded = json.dumps(payload, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise OrderValidationError(f"Order payload is not JSON serializable: {e}") from e

        size = len(encoded.encode("utf-8"))
        if size > self.max_payload_bytes:
            raise OrderValidationError(
                f"Order payload is {size} bytes, limit is {self.max_payload_bytes}",
                oversized=True,
            )
        return encoded

    def _expire_dedupe_tokens(self, now: float) -> None:
        expired = [token for token, (_, expires) in self._dedupe.items() if expires <= now]
        for token in expired:
            del self._dedupe[token]

    # =========================================================================
    # Consumer side
    # =========================================================================

    def receive(self, max_count: int = 1, wait_seconds: float = 0.0) -> list[OrderJob]:
        """
        Hand out up to max_count visible jobs and mark them in flight.

        At most one job per group is returned, and never for a group that
        already has a job in flight.

        Args:
            max_count: Upper bound on the number of jobs returned
            wait_seconds: Long-poll for up to this long when nothing is visible

        Returns:
            Copies of the received jobs (possibly empty)
        """
        if max_count < 1:
            raise ValueError("max_count must be >= 1")

        wait_until = time.monotonic() + wait_seconds
        with self._cond:
            while True:
                now = self._clock()
                self._sweep_locked(now)
                jobs = self._take_visible_locked(max_count, now)
                if jobs:
                    return jobs

                remaining = wait_until - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(timeout=min(remaining, self._sweep_interval))

    def _take_visible_locked(self, max_count: int, now: float) -> list[OrderJob]:
        taken: list[OrderJob] = []
        for group in list(self._groups):
            if len(taken) >= max_count:
                break

            head_id = self._groups[group][0]
            if head_id in self._deadlines:
                continue

            job = self._jobs[head_id]
            job.status = JobStatus.IN_FLIGHT
            self._deadlines[head_id] = now + self.visibility_timeout
            self._groups.move_to_end(group)
            taken.append(job.model_copy(deep=True))

            logger.info(
                f"Delivered job {job.job_id} (order {job.order_id}, group '{group}', "
                f"delivery_count={job.delivery_count})"
            )
        return taken

    def acknowledge(self, job_id: str) -> bool:
        """
        Remove a job permanently.

        Returns:
            True if the job was removed, False if it was already acknowledged,
            dead-lettered or never existed
        """
        with self._cond:
            job = self._jobs.pop(job_id, None)
            if job is None:
                logger.debug(f"Acknowledge for unknown job {job_id} ignored")
                return False

            self._deadlines.pop(job_id, None)
            self._remove_from_group_locked(job)
            # The next job of the group may now be visible
            self._cond.notify_all()

        logger.info(f"Acknowledged job {job_id} (order {job.order_id})")
        return True

    def extend_visibility(self, job_id: str, duration: float) -> None:
        """
        Push an in-flight job's visibility deadline to now + duration.

        Used by long-running processing to avoid a premature redelivery.

        Raises:
            DeadLettered: The job has been moved to the dead-letter sink
            JobNotFound: The job is not in flight (acknowledged, expired or unknown)
        """
        if duration < 0:
            raise ValueError("duration must be >= 0")

        with self._cond:
            now = self._clock()
            self._sweep_locked(now)
            if job_id not in self._deadlines:
                dead = self.dead_letters.get(job_id)
                if dead is not None:
                    raise DeadLettered(job_id, dead.delivery_count)
                raise JobNotFound(job_id, "not in flight")
            self._deadlines[job_id] = now + duration

        logger.debug(f"Visibility of job {job_id} extended by {duration:g}s")

    # =========================================================================
    # Redelivery and dead-lettering
    # =========================================================================

    def sweep(self) -> int:
        """
        Return expired in-flight jobs to their group, or dead-letter them.

        Returns:
            Number of expired jobs handled
        """
        with self._cond:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [job_id for job_id, deadline in self._deadlines.items() if deadline <= now]
        for job_id in expired:
            del self._deadlines[job_id]
            job = self._jobs[job_id]
            job.delivery_count += 1

            if job.delivery_count > self.max_deliveries:
                self._dead_letter_locked(job)
            else:
                job.status = JobStatus.PENDING
                logger.warning(
                    f"Visibility expired for job {job_id} (order {job.order_id}); "
                    f"will redeliver, delivery_count={job.delivery_count}"
                )

        if expired:
            self._cond.notify_all()
        return len(expired)

    def _dead_letter_locked(self, job: OrderJob) -> None:
        del self._jobs[job.job_id]
        self._remove_from_group_locked(job)
        job.status = JobStatus.DEAD_LETTERED
        job.dead_lettered_at = utcnow()
        self.dead_letters.put(job)
        logger.error(f"{DeadLettered(job.job_id, job.delivery_count)}; moved to '{self.dead_letters.name}'")

    def _remove_from_group_locked(self, job: OrderJob) -> None:
        queue = self._groups.get(job.group_key)
        if queue is None:
            return
        queue.remove(job.job_id)
        if not queue:
            del self._groups[job.group_key]

    def redrive(self, job_id: str) -> OrderJob:
        """
        Move a dead-lettered job back to the tail of its group.

        Its delivery count starts again from zero.

        Raises:
            JobNotFound: The job is not in the dead-letter sink
            CapacityExceeded: The group's backlog is full (job stays dead-lettered)
        """
        with self._cond:
            job = self.dead_letters.remove(job_id)
            if job is None:
                raise JobNotFound(job_id, "not in dead-letter sink")

            queue = self._groups.get(job.group_key)
            if queue is not None and len(queue) >= self.max_group_backlog:
                self.dead_letters.put(job)
                raise CapacityExceeded(job.group_key, self.max_group_backlog)

            job.delivery_count = 0
            job.status = JobStatus.PENDING
            job.dead_lettered_at = None
            self._jobs[job.job_id] = job
            self._groups.setdefault(job.group_key, deque()).append(job.job_id)
            self._cond.notify_all()

        logger.info(f"Redrove job {job_id} (order {job.order_id}) from '{self.dead_letters.name}'")
        return job.model_copy(deep=True)

    # =========================================================================
    # Inspection
    # =========================================================================

    def get(self, job_id: str) -> Optional[OrderJob]:
        """Get a copy of a pending, in-flight or dead-lettered job."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is not None:
                return job.model_copy(deep=True)
        return self.dead_letters.get(job_id)

    def list_dead_letters(self) -> list[OrderJob]:
        return self.dead_letters.list()

    def stats(self) -> QueueStats:
        with self._cond:
            return QueueStats(
                pending=len(self._jobs) - len(self._deadlines),
                in_flight=len(self._deadlines),
                dead_lettered=len(self.dead_letters),
                groups=len(self._groups),
            )

    def __len__(self) -> int:
        """Number of jobs pending or in flight."""
        return len(self._jobs)

    # =========================================================================
    # Background sweeper
    # =========================================================================

    def start(self) -> None:
        """Run the sweep periodically on a daemon thread."""
        if self._sweeper and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="message-store-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        logger.info("MessageStore sweeper started")

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Sweep failed")

    def stop(self) -> None:
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._sweeper:
            self._sweeper.join(timeout=max(1.0, self._sweep_interval * 2))
            self._sweeper = None
        logger.info("MessageStore sweeper stopped")
