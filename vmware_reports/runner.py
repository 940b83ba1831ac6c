import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 32
DEFAULT_POLL_INTERVAL = 0.2
LABEL_WIDTH = 60


class Outcome(str, Enum):
    OK = "ok"
    EMPTY = "empty"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class JobRecord:
    item: Any
    future: Any
    label: str


@dataclass
class TaskResult:
    item: Any
    label: str
    outcome: Outcome
    value: Any = None
    error: Optional[BaseException] = None


class TaskError(Exception):
    """Raised when one or more tasks of a batch failed."""

    def __init__(self, failures):
        self.failures = list(failures)
        labels = ", ".join(f.label for f in self.failures[:5])
        more = f" (+{len(self.failures) - 5} more)" if len(self.failures) > 5 else ""
        super().__init__(f"{len(self.failures)} task(s) failed: {labels}{more}")


@dataclass
class BatchResult:
    results: list = field(default_factory=list)

    @property
    def rows(self):
        """Concatenation of every non-empty task value."""
        rows = []
        for result in self.results:
            if result.outcome is not Outcome.OK:
                continue
            if isinstance(result.value, (list, tuple)):
                rows.extend(result.value)
            else:
                rows.append(result.value)
        return rows

    @property
    def failures(self):
        return [r for r in self.results if r.outcome is Outcome.FAILED]

    @property
    def cancelled(self):
        return [r for r in self.results if r.outcome is Outcome.CANCELLED]

    def raise_for_failures(self):
        if self.failures:
            raise TaskError(self.failures)


@dataclass
class Progress:
    active: int
    capacity: int
    completed: int
    total: int
    label: str = ""

    @property
    def pending(self):
        return self.total - self.completed

    @property
    def percent(self):
        if not self.total:
            return 100.0
        return self.completed / self.total * 100

    def __str__(self):
        text = f"Threads {self.active}/{self.capacity} | {self.percent:.1f}% complete ({self.pending} pending)"
        if self.label:
            text += f" | {self.label}"
        return text


def truncate_label(text, width=LABEL_WIDTH):
    text = str(text)
    if len(text) > width:
        return text[:width] + "..."
    return text


def log_progress(progress: Progress):
    logger.info(str(progress))


def _is_empty(value):
    if value is None:
        return True
    if isinstance(value, (list, tuple, dict)) and not value:
        return True
    return False


def _reap(record: JobRecord) -> TaskResult:
    future = record.future
    if future.cancelled():
        return TaskResult(record.item, record.label, Outcome.CANCELLED)
    error = future.exception()
    if error is not None:
        logger.debug(f"Task for {record.label} failed: {error}")
        return TaskResult(record.item, record.label, Outcome.FAILED, error=error)
    value = future.result()
    if _is_empty(value):
        return TaskResult(record.item, record.label, Outcome.EMPTY)
    return TaskResult(record.item, record.label, Outcome.OK, value=value)


def run_tasks(
    items: Iterable[Any],
    task: Callable[[Any, Any], Any],
    context: Any = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    label: Callable[[Any], str] = str,
    progress: Optional[Callable[[Progress], None]] = log_progress,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    cancel_on_error: bool = False,
) -> BatchResult:
    """Run ``task(item, context)`` once per item on a bounded thread pool.

    Every item is submitted up front; at most ``max_workers`` tasks run at a
    time and the rest queue inside the executor. The calling thread only
    polls and reaps finished futures, reporting a :class:`Progress` to
    ``progress`` on each poll and once more after the batch has drained.

    A task returning ``None`` or an empty container counts as EMPTY and
    contributes no rows. A task that raises is recorded as FAILED and does
    not stop the others. With ``cancel_on_error`` the first failure cancels
    every task that has not started yet.
    """
    if max_workers < 1:
        raise ValueError("max_workers must be >= 1")

    items = list(items)
    batch = BatchResult()
    if not items:
        return batch

    total = len(items)
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="task") as executor:
        active = [JobRecord(item, executor.submit(task, item, context), truncate_label(label(item)))
                  for item in items]
        logger.debug(f"Submitted {total} task(s) with {max_workers} worker thread(s)")

        try:
            _drain(active, batch, max_workers, total, progress, poll_interval, cancel_on_error)
        except BaseException:
            # queued tasks are dropped, running ones finish in the background
            executor.shutdown(wait=False, cancel_futures=True)
            raise

    if progress:
        progress(Progress(0, max_workers, total, total))
    return batch


def _drain(active, batch, max_workers, total, progress, poll_interval, cancel_on_error):
    cancelling = False
    while active:
        if progress:
            running = sum(1 for r in active if r.future.running())
            pending = next((r for r in active if not r.future.done()), active[0])
            progress(Progress(running, max_workers, total - len(active), total, pending.label))

        wait([r.future for r in active], timeout=poll_interval, return_when=FIRST_COMPLETED)

        still_active = []
        for record in active:
            if not record.future.done():
                still_active.append(record)
                continue
            result = _reap(record)
            batch.results.append(result)
            if result.outcome is Outcome.FAILED and cancel_on_error and not cancelling:
                cancelling = True
                logger.warning(f"Task for {record.label} failed, cancelling tasks that have not started")
                for other in active:
                    other.future.cancel()
        active = still_active
