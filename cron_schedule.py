"""Cron-style scheduling for watch jobs.

Schedules are either '@every <duration>' (Go-style durations such as '10m',
'1h30m' or '30s') or cron expressions understood by croniter ('*/5 * * * *',
'@hourly', ...).

CronScheduler keeps one entry per job id. A dispatcher thread wakes up when
the next entry is due and hands due jobs to a thread pool, so distinct jobs
run in parallel. run_pending(now) can also be called directly with a fake
clock to fire jobs deterministically.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from croniter import croniter

logger = logging.getLogger(__name__)

EVERY_PREFIX = '@every '
MAX_SLEEP = 1.0

_DURATION_UNITS = {
    'ns': timedelta(microseconds=0.001),
    'us': timedelta(microseconds=1),
    'µs': timedelta(microseconds=1),
    'ms': timedelta(milliseconds=1),
    's': timedelta(seconds=1),
    'm': timedelta(minutes=1),
    'h': timedelta(hours=1),
}
_DURATION_PART_RE = re.compile(r'(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)')
_DURATION_RE = re.compile(r'^(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+$')


class ScheduleError(ValueError):
    """Raised for an empty or unparseable schedule."""


def parse_duration(text: str) -> timedelta:
    """Parse a Go-style duration such as '1h30m' or '45s'."""
    text = (text or '').strip()
    if not _DURATION_RE.match(text):
        raise ScheduleError(f"invalid duration '{text}'")

    total = timedelta()
    for amount, unit in _DURATION_PART_RE.findall(text):
        total += _DURATION_UNITS[unit] * float(amount)
    return total


class Schedule(ABC):

    @abstractmethod
    def next(self, after: datetime) -> datetime:
        """Return the first activation time strictly after `after`."""


@dataclass(frozen=True)
class EverySchedule(Schedule):
    interval: timedelta

    def next(self, after: datetime) -> datetime:
        return after + self.interval


@dataclass(frozen=True)
class CronSchedule(Schedule):
    expression: str

    def next(self, after: datetime) -> datetime:
        return croniter(self.expression, after).get_next(datetime)


def parse_schedule(expression: str) -> Schedule:
    expression = (expression or '').strip()
    if not expression:
        raise ScheduleError("cron schedule cannot be empty")

    if expression.startswith(EVERY_PREFIX):
        interval = parse_duration(expression[len(EVERY_PREFIX):])
        if interval < timedelta(seconds=1):
            raise ScheduleError(f"interval in '{expression}' must be at least one second")
        return EverySchedule(interval)

    if not croniter.is_valid(expression):
        raise ScheduleError(f"invalid cron schedule '{expression}'")
    return CronSchedule(expression)


@dataclass
class _Entry:
    job_id: str
    expression: str
    schedule: Schedule
    func: Callable[[], None]
    next_run: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CronScheduler:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None,
                 max_workers: int = 10, inline: bool = False):
        """
        Args:
            clock: Returns the current time; defaults to UTC wall time
            max_workers: Size of the pool that runs due jobs
            inline: Run due jobs in the calling thread instead of the pool
        """
        self._clock = clock or _utcnow
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._wakeup = threading.Event()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor = None if inline else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix='tagwatch-job')

    def register(self, job_id: str, expression: str, func: Callable[[], None]) -> None:
        """Add a job.

        Raises:
            ScheduleError: if the expression cannot be parsed
            ValueError: if the job id is already registered
        """
        schedule = parse_schedule(expression)
        with self._lock:
            if job_id in self._entries:
                raise ValueError(f"job '{job_id}' is already scheduled")
            self._entries[job_id] = _Entry(job_id, expression, schedule, func,
                                           schedule.next(self._clock()))
        self._wakeup.set()

    def update(self, job_id: str, expression: str) -> None:
        """Replace the schedule of an existing job.

        Raises:
            ScheduleError: if the expression cannot be parsed
            KeyError: if the job is not registered
        """
        schedule = parse_schedule(expression)
        with self._lock:
            entry = self._entries[job_id]
            entry.expression = expression
            entry.schedule = schedule
            entry.next_run = schedule.next(self._clock())
        self._wakeup.set()

    def unregister(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)

    def expression(self, job_id: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(job_id)
            return entry.expression if entry else None

    def job_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def next_run(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(job_id)
            return entry.next_run if entry else None

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Fire every job due at `now` and reschedule it. Returns the fired ids."""
        now = now or self._clock()
        with self._lock:
            due = sorted((e for e in self._entries.values() if e.next_run <= now),
                         key=lambda e: (e.next_run, e.job_id))
            for entry in due:
                entry.next_run = entry.schedule.next(now)

        for entry in due:
            if self._executor is None:
                self._run(entry)
            else:
                self._executor.submit(self._run, entry)
        return [e.job_id for e in due]

    def _run(self, entry: _Entry) -> None:
        try:
            entry.func()
        except Exception:
            logger.exception("job %s failed", entry.job_id)

    def _seconds_until_next(self) -> float:
        with self._lock:
            upcoming = [e.next_run for e in self._entries.values()]
        if not upcoming:
            return MAX_SLEEP
        delay = (min(upcoming) - self._clock()).total_seconds()
        return min(max(delay, 0.0), MAX_SLEEP)

    def _loop(self) -> None:
        while not self._stopped.is_set():
            self.run_pending()
            self._wakeup.wait(self._seconds_until_next())
            self._wakeup.clear()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stopped.clear()
        self._thread = threading.Thread(target=self._loop, name='tagwatch-cron', daemon=True)
        self._thread.start()
        logger.debug("cron dispatcher started")

    def stop(self) -> None:
        """Stop dispatching. In-flight jobs are left to finish."""
        self._stopped.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
        logger.debug("cron dispatcher stopped")
