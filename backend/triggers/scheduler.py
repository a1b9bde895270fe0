"""Scheduler for interval and cron automations.

Keeps the next fire time of every enabled, non-manual automation and
hands due automations to the execution engine on each tick.

- Interval schedules fire at anchor + k * interval. The next fire is
  always the first such instant after "now", so late ticks never shift
  the series (no drift).
- Cron schedules are evaluated with croniter in the automation's IANA
  timezone.
- Several missed fires collapse into one run for the most recent
  instant, published as schedule.coalesced (reason "missed"). A fire
  that lands while the previous run is still in flight is skipped and
  published as schedule.coalesced (reason "in_flight").
"""

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from croniter import croniter

from core.constants import EventType, ScheduleType, TriggerType
from core.exceptions import AlreadyRunningError, AutomationError
from core.utils import ensure_utc, utc_now
from events.bus import Event, EventBus
from execution.models import AutomationDefinition, Schedule

logger = structlog.get_logger(__name__)

_MAX_MISSED_COUNT = 1_000
_MICROSECOND = timedelta(microseconds=1)


def validate_cron(expression: str) -> bool:
    """Return True if the cron expression is syntactically valid."""
    return bool(expression) and croniter.is_valid(expression)


def validate_schedule(schedule: Schedule) -> List[str]:
    """Return human-readable problems with a schedule (empty when valid)."""
    errors: List[str] = []
    if schedule.type == ScheduleType.INTERVAL:
        if not schedule.interval_seconds or schedule.interval_seconds <= 0:
            errors.append("Interval must be a positive duration")
    elif schedule.type == ScheduleType.CRON:
        if not validate_cron(schedule.expression or ""):
            errors.append(f"Invalid cron expression: {schedule.expression!r}")
        try:
            ZoneInfo(schedule.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"Unknown timezone: {schedule.timezone!r}")
    return errors


def next_interval_fire(anchor: datetime, interval: timedelta, now: datetime) -> datetime:
    """First instant anchor + k*interval (k >= 1) strictly after now."""
    elapsed = max(now - anchor, timedelta(0)) // _MICROSECOND
    step = interval // _MICROSECOND
    k = elapsed // step + 1
    return anchor + interval * k


def next_cron_fire(expression: str, tz: str, now: datetime) -> datetime:
    """Next cron instant strictly after now, returned in UTC."""
    local_now = now.astimezone(ZoneInfo(tz))
    next_local = croniter(expression, local_now).get_next(datetime)
    return next_local.astimezone(timezone.utc)


@dataclass
class _Entry:
    automation_id: str
    schedule: Schedule
    anchor: datetime
    next_fire: datetime


@dataclass(frozen=True)
class Fire:
    """One scheduler decision for a due automation."""

    automation_id: str
    scheduled_for: datetime
    fired_at: datetime
    missed: int
    execution_id: Optional[str] = None
    skipped_reason: Optional[str] = None

    @property
    def started(self) -> bool:
        return self.execution_id is not None


class Scheduler:
    """Computes fire times and invokes the engine for due automations.

    The clock is injectable; tick() can be driven directly by tests or
    by the background loop started with start().
    """

    def __init__(
        self,
        engine,
        event_bus: EventBus,
        clock: Callable[[], datetime] = utc_now,
        tick_seconds: float = 1.0,
    ):
        self.engine = engine
        self.event_bus = event_bus
        self.clock = clock
        self.tick_seconds = tick_seconds
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._task: Optional[asyncio.Task] = None

    # ─── Registration ──────────────────────────────────────

    def _compute_next(self, entry: _Entry, now: datetime) -> datetime:
        if entry.schedule.type == ScheduleType.INTERVAL:
            return next_interval_fire(entry.anchor, entry.schedule.interval_delta, now)
        return next_cron_fire(entry.schedule.expression, entry.schedule.timezone, now)

    def schedule(
        self, definition: AutomationDefinition, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """
        (Re)compute the next fire of an automation from now.

        Disabled and manual automations are unscheduled. Missed fires
        are never replayed.

        Returns:
            Next fire time, or None when not scheduled
        """
        if not definition.enabled or definition.schedule.is_manual:
            self.unschedule(definition.id)
            return None

        errors = validate_schedule(definition.schedule)
        if errors:
            raise ValueError("; ".join(errors))

        now = ensure_utc(now or self.clock())
        entry = _Entry(definition.id, definition.schedule, anchor=now, next_fire=now)
        entry.next_fire = self._compute_next(entry, now)
        with self._lock:
            self._entries[definition.id] = entry
        logger.info(
            "Automation scheduled",
            automation_id=definition.id,
            schedule_type=definition.schedule.type.value,
            next_fire=entry.next_fire.isoformat(),
        )
        return entry.next_fire

    def unschedule(self, automation_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(automation_id, None) is not None
        if removed:
            logger.info("Automation unscheduled", automation_id=automation_id)
        return removed

    def next_fire(self, automation_id: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(automation_id)
            return entry.next_fire if entry else None

    def is_scheduled(self, automation_id: str) -> bool:
        with self._lock:
            return automation_id in self._entries

    @property
    def scheduled_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    # ─── Ticking ───────────────────────────────────────────

    def _missed(self, schedule: Schedule, first: datetime, now: datetime):
        """Count the fire instants in [first, now] and return (count, latest)."""
        if schedule.type == ScheduleType.INTERVAL:
            interval = schedule.interval_delta
            count = (now - first) // interval + 1
            return count, first + interval * (count - 1)
        count, latest = 1, first
        while count < _MAX_MISSED_COUNT:
            cursor = next_cron_fire(schedule.expression, schedule.timezone, latest)
            if cursor > now:
                break
            count, latest = count + 1, cursor
        return count, latest

    async def tick(self, now: Optional[datetime] = None) -> List[Fire]:
        """
        Fire every due automation once.

        Due entries are advanced before the engine is called, so a
        slow invoke can never cause a duplicate fire.
        """
        now = ensure_utc(now or self.clock())
        due = []
        with self._lock:
            for entry in self._entries.values():
                if entry.next_fire <= now:
                    due.append((entry.automation_id, entry.schedule, entry.next_fire))
                    entry.next_fire = self._compute_next(entry, now)

        fires: List[Fire] = []
        for automation_id, schedule, first in due:
            missed, latest = self._missed(schedule, first, now)
            fires.append(await self._fire(automation_id, latest, now, missed))
        return fires

    async def _fire(
        self, automation_id: str, scheduled_for: datetime, now: datetime, missed: int
    ) -> Fire:
        if self.engine.is_running(automation_id):
            return await self._coalesce(automation_id, scheduled_for, now, missed, "in_flight")

        if missed > 1:
            logger.info("Missed fires coalesced", automation_id=automation_id, missed=missed)
            await self._publish_coalesced(automation_id, scheduled_for, missed, "missed")

        try:
            execution = await self.engine.invoke(automation_id, triggered_by=TriggerType.SCHEDULE)
        except AlreadyRunningError:
            return await self._coalesce(automation_id, scheduled_for, now, missed, "in_flight")
        except AutomationError as e:
            logger.warning(
                "Scheduled invoke rejected",
                automation_id=automation_id,
                error_code=e.error_code,
                error=e.message,
            )
            return Fire(automation_id, scheduled_for, now, missed, skipped_reason=e.error_code)

        return Fire(automation_id, scheduled_for, now, missed, execution_id=execution.id)

    async def _coalesce(
        self, automation_id: str, scheduled_for: datetime, now: datetime, missed: int, reason: str
    ) -> Fire:
        logger.info(
            "Scheduled fire skipped, previous run still in flight",
            automation_id=automation_id,
            scheduled_for=scheduled_for.isoformat(),
        )
        await self._publish_coalesced(automation_id, scheduled_for, missed, reason)
        return Fire(automation_id, scheduled_for, now, missed, skipped_reason=reason)

    async def _publish_coalesced(
        self, automation_id: str, scheduled_for: datetime, missed: int, reason: str
    ) -> None:
        await self.event_bus.publish(Event(
            type=EventType.SCHEDULE_COALESCED,
            automation_id=automation_id,
            payload={
                "scheduled_for": scheduled_for.isoformat(),
                "missed": missed,
                "reason": reason,
            },
        ))

    # ─── Background loop ───────────────────────────────────

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Scheduler tick failed", error=str(e))
            await asyncio.sleep(self.tick_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="automation-scheduler")
            logger.info("Scheduler started", tick_seconds=self.tick_seconds)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
