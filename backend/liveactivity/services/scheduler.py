"""Scheduler service - drives the Live Activity lifecycle over a school day.

Lifecycle per day: idle -> starting -> active -> stopping -> idle.

- The start cron fans out a start message to push-to-start tokens.
- Every ``wake_interval_minutes`` during active hours a silent wake message
  goes to activity tokens so devices refresh their countdowns. The tick is
  skipped when the stop time is ``wake_interval_minutes`` or less away,
  since the stop message refreshes the device anyway.
- The stop cron fans out an end message to activity tokens.

Cron jobs and HTTP control calls share ``trigger_transition``. Transitions
are never rejected because of the current state: a second start or end is
just another fan-out, which devices treat as harmless.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..errors import PushGatewayError, StoreUnavailable
from .payloads import LifecyclePayload, Transition, build_payload
from .push_gateway import DeliveryOutcome, DeliveryResult, PushGateway
from .token_store import TokenKind, TokenRecord, TokenStore

logger = logging.getLogger(__name__)

# Maximum concurrent deliveries within one fan-out
MAX_CONCURRENT_SENDS = 10

WEEKDAY_NAMES = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")

# Crontab numbers weekdays from Sunday (0 and 7)
CRONTAB_DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

# Which token kind each transition is addressed to
PRIMARY_KIND = {
    Transition.START: TokenKind.PUSH_TO_START,
    Transition.UPDATE: TokenKind.ACTIVITY_TOKEN,
    Transition.END: TokenKind.ACTIVITY_TOKEN,
}


class LifecycleState(str, Enum):
    """In-memory lifecycle state, informational only."""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


def _fixed_time_of(cron: str) -> time:
    """Local time of day at which a daily crontab expression fires.

    Only plain ``minute hour`` fields are accepted.
    """
    fields = cron.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 crontab fields: {cron!r}")
    try:
        return time(hour=int(fields[1]), minute=int(fields[0]))
    except ValueError as e:
        raise ValueError(f"Cron expression must fire at a fixed time of day: {cron!r}") from e


def _crontab_weekdays(field_value: str) -> str:
    """Translate a crontab day-of-week field into APScheduler weekday names.

    APScheduler 3 counts weekdays from Monday, so numeric crontab values
    passed through unchanged fire one day late.
    """
    if field_value == "*" or any(c.isalpha() for c in field_value):
        return field_value

    days = set()
    for part in field_value.split(","):
        expr, _, step = part.partition("/")
        if expr == "*":
            first, last = 0, 6
        elif "-" in expr:
            first, last = (int(v) for v in expr.split("-", 1))
        else:
            first = last = int(expr)
        if not (0 <= first <= last <= 7):
            raise ValueError(f"Invalid day-of-week field: {field_value!r}")
        for day in range(first, last + 1, int(step) if step else 1):
            days.add(CRONTAB_DAY_NAMES[day % 7])

    return ",".join(name for name in WEEKDAY_NAMES if name in days)


def crontab_trigger(cron: str, timezone: str) -> CronTrigger:
    """CronTrigger for a standard 5-field crontab expression."""
    fields = cron.split()
    if len(fields) != 5:
        raise ValueError(f"Expected 5 crontab fields: {cron!r}")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_crontab_weekdays(day_of_week),
        timezone=timezone,
    )


@dataclass(frozen=True)
class ScheduleWindow:
    """When the lifecycle crons fire and when wake ticks are allowed."""
    start_cron: str = "0 8 * * 1-5"
    stop_cron: str = "30 16 * * 1-5"
    wake_interval_minutes: int = 10
    active_hours: Tuple[int, int] = (8, 16)  # Inclusive
    active_weekdays: Tuple[int, ...] = (0, 1, 2, 3, 4)  # Monday=0
    timezone: str = "Asia/Seoul"

    def __post_init__(self):
        if not 1 <= self.wake_interval_minutes <= 60:
            raise ValueError("wake_interval_minutes must be between 1 and 60")
        # minute="*/N" only keeps an even spacing when N divides the hour
        if 60 % self.wake_interval_minutes:
            raise ValueError("wake_interval_minutes must divide 60 evenly")
        if self.active_hours[0] > self.active_hours[1]:
            raise ValueError("active_hours start must not be after end")
        # Validate eagerly so a bad config fails at startup
        _fixed_time_of(self.stop_cron)
        self.start_trigger()
        self.stop_trigger()

    @classmethod
    def from_settings(cls, settings) -> "ScheduleWindow":
        return cls(
            start_cron=settings.start_cron,
            stop_cron=settings.stop_cron,
            wake_interval_minutes=settings.wake_interval_minutes,
            active_hours=(settings.active_hour_start, settings.active_hour_end),
            active_weekdays=settings.weekdays,
            timezone=settings.timezone,
        )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def stop_time(self) -> time:
        return _fixed_time_of(self.stop_cron)

    def localize(self, now: Optional[datetime] = None) -> datetime:
        """``now`` in the window's timezone; naive values are taken as local."""
        if now is None:
            return datetime.now(self.tz)
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def is_active_day(self, now: Optional[datetime] = None) -> bool:
        return self.localize(now).weekday() in self.active_weekdays

    def is_active_hour(self, now: Optional[datetime] = None) -> bool:
        local = self.localize(now)
        return self.active_hours[0] <= local.hour <= self.active_hours[1]

    def time_until_stop(self, now: Optional[datetime] = None) -> timedelta:
        """Time left until today's stop; negative once it has passed."""
        local = self.localize(now)
        stop_at = datetime.combine(local.date(), self.stop_time, tzinfo=self.tz)
        return stop_at - local

    def should_wake(self, now: Optional[datetime] = None) -> bool:
        """Whether a wake tick at ``now`` should fan out."""
        local = self.localize(now)
        if not self.is_active_day(local) or not self.is_active_hour(local):
            return False
        return self.time_until_stop(local) > timedelta(minutes=self.wake_interval_minutes)

    def start_trigger(self) -> CronTrigger:
        return crontab_trigger(self.start_cron, self.timezone)

    def stop_trigger(self) -> CronTrigger:
        return crontab_trigger(self.stop_cron, self.timezone)

    def wake_trigger(self) -> CronTrigger:
        """Cron trigger for wake ticks, before ``should_wake`` gating."""
        return CronTrigger(
            minute=f"*/{self.wake_interval_minutes}",
            hour=f"{self.active_hours[0]}-{self.active_hours[1]}",
            day_of_week=",".join(WEEKDAY_NAMES[d] for d in self.active_weekdays),
            timezone=self.timezone,
        )

    def describe(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Diagnostic view of the window at ``now``."""
        local = self.localize(now)
        is_weekday = self.is_active_day(local)
        remaining = self.time_until_stop(local)
        is_school_time = self.is_active_hour(local) and remaining >= timedelta(0)
        return {
            "currentTime": local.isoformat(),
            "timezone": self.timezone,
            "isWeekday": is_weekday,
            "isSchoolTime": is_school_time,
            "shouldWakeBeActive": is_weekday and is_school_time,
            "wakeWouldFire": self.should_wake(local),
            "stopTime": self.stop_time.strftime("%H:%M"),
            "startCron": self.start_cron,
            "stopCron": self.stop_cron,
            "wakeIntervalMinutes": self.wake_interval_minutes,
        }


@dataclass
class FanOutSummary:
    """Aggregate outcome of one lifecycle fan-out."""
    transition: Transition
    source: str
    attempted: int = 0
    delivered: int = 0
    invalid_removed: int = 0
    transient_failures: int = 0
    started_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    results: List[DeliveryResult] = field(default_factory=list)

    def to_dict(self, include_results: bool = False) -> dict:
        data = {
            "transition": self.transition.value,
            "source": self.source,
            "attempted": self.attempted,
            "delivered": self.delivered,
            "invalidRemoved": self.invalid_removed,
            "transientFailures": self.transient_failures,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }
        if include_results:
            data["results"] = [r.to_dict() for r in self.results]
        return data


class ActivityLifecycleScheduler:
    """Decides when lifecycle pushes go out and fans them out to tokens."""

    def __init__(
        self,
        store: TokenStore,
        gateway: PushGateway,
        window: Optional[ScheduleWindow] = None,
        max_concurrent_sends: int = MAX_CONCURRENT_SENDS,
    ):
        self.store = store
        self.gateway = gateway
        self.window = window or ScheduleWindow()
        self.max_concurrent_sends = max_concurrent_sends
        self.state = LifecycleState.IDLE
        self.last_summaries: Dict[Transition, FanOutSummary] = {}
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    # -- timers -------------------------------------------------------------

    def start(self):
        """Start the cron jobs."""
        if self._running:
            return

        self.scheduler = AsyncIOScheduler(timezone=self.window.timezone)

        self.scheduler.add_job(
            self._run_start,
            trigger=self.window.start_trigger(),
            id="live_activity_start",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=60,
        )
        self.scheduler.add_job(
            self._run_stop,
            trigger=self.window.stop_trigger(),
            id="live_activity_stop",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=60,
        )
        self.scheduler.add_job(
            self._run_wake,
            trigger=self.window.wake_trigger(),
            id="live_activity_wake",
            replace_existing=True,
            max_instances=1,
            misfire_grace_time=30,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            f"Scheduler started (start='{self.window.start_cron}', stop='{self.window.stop_cron}', "
            f"wake every {self.window.wake_interval_minutes}m, tz={self.window.timezone})"
        )

    def stop(self):
        """Stop the cron jobs."""
        if self.scheduler and self._running:
            self.scheduler.shutdown(wait=False)
            self._running = False
            logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def next_run_times(self) -> Dict[str, Optional[str]]:
        if not self.scheduler or not self._running:
            return {}
        return {
            job.id: job.next_run_time.isoformat() if job.next_run_time else None
            for job in self.scheduler.get_jobs()
        }

    async def _run_start(self):
        await self._run_cron(Transition.START, source="cron")

    async def _run_stop(self):
        await self._run_cron(Transition.END, source="cron")

    async def _run_wake(self, now: Optional[datetime] = None):
        if not self.window.should_wake(now):
            logger.debug("Wake tick suppressed outside the active window")
            return None
        return await self._run_cron(Transition.UPDATE, source="wake")

    async def _run_cron(self, transition: Transition, source: str) -> Optional[FanOutSummary]:
        """Run a timer-driven transition; failures skip the cycle."""
        try:
            return await self.trigger_transition(transition, source=source)
        except StoreUnavailable as e:
            logger.error(f"{transition.value} cycle failed, token store unavailable: {e}")
        except PushGatewayError as e:
            logger.error(f"{transition.value} cycle aborted by push gateway: {e}")
        return None

    # -- transitions --------------------------------------------------------

    async def trigger_transition(
        self,
        transition: Transition,
        data: Optional[Dict[str, Any]] = None,
        source: str = "http",
    ) -> FanOutSummary:
        """Run a lifecycle transition and fan out its payload.

        Args:
            transition: start, update or end
            data: Optional overrides from a control request
            source: cron, wake or http (for logs and summaries)

        Returns:
            FanOutSummary of the fan-out

        Raises:
            StoreUnavailable: Tokens could not be read
            PushGatewayError: The gateway rejected the payload or credentials
        """
        transition = Transition(transition)
        payload = build_payload(transition, data)

        if transition == Transition.START:
            self.state = LifecycleState.STARTING
            try:
                summary = await self.fan_out(payload, source)
            finally:
                self.state = LifecycleState.ACTIVE
        elif transition == Transition.END:
            self.state = LifecycleState.STOPPING
            try:
                summary = await self.fan_out(payload, source)
            finally:
                self.state = LifecycleState.IDLE
        else:
            summary = await self.fan_out(payload, source)

        self.last_summaries[transition] = summary
        return summary

    async def _targets_for(self, transition: Transition) -> List[TokenRecord]:
        """Tokens a transition is sent to.

        Devices with an apns_token but no token of the primary kind get the
        message through their raw device token instead.
        """
        primary_kind = PRIMARY_KIND[transition]
        primary = await self.store.list_by_kind(primary_kind)
        fallback = await self.store.list_by_kind(TokenKind.APNS_TOKEN)

        covered = {record.device_id for record in primary}
        targets = list(primary)
        targets.extend(record for record in fallback if record.device_id not in covered)
        return targets

    async def fan_out(self, payload: LifecyclePayload, source: str = "http") -> FanOutSummary:
        """Send ``payload`` to every target token independently.

        Invalid tokens are removed from the store. Transient failures are
        only counted; the next tick retries them.
        """
        summary = FanOutSummary(transition=payload.transition, source=source)
        targets = await self._targets_for(payload.transition)
        summary.attempted = len(targets)

        if not targets:
            logger.warning(f"No tokens registered for {payload.transition.value} ({source})")
            summary.finished_at = datetime.utcnow()
            return summary

        semaphore = asyncio.Semaphore(self.max_concurrent_sends)

        async def send_with_limit(token: TokenRecord) -> DeliveryResult:
            async with semaphore:
                return await self.gateway.send(token, payload)

        summary.results = list(await asyncio.gather(*[send_with_limit(t) for t in targets]))

        for result in summary.results:
            if result.outcome == DeliveryOutcome.DELIVERED:
                summary.delivered += 1
            elif result.outcome == DeliveryOutcome.TRANSIENT_FAILURE:
                summary.transient_failures += 1
            elif result.outcome == DeliveryOutcome.INVALID_TOKEN:
                if await self._prune(result.token):
                    summary.invalid_removed += 1

        summary.finished_at = datetime.utcnow()
        logger.info(
            f"Live Activity {payload.transition.value} ({source}): "
            f"{summary.delivered}/{summary.attempted} delivered, "
            f"{summary.transient_failures} transient failures, "
            f"{summary.invalid_removed} invalid tokens removed"
        )
        return summary

    async def _prune(self, token: TokenRecord) -> bool:
        """Remove a token the gateway reported invalid.

        A token re-registered since the fan-out snapshot is left alone.
        """
        try:
            return await self.store.remove(
                token.device_id, token.kind, token.activity_id, expected_token=token.token
            )
        except StoreUnavailable as e:
            logger.error(f"Could not remove invalid token {token.token[:16]}...: {e}")
            return False

    def status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Scheduler state for the schedule-status endpoint."""
        return {
            "state": self.state.value,
            "schedulerRunning": self._running,
            "window": self.window.describe(now),
            "nextRunTimes": self.next_run_times(),
            "lastFanOuts": {
                transition.value: summary.to_dict()
                for transition, summary in self.last_summaries.items()
            },
        }
