from __future__ import annotations
import datetime
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from errors import ValidationError
from models import Session


class WeekPolicy:
    """Rule deciding which calendar week a session belongs to.

    ``week_start`` is the weekday that opens a week (0 = Monday) and
    ``timezone`` the IANA zone used to turn ``started_at`` into a local date.
    """

    WEEKDAYS = [
        "monday",
        "tuesday",
        "wednesday",
        "thursday",
        "friday",
        "saturday",
        "sunday",
    ]

    def __init__(self, week_start: int | str = 0, timezone: str = "UTC") -> None:
        if isinstance(week_start, str):
            key = week_start.strip().lower()
            if key not in self.WEEKDAYS:
                raise ValidationError(f"unknown weekday {week_start!r}")
            week_start = self.WEEKDAYS.index(key)
        if not 0 <= week_start <= 6:
            raise ValidationError("week_start must be between 0 and 6")
        self.week_start = week_start
        self.timezone = timezone
        if timezone.upper() == "UTC":
            self.tz: datetime.tzinfo = datetime.timezone.utc
        else:
            try:
                self.tz = ZoneInfo(timezone)
            except (KeyError, ValueError) as e:
                raise ValidationError(f"unknown timezone {timezone!r}") from e

    def localize(self, ts: datetime.datetime) -> datetime.datetime:
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=datetime.timezone.utc)
        return ts.astimezone(self.tz)

    def local_date(self, ts: datetime.datetime) -> datetime.date:
        return self.localize(ts).date()

    def week_start_of(self, ts: datetime.datetime) -> datetime.date:
        day = self.local_date(ts)
        offset = (day.weekday() - self.week_start) % 7
        return day - datetime.timedelta(days=offset)


class StatisticsService:
    """Compute progress statistics from supplied sessions.

    The service never touches the store: callers fetch sessions and pass
    them in.
    """

    def __init__(self, policy: WeekPolicy | None = None) -> None:
        self.policy = policy or WeekPolicy()

    def weekly_summary(
        self, sessions: Iterable[Session], weeks: int = 4
    ) -> List[Dict[str, object]]:
        """Return the ``weeks`` most recent non-empty weekly buckets.

        Buckets are ordered most recent first and labelled ``M/D`` by the
        date that opens the week.
        """
        by_week: Dict[datetime.date, Dict[str, int]] = {}
        for s in sessions:
            start = self.policy.week_start_of(s.started_at)
            bucket = by_week.setdefault(
                start, {"session_count": 0, "total_reps": 0, "achieved_count": 0}
            )
            bucket["session_count"] += 1
            bucket["total_reps"] += s.total_reps
            if s.is_achieved:
                bucket["achieved_count"] += 1
        result: List[Dict[str, object]] = []
        for start in sorted(by_week, reverse=True)[: max(weeks, 0)]:
            result.append(
                {
                    "week_start": start.isoformat(),
                    "label": f"{start.month}/{start.day}",
                    **by_week[start],
                }
            )
        return result

    def exercise_series(
        self, sessions: Iterable[Session], template_id: Optional[str] = None
    ) -> List[Dict[str, object]]:
        """Return one progression point per session, oldest first."""
        chosen = [
            s for s in sessions if template_id is None or s.template_id == template_id
        ]
        chosen.sort(key=lambda s: s.started_at)
        series: List[Dict[str, object]] = []
        for s in chosen:
            local = self.policy.localize(s.started_at)
            series.append(
                {
                    "session_id": s.id,
                    "started_at": s.started_at.isoformat(),
                    "date": local.strftime("%m/%d"),
                    "total_reps": s.total_reps,
                    "max_reps": s.max_set_reps,
                }
            )
        return series

    def active_days(self, sessions: Iterable[Session]) -> List[str]:
        """Return sorted local dates that have at least one session."""
        days = {self.policy.local_date(s.started_at) for s in sessions}
        return [d.isoformat() for d in sorted(days)]

    def sessions_on(
        self, sessions: Iterable[Session], day: datetime.date
    ) -> List[Session]:
        """Return sessions started on local ``day``, most recent first."""
        matched = [s for s in sessions if self.policy.local_date(s.started_at) == day]
        matched.sort(key=lambda s: s.started_at, reverse=True)
        return matched
