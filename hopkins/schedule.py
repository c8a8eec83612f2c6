from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from hopkins.errors import ScheduleError

UTC = timezone.utc
DEFAULT_TIMEZONE = "UTC"
MAX_SKIP = 10000


def ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timezone(name: Any) -> ZoneInfo:
    if not isinstance(name, str) or not name.strip():
        raise ScheduleError("timezone must be a non-empty string")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError(f'invalid timezone "{name}"') from exc


def validate_cron(expression: Any, zone: ZoneInfo) -> str:
    if not isinstance(expression, str) or not expression.strip():
        raise ScheduleError(f"cron expression must be a non-empty string, got {expression!r}")
    text = " ".join(expression.split())
    try:
        croniter(text, datetime.now(tz=zone))
    except (ValueError, KeyError) as exc:
        raise ScheduleError(f'invalid cron expression "{text}": {exc}') from exc
    return text


class OccurrenceSet:
    """Union of the instants produced by one or more cron expressions.

    Cron fields are read in ``timezone``; all instants returned are UTC.
    An empty set never fires.
    """

    def __init__(self, expressions: Sequence[str] = (), timezone_name: str = DEFAULT_TIMEZONE):
        self.timezone_name = timezone_name
        self.timezone = parse_timezone(timezone_name)
        self.expressions: Tuple[str, ...] = tuple(validate_cron(expr, self.timezone) for expr in expressions)

    def __repr__(self) -> str:
        return f"OccurrenceSet({list(self.expressions)!r}, timezone_name={self.timezone_name!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OccurrenceSet):
            return NotImplemented
        return self.timezone_name == other.timezone_name and set(self.expressions) == set(other.expressions)

    def __hash__(self) -> int:
        return hash((self.timezone_name, frozenset(self.expressions)))

    def __contains__(self, instant: datetime) -> bool:
        return self.contains(instant)

    @property
    def is_empty(self) -> bool:
        return not self.expressions

    def union(self, other: "OccurrenceSet") -> "OccurrenceSet":
        if other.timezone_name != self.timezone_name:
            raise ScheduleError(
                f"cannot union schedules in {self.timezone_name} and {other.timezone_name}"
            )
        merged = list(self.expressions)
        merged.extend(expr for expr in other.expressions if expr not in merged)
        return OccurrenceSet(merged, self.timezone_name)

    def next_after(self, instant: datetime) -> Optional[datetime]:
        after = ensure_aware_utc(instant)
        candidates = [nxt for nxt in (self._next_for(expr, after) for expr in self.expressions) if nxt]
        return min(candidates) if candidates else None

    def contains(self, instant: datetime) -> bool:
        at = ensure_aware_utc(instant)
        if at.microsecond:
            return False
        return self.next_after(at - timedelta(seconds=1)) == at

    def is_due(self, instant: datetime) -> bool:
        return self.contains(ensure_aware_utc(instant).replace(second=0, microsecond=0))

    def next_occurrences(self, count: int, after: Optional[datetime] = None) -> List[datetime]:
        cursor = ensure_aware_utc(after or datetime.now(tz=UTC))
        runs: List[datetime] = []
        while len(runs) < count:
            nxt = self.next_after(cursor)
            if nxt is None:
                break
            runs.append(nxt)
            cursor = nxt
        return runs

    def _next_for(self, expression: str, after_utc: datetime) -> Optional[datetime]:
        local_after = after_utc.astimezone(self.timezone).replace(microsecond=0)
        iterator = croniter(expression, local_after)
        for _ in range(MAX_SKIP):
            nxt = iterator.get_next(datetime)
            if nxt.tzinfo is None:
                nxt = nxt.replace(tzinfo=self.timezone)
            nxt = nxt.astimezone(UTC)
            if nxt > after_utc:
                return nxt
        return None


def compute_occurrence_set(raw: Any) -> Optional[OccurrenceSet]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ScheduleError("schedule must be a mapping")

    timezone_name = raw.get("timezone", DEFAULT_TIMEZONE)
    superset = OccurrenceSet((), timezone_name)

    cron = raw.get("cron")
    if cron is None:
        return superset
    expressions: Iterable[Any] = [cron] if isinstance(cron, str) else cron
    if not isinstance(expressions, list):
        raise ScheduleError("schedule.cron must be a string or a list of strings")
    for expression in expressions:
        superset = superset.union(OccurrenceSet([expression], timezone_name))
    return superset
