"""Recurring-expense calculations.

Every function here is pure: it reads a plain expense record (the mapping
produced by ``Expense.to_record()`` or received from a client) and returns a
number or a string. Bad input never raises on the read path; it degrades to
defaults or to a zero contribution.

Day-of-month lookups for daily adjustments are always read from the
``YYYY-MM-DD`` string itself, never from a timezone-aware datetime.
"""

import logging
import math
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Mapping, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"
CUSTOM = "custom"

FREQUENCIES = (DAILY, WEEKLY, MONTHLY, YEARLY, CUSTOM)

RECURRING_TYPES = {"recurring", "recurring-template", "recurring-instance"}

_FREQUENCY_ALIASES = {
    "diario": DAILY,
    "semanal": WEEKLY,
    "mensual": MONTHLY,
    "anual": YEARLY,
}
# Legacy month multiples, e.g. quarterly == every 3 months.
_MONTH_MULTIPLES = {
    "quarterly": 3,
    "trimestral": 3,
    "biannual": 6,
    "semestral": 6,
}
_FIXED_DAY_CYCLES = {
    "biweekly": 14,
    "quincenal": 15,
}

_ISO_DAY = re.compile(r"^\d{4}-\d{2}-\d{2}")
_ISO_MONTH = re.compile(r"^(\d{4})-(\d{2})")
_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

MonthLike = Union[str, date, None]
DayLike = Union[str, date]


@dataclass(frozen=True)
class Recurrence:
    frequency: str = MONTHLY
    interval: int = 1
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    is_active: bool = False
    daily_adjustments: dict = field(default_factory=dict)
    adjustments_month: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        frequency, interval = self.frequency, self.interval
        # Stored monthly/15 reads back as every 15 days; 15 months is 5 quarters.
        if frequency == MONTHLY and interval == 15:
            frequency, interval = "quarterly", 5
        return {
            "frequency": frequency,
            "interval": interval,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "isActive": self.is_active,
            "dailyAdjustments": dict(self.daily_adjustments),
            "adjustmentsMonth": self.adjustments_month,
        }


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def month_key(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def _frequency_token(value: object) -> Optional[str]:
    if isinstance(value, Mapping):
        value = value.get("type") or value.get("value") or value.get("code")
    if isinstance(value, str) and value.strip():
        return value.strip().lower()
    return None


def _coerce_interval(value: object) -> int:
    if value is None or isinstance(value, bool):
        return 1
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, (float, Decimal)):
        try:
            parsed = int(value)
        except (ValueError, OverflowError):
            parsed = 1
    elif isinstance(value, str):
        match = _LEADING_INT.match(value)
        parsed = int(match.group(1)) if match else 1
    else:
        parsed = 1
    return max(1, parsed)


def _coerce_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"", "0", "false", "no", "off"}
    return bool(value)


def _date_text(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _month_text(value: object) -> Optional[str]:
    if isinstance(value, date):
        return month_key(value.year, value.month)
    if isinstance(value, str) and value.strip():
        return value.strip()[:7]
    return None


def _canonicalize(frequency: str, interval: int) -> tuple[str, int]:
    frequency = _FREQUENCY_ALIASES.get(frequency, frequency)
    if frequency in _FIXED_DAY_CYCLES:
        return CUSTOM, _FIXED_DAY_CYCLES[frequency]
    if frequency == MONTHLY and interval == 15:
        return CUSTOM, 15
    if frequency in _MONTH_MULTIPLES:
        return MONTHLY, interval * _MONTH_MULTIPLES[frequency]
    if frequency == DAILY and interval > 1:
        return CUSTOM, interval
    if frequency == WEEKLY and interval == 2:
        return CUSTOM, 14
    return frequency, interval


def is_known_frequency(value: object) -> bool:
    token = _frequency_token(value)
    return token is not None and (
        token in FREQUENCIES
        or token in _FREQUENCY_ALIASES
        or token in _MONTH_MULTIPLES
        or token in _FIXED_DAY_CYCLES
    )


def normalize(record: object) -> Recurrence:
    """Resolve any recurrence shape into the canonical ``Recurrence``.

    Precedence: ``recurrence`` (whose ``pattern`` wins over ``frequency``),
    then the legacy ``recurringConfig``, then flat ``frequency``/``interval``
    on the record itself. A record without any recurrence information is a
    monthly, inactive descriptor.
    """
    if isinstance(record, Recurrence):
        return record
    if not isinstance(record, Mapping):
        return Recurrence()

    recurrence = record.get("recurrence")
    legacy = record.get("recurringConfig")
    if isinstance(recurrence, Mapping) and recurrence:
        config: Mapping = recurrence
        frequency = _frequency_token(config.get("pattern")) or _frequency_token(
            config.get("frequency")
        )
        has_info = True
    elif isinstance(legacy, Mapping) and legacy:
        config = legacy
        frequency = _frequency_token(config.get("frequency"))
        has_info = True
    else:
        config = record
        frequency = None
        has_info = False
    interval = config.get("interval")

    flat_frequency = record.get("frequency")
    if not frequency:
        frequency = _frequency_token(flat_frequency)
    if interval is None or interval == "":
        interval = record.get("interval")
    if (interval is None or interval == "") and isinstance(flat_frequency, Mapping):
        interval = flat_frequency.get("interval")
    if frequency or record.get("interval") is not None:
        has_info = True

    final_frequency, final_interval = _canonicalize(
        frequency or MONTHLY, _coerce_interval(interval)
    )

    is_active = config.get("isActive")
    if is_active is None:
        is_active = record.get("isActive")
    if is_active is None:
        is_active = has_info

    adjustments = config.get("dailyAdjustments")
    return Recurrence(
        frequency=final_frequency,
        interval=max(1, final_interval),
        start_date=_date_text(config.get("startDate") or record.get("startDate")),
        end_date=_date_text(config.get("endDate") or record.get("endDate")),
        is_active=_coerce_bool(is_active),
        daily_adjustments=dict(adjustments) if isinstance(adjustments, Mapping) else {},
        adjustments_month=_month_text(config.get("adjustmentsMonth")),
    )


def _coerce_decimal(value: object) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value)) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            parsed = Decimal(value.strip())
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None
    return None


def original_amount(record: object) -> Decimal:
    if not isinstance(record, Mapping):
        return ZERO
    return _coerce_decimal(record.get("amount")) or ZERO


def _iso_day(value: object) -> Optional[str]:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not _ISO_DAY.match(text):
        return None
    try:
        date.fromisoformat(text[:10])
    except ValueError:
        return None
    return text[:10]


def _parse_day(value: object) -> Optional[date]:
    text = _iso_day(value)
    return date.fromisoformat(text) if text else None


def _resolve_month(value: MonthLike) -> Optional[tuple[int, int]]:
    if value is None:
        today = local_today()
        return today.year, today.month
    if isinstance(value, date):
        return value.year, value.month
    if isinstance(value, str):
        match = _ISO_MONTH.match(value.strip())
        if match:
            year, month = int(match.group(1)), int(match.group(2))
            if 1 <= month <= 12:
                return year, month
    return None


def _creation_day(record: Mapping) -> Optional[date]:
    value = record.get("createdAt") or record.get("updatedAt")
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"recurrence: unreadable creation timestamp {value!r}")
            return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    return None


def round_units(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def cycle_days(frequency: str, interval: int = 1) -> int:
    interval = _coerce_interval(interval)
    if frequency in (DAILY, CUSTOM):
        return interval
    if frequency == WEEKLY:
        return interval * 7
    if frequency == MONTHLY:
        return interval * 30
    if frequency == YEARLY:
        return interval * 365
    return 30


def _daily_amount(
    recurrence: Recurrence, amount: Decimal, year: int, month: int
) -> Decimal:
    frequency = recurrence.frequency
    if frequency == DAILY:
        return amount
    if frequency == WEEKLY:
        return amount / 7
    if frequency == YEARLY:
        return amount / 365
    if frequency == CUSTOM:
        return amount / recurrence.interval
    return amount / days_in_month(year, month)


def base_daily_amount(record: object, on: MonthLike = None) -> Decimal:
    """Per-day share of ``amount`` for the month containing ``on``.

    ``on`` defaults to the current month in the configured timezone; pass it
    explicitly for reproducible results.
    """
    month = _resolve_month(on)
    if month is None:
        logger.warning(f"recurrence: unreadable month {on!r}")
        return ZERO
    return _daily_amount(normalize(record), original_amount(record), *month)


def average_daily_amount(record: object, on: MonthLike = None) -> Decimal:
    """Evenly distributed daily amount used by month-level projections.

    Shares the formulas of ``base_daily_amount``; kept as its own entry point
    so projection code reads as what it means.
    """
    return base_daily_amount(record, on)


def _adjustment_delta(adjustments: Mapping, day: str) -> Optional[Decimal]:
    entry = adjustments.get(day)
    if not isinstance(entry, Mapping):
        return None
    return _coerce_decimal(entry.get("amount"))


def _adjusted_amount(recurrence: Recurrence, amount: Decimal, day: str) -> Decimal:
    base = _daily_amount(recurrence, amount, int(day[:4]), int(day[5:7]))
    if recurrence.adjustments_month != day[:7]:
        return base
    delta = _adjustment_delta(recurrence.daily_adjustments, day[8:10])
    if delta is None:
        return base
    return max(ZERO, base + delta)


def adjusted_amount_for_date(record: object, iso_date: DayLike) -> Decimal:
    day = _iso_day(iso_date)
    if day is None:
        logger.warning(f"recurrence: unreadable date {iso_date!r}")
        return ZERO
    return _adjusted_amount(normalize(record), original_amount(record), day)


def _standard_monthly(
    recurrence: Recurrence, amount: Decimal, year: int, month: int
) -> Decimal:
    dim = days_in_month(year, month)
    interval = recurrence.interval
    frequency = recurrence.frequency
    if frequency == DAILY:
        return amount * (dim // interval)
    if frequency == WEEKLY:
        return amount * ((dim // 7) // interval)
    if frequency == YEARLY:
        return amount / (12 * interval)
    if frequency == CUSTOM:
        return amount / interval * dim
    return amount if interval == 1 else amount / interval


def _sum_month(recurrence: Recurrence, amount: Decimal, year: int, month: int) -> Decimal:
    total = ZERO
    for day in range(1, days_in_month(year, month) + 1):
        total += _adjusted_amount(recurrence, amount, f"{month_key(year, month)}-{day:02d}")
    return total


def standard_monthly_amount(record: object, target_month: MonthLike = None) -> int:
    month = _resolve_month(target_month)
    if month is None:
        logger.warning(f"recurrence: unreadable month {target_month!r}")
        return 0
    return round_units(
        _standard_monthly(normalize(record), original_amount(record), *month)
    )


def monthly_amount_with_adjustments(record: object, target_month: MonthLike = None) -> int:
    month = _resolve_month(target_month)
    if month is None:
        logger.warning(f"recurrence: unreadable month {target_month!r}")
        return 0
    return round_units(_sum_month(normalize(record), original_amount(record), *month))


def monthly_amount(record: object, target_month: MonthLike = None) -> int:
    """Total for one calendar month, rounded to whole currency units.

    Walks the month day by day when daily adjustments exist for exactly that
    month, otherwise uses the closed-form estimate for the frequency.
    """
    month = _resolve_month(target_month)
    if month is None:
        logger.warning(f"recurrence: unreadable month {target_month!r}")
        return 0
    recurrence = normalize(record)
    amount = original_amount(record)
    if recurrence.adjustments_month == month_key(*month) and recurrence.daily_adjustments:
        return round_units(_sum_month(recurrence, amount, *month))
    return round_units(_standard_monthly(recurrence, amount, *month))


def range_amount(
    record: object,
    start_date: DayLike,
    end_date: DayLike,
    worked_days: Optional[Iterable[DayLike]] = None,
) -> int:
    """Total between two dates (inclusive), rounded to whole currency units.

    The start is clamped to the record's creation date so a recurring cost is
    never projected into periods before it existed. When ``worked_days`` is
    given only those dates inside the clamped range count.
    """
    start = _parse_day(start_date)
    end = _parse_day(end_date)
    if start is None or end is None:
        logger.warning(
            f"recurrence: unreadable range start={start_date!r} end={end_date!r}"
        )
        return 0
    if isinstance(record, Mapping):
        created = _creation_day(record)
        if created is not None and created > start:
            start = created
    if start > end:
        return 0

    recurrence = normalize(record)
    amount = original_amount(record)
    total = ZERO
    if worked_days is not None:
        start_text, end_text = start.isoformat(), end.isoformat()
        days: set[str] = set()
        for value in worked_days:
            day = _iso_day(value)
            if day is None:
                logger.warning(f"recurrence: skipping unreadable worked day {value!r}")
                continue
            if start_text <= day <= end_text:
                days.add(day)
        for day in sorted(days):
            total += _adjusted_amount(recurrence, amount, day)
        return round_units(total)

    current = start
    while current <= end:
        total += _adjusted_amount(recurrence, amount, current.isoformat())
        current += timedelta(days=1)
    return round_units(total)


def describe(record: object) -> str:
    recurrence = normalize(record)
    interval = recurrence.interval
    frequency = recurrence.frequency
    if frequency == DAILY:
        return f"Every {interval} days" if interval > 1 else "Daily"
    if frequency == WEEKLY:
        return f"Every {interval} weeks" if interval > 1 else "Weekly"
    if frequency == MONTHLY:
        return f"Every {interval} months" if interval > 1 else "Monthly"
    if frequency == YEARLY:
        return f"Every {interval} years" if interval > 1 else "Yearly"
    if frequency == CUSTOM:
        return f"Every {interval} days"
    return "Recurring"


def is_recurring(record: object) -> bool:
    if not isinstance(record, Mapping):
        return False
    return (
        record.get("type") in RECURRING_TYPES
        or bool(record.get("recurrence"))
        or bool(record.get("recurringConfig"))
    )


def is_active_on_date(record: object, on: DayLike) -> bool:
    recurrence = normalize(record)
    if not recurrence.is_active:
        return False
    day = _parse_day(on)
    if day is None:
        return False
    start = _parse_day(recurrence.start_date)
    end = _parse_day(recurrence.end_date)
    if start and day < start:
        return False
    if end and day > end:
        return False
    return True


def active_window(
    record: object, start: DayLike, end: DayLike
) -> Optional[tuple[date, date]]:
    """Part of ``[start, end]`` inside the ``startDate``/``endDate`` window.

    Returns ``None`` when the two do not overlap or a bound is unreadable.
    ``isActive`` is not consulted.
    """
    first = _parse_day(start)
    last = _parse_day(end)
    if first is None or last is None:
        return None
    recurrence = normalize(record)
    window_start = _parse_day(recurrence.start_date)
    window_end = _parse_day(recurrence.end_date)
    if window_start and window_start > first:
        first = window_start
    if window_end and window_end < last:
        last = window_end
    if first > last:
        return None
    return first, last


def is_active_in_period(record: object, start: DayLike, end: DayLike) -> bool:
    if not normalize(record).is_active:
        return False
    return active_window(record, start, end) is not None


def _json_number(value: Decimal) -> Union[int, float]:
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def with_daily_adjustment(record: object, iso_date: DayLike, amount: object) -> dict:
    """Canonical descriptor with ``amount`` stored as the delta for ``iso_date``.

    Adjustments are scoped to one month: writing into a different month than
    ``adjustmentsMonth`` starts from an empty set for the new month.
    """
    day = _iso_day(iso_date)
    if day is None:
        raise ValueError("Adjustment date must be YYYY-MM-DD")
    delta = _coerce_decimal(amount)
    if delta is None:
        raise ValueError("Adjustment amount must be a number")

    recurrence = normalize(record)
    month = day[:7]
    adjustments = (
        dict(recurrence.daily_adjustments)
        if recurrence.adjustments_month == month
        else {}
    )
    adjustments[day[8:10]] = {"amount": _json_number(delta)}
    return replace(
        recurrence, daily_adjustments=adjustments, adjustments_month=month
    ).to_dict()


def without_daily_adjustment(record: object, iso_date: DayLike) -> dict:
    day = _iso_day(iso_date)
    if day is None:
        raise ValueError("Adjustment date must be YYYY-MM-DD")
    recurrence = normalize(record)
    if recurrence.adjustments_month != day[:7]:
        return recurrence.to_dict()
    adjustments = dict(recurrence.daily_adjustments)
    adjustments.pop(day[8:10], None)
    if not adjustments:
        return replace(recurrence, daily_adjustments={}, adjustments_month=None).to_dict()
    return replace(recurrence, daily_adjustments=adjustments).to_dict()


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def next_occurrence(recurrence: Recurrence, from_date: date, anchor: date) -> date:
    frequency = recurrence.frequency
    interval = recurrence.interval
    if frequency in (DAILY, CUSTOM):
        return from_date + timedelta(days=interval)
    if frequency == WEEKLY:
        return from_date + timedelta(weeks=interval)
    if frequency == YEARLY:
        return _add_months(from_date, 12 * interval, desired_day=anchor.day)
    return _add_months(from_date, interval, desired_day=anchor.day)


def occurrences_between(
    record: object, start: date, end: date, *, max_occurrences: int = 1000
) -> list[date]:
    """Occurrence dates in ``[start, end]``, anchored on ``startDate``.

    Falls back to the creation date when the descriptor has no start date.
    The ``endDate`` of the descriptor is honoured.
    """
    recurrence = normalize(record)
    anchor = _parse_day(recurrence.start_date)
    if anchor is None and isinstance(record, Mapping):
        anchor = _creation_day(record)
    if anchor is None:
        return []
    stop = end
    window_end = _parse_day(recurrence.end_date)
    if window_end is not None and window_end < stop:
        stop = window_end

    found: list[date] = []
    current = anchor
    iterations = 0
    while current <= stop and len(found) < max_occurrences:
        if current >= start:
            found.append(current)
        current = next_occurrence(recurrence, current, anchor)
        iterations += 1
        if iterations > 50_000:
            logger.warning("recurrence: occurrence walk aborted after 50000 steps")
            break
    return found
