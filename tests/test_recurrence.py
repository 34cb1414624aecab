from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from recurrence import (
    Recurrence,
    active_window,
    adjusted_amount_for_date,
    average_daily_amount,
    base_daily_amount,
    cycle_days,
    describe,
    is_active_in_period,
    is_active_on_date,
    is_recurring,
    monthly_amount,
    monthly_amount_with_adjustments,
    next_occurrence,
    normalize,
    occurrences_between,
    original_amount,
    range_amount,
    round_units,
    standard_monthly_amount,
    with_daily_adjustment,
    without_daily_adjustment,
)


def _expense(frequency: str, amount, interval=1, **extra) -> dict:
    recurrence = {"frequency": frequency, "interval": interval, "isActive": True}
    recurrence.update(extra.pop("recurrence", {}))
    record = {"type": "recurring", "amount": amount, "recurrence": recurrence}
    record.update(extra)
    return record


def test_custom_interval_splits_amount_per_day():
    record = _expense("custom", 300000, interval=15)
    assert base_daily_amount(record, "2025-06") == Decimal("20000")
    assert monthly_amount(record, "2025-06") == 600000


def test_daily_frequency_scenario():
    record = _expense("daily", 10000)
    assert base_daily_amount(record, "2025-07") == Decimal("10000")
    assert monthly_amount(record, "2025-07") == 310000


def test_weekly_frequency_scenario():
    record = _expense("weekly", 70000)
    assert base_daily_amount(record, "2025-07") == Decimal("10000")
    # Four whole weeks fit in July.
    assert monthly_amount(record, "2025-07") == 280000


def test_yearly_daily_amount_is_not_rounded():
    record = _expense("yearly", 1200000)
    daily = base_daily_amount(record, "2025-07")
    assert daily.quantize(Decimal("0.01")) == Decimal("3287.67")
    assert daily != daily.quantize(Decimal("0.01"))
    assert monthly_amount(record, "2025-07") == 100000


def test_monthly_daily_amount_uses_real_month_length():
    record = _expense("monthly", 280000)
    assert base_daily_amount(record, "2025-02") == Decimal("10000")
    assert base_daily_amount(record, "2024-02") == Decimal("280000") / 29
    assert monthly_amount(record, "2025-02") == 280000


def test_monthly_with_interval_divides_amount():
    record = _expense("monthly", 300000, interval=3)
    assert monthly_amount(record, "2025-05") == 100000


def test_average_daily_matches_base_daily():
    for record in (
        _expense("custom", 300000, interval=15),
        _expense("monthly", 310000),
        _expense("yearly", 365000),
    ):
        assert average_daily_amount(record, "2025-01") == base_daily_amount(
            record, "2025-01"
        )


def test_creation_date_clamps_range_start():
    record = _expense("monthly", 100000, createdAt="2025-06-10T15:30:00")
    # 21 days of June at 100000 / 30 per day.
    assert range_amount(record, "2025-01-01", "2025-06-30") == 70000


def test_creation_clamp_reads_aware_timestamps_in_utc():
    record = _expense(
        "daily",
        1000,
        createdAt=datetime(2025, 3, 9, 23, 0, tzinfo=timezone.utc),
    )
    assert range_amount(record, "2025-03-01", "2025-03-10") == 2000


def test_range_before_creation_is_zero():
    record = _expense("daily", 1000, createdAt="2025-06-10")
    assert range_amount(record, "2025-01-01", "2025-01-31") == 0


def test_unreadable_creation_timestamp_skips_clamp():
    record = _expense("daily", 1000, createdAt="yesterday-ish")
    assert range_amount(record, "2025-01-01", "2025-01-10") == 10000


def test_range_counts_only_worked_days_inside_range():
    record = _expense("daily", 1000)
    worked = ["2025-01-02", "2025-01-02", date(2025, 1, 3), "2025-02-01", "garbage"]
    assert range_amount(record, "2025-01-01", "2025-01-31", worked) == 2000


def test_override_round_trip():
    record = _expense("monthly", 300000)
    stored = with_daily_adjustment(record, "2025-09-12", -5000)
    assert stored["adjustmentsMonth"] == "2025-09"
    assert stored["dailyAdjustments"] == {"12": {"amount": -5000}}

    updated = dict(record, recurrence=stored)
    assert adjusted_amount_for_date(updated, "2025-09-12") == Decimal("5000")


def test_override_never_goes_negative():
    record = _expense("monthly", 30000)
    updated = dict(record, recurrence=with_daily_adjustment(record, "2025-09-12", -5000))
    assert adjusted_amount_for_date(updated, "2025-09-12") == Decimal("0")


def test_override_applies_only_in_its_month():
    record = _expense(
        "monthly",
        310000,
        recurrence={"adjustmentsMonth": "2025-03", "dailyAdjustments": {"05": {"amount": 500}}},
    )
    assert adjusted_amount_for_date(record, "2025-03-05") == Decimal("10500")
    assert adjusted_amount_for_date(record, "2025-04-05") == base_daily_amount(
        record, "2025-04"
    )


def test_override_day_is_read_from_the_date_string():
    record = _expense(
        "daily",
        1000,
        recurrence={"adjustmentsMonth": "2025-03", "dailyAdjustments": {"01": {"amount": 250}}},
    )
    assert adjusted_amount_for_date(record, "2025-03-01T00:00:00-05:00") == Decimal("1250")
    assert adjusted_amount_for_date(record, "2025-02-28") == Decimal("1000")


def test_monthly_amount_walks_days_when_month_has_overrides():
    record = _expense("daily", 1000)
    recurrence = with_daily_adjustment(record, "2025-04-10", 500)
    recurrence = with_daily_adjustment(dict(record, recurrence=recurrence), "2025-04-11", -2000)
    updated = dict(record, recurrence=recurrence)

    assert monthly_amount(updated, "2025-04") == 30000 + 500 - 1000
    assert monthly_amount_with_adjustments(updated, "2025-04") == 29500
    assert standard_monthly_amount(updated, "2025-04") == 30000
    assert monthly_amount(updated, "2025-05") == 31000


def test_writing_into_a_new_month_resets_overrides():
    record = _expense(
        "monthly",
        300000,
        recurrence={"adjustmentsMonth": "2025-03", "dailyAdjustments": {"05": {"amount": 500}}},
    )
    stored = with_daily_adjustment(record, "2025-04-02", 100)
    assert stored["adjustmentsMonth"] == "2025-04"
    assert stored["dailyAdjustments"] == {"02": {"amount": 100}}


def test_removing_last_override_clears_month():
    record = _expense("monthly", 300000)
    stored = with_daily_adjustment(record, "2025-09-12", 100)
    cleared = without_daily_adjustment(dict(record, recurrence=stored), "2025-09-12")
    assert cleared["dailyAdjustments"] == {}
    assert cleared["adjustmentsMonth"] is None


def test_adjustment_builder_rejects_bad_input():
    record = _expense("monthly", 300000)
    with pytest.raises(ValueError):
        with_daily_adjustment(record, "12/09/2025", 100)
    with pytest.raises(ValueError):
        with_daily_adjustment(record, "2025-09-12", "lots")


@pytest.mark.parametrize(
    "record",
    [
        {},
        None,
        "monthly",
        {"amount": 1000},
        {"frequency": "weekly", "interval": "3 weeks", "amount": 10},
        {"recurringConfig": {"frequency": "quincenal"}, "amount": 10},
        {"recurrence": {"pattern": "biweekly", "frequency": "monthly"}},
        {"recurrence": {"frequency": "daily", "interval": 4, "isActive": False}},
        {"frequency": {"type": "Mensual", "interval": 2}},
        Recurrence(frequency="yearly", interval=2, is_active=True),
        {"recurrence": {"frequency": "quarterly", "interval": 5}},
    ],
)
def test_normalize_is_idempotent(record):
    once = normalize(record)
    assert normalize(once) == once
    assert normalize({"recurrence": once.to_dict()}) == once


def test_pattern_wins_over_frequency():
    recurrence = normalize({"recurrence": {"pattern": "biweekly", "frequency": "monthly"}})
    assert (recurrence.frequency, recurrence.interval) == ("custom", 14)


def test_legacy_recurring_config_is_read():
    recurrence = normalize(
        {"recurringConfig": {"frequency": "weekly", "interval": 2, "startDate": "2025-01-01"}}
    )
    assert (recurrence.frequency, recurrence.interval) == ("custom", 14)
    assert recurrence.start_date == "2025-01-01"
    assert recurrence.is_active is True


def test_canonical_field_takes_precedence_over_legacy():
    recurrence = normalize(
        {
            "recurrence": {"frequency": "yearly"},
            "recurringConfig": {"frequency": "daily"},
            "frequency": "weekly",
        }
    )
    assert recurrence.frequency == "yearly"


def test_flat_and_nested_frequency_fields():
    assert normalize({"frequency": "weekly"}).frequency == "weekly"
    nested = normalize({"frequency": {"code": "daily", "interval": "3"}})
    assert (nested.frequency, nested.interval) == ("custom", 3)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ({"frequency": "monthly", "interval": 15}, ("custom", 15)),
        ({"frequency": "daily", "interval": 1}, ("daily", 1)),
        ({"frequency": "daily", "interval": 5}, ("custom", 5)),
        ({"frequency": "weekly", "interval": 2}, ("custom", 14)),
        ({"frequency": "weekly", "interval": 3}, ("weekly", 3)),
        ({"frequency": "Quincenal"}, ("custom", 15)),
        ({"frequency": "trimestral"}, ("monthly", 3)),
        ({"frequency": "semestral", "interval": 2}, ("monthly", 12)),
        ({"frequency": " ANUAL "}, ("yearly", 1)),
        ({"frequency": "quarterly", "interval": 5}, ("monthly", 15)),
        ({"frequency": "biannual", "interval": 3}, ("monthly", 18)),
        ({"frequency": "mensual", "interval": 15}, ("custom", 15)),
    ],
)
def test_frequency_canonicalization(raw, expected):
    recurrence = normalize({"recurrence": raw})
    assert (recurrence.frequency, recurrence.interval) == expected


@pytest.mark.parametrize("interval", ["abc", "", None, 0, -4, "0", True, 2.9, "7days"])
def test_interval_coercion(interval):
    recurrence = normalize({"recurrence": {"frequency": "yearly", "interval": interval}})
    assert recurrence.interval >= 1
    if interval == "7days":
        assert recurrence.interval == 7
    elif interval == 2.9:
        assert recurrence.interval == 2


def test_missing_recurrence_is_inactive_monthly():
    recurrence = normalize({"amount": 5000})
    assert recurrence == Recurrence(frequency="monthly", interval=1, is_active=False)


def test_unknown_frequency_uses_monthly_formula():
    record = _expense("fortnightly-ish", 310000)
    assert base_daily_amount(record, "2025-01") == Decimal("10000")
    assert monthly_amount(record, "2025-01") == 310000
    assert describe(record) == "Recurring"
    assert cycle_days("fortnightly-ish") == 30


@pytest.mark.parametrize(
    ("raw", "text"),
    [
        ({"frequency": "custom", "interval": 15}, "Every 15 days"),
        ({"frequency": "monthly"}, "Monthly"),
        ({"frequency": "monthly", "interval": 2}, "Every 2 months"),
        ({"frequency": "yearly", "interval": 2}, "Every 2 years"),
        ({"frequency": "weekly"}, "Weekly"),
        ({"frequency": "weekly", "interval": 3}, "Every 3 weeks"),
        ({"frequency": "daily"}, "Daily"),
    ],
)
def test_describe(raw, text):
    assert describe({"recurrence": raw}) == text


def test_malformed_inputs_contribute_zero():
    record = _expense("daily", 1000)
    assert adjusted_amount_for_date(record, "not-a-date") == Decimal("0")
    assert adjusted_amount_for_date(record, "2025-02-30") == Decimal("0")
    assert range_amount(record, "2025-13-01", "2025-12-31") == 0
    assert range_amount(record, "2025-01-10", "2025-01-01") == 0
    assert monthly_amount(record, "garbage") == 0
    assert standard_monthly_amount(record, "2025-13") == 0
    assert base_daily_amount(record, "nope") == Decimal("0")


def test_bad_amounts_are_zero():
    assert original_amount({"amount": "abc"}) == Decimal("0")
    assert original_amount({"amount": float("nan")}) == Decimal("0")
    assert original_amount({"amount": "1500.5"}) == Decimal("1500.5")
    assert monthly_amount(_expense("monthly", None), "2025-01") == 0


def test_amounts_are_never_negative():
    record = _expense(
        "daily",
        1000,
        recurrence={
            "adjustmentsMonth": "2025-01",
            "dailyAdjustments": {"03": {"amount": -99999}, "04": {"amount": "x"}},
        },
    )
    for day in range(1, 32):
        assert adjusted_amount_for_date(record, f"2025-01-{day:02d}") >= 0
    assert adjusted_amount_for_date(record, "2025-01-04") == Decimal("1000")


def test_round_units_rounds_half_up():
    assert round_units(Decimal("2.5")) == 3
    assert round_units(Decimal("3.49")) == 3
    assert round_units(Decimal("0")) == 0


def test_cycle_days():
    assert cycle_days("custom", 15) == 15
    assert cycle_days("weekly", 2) == 14
    assert cycle_days("yearly") == 365
    assert cycle_days("monthly", "3") == 90


def test_is_recurring():
    assert is_recurring({"type": "recurring-template"})
    assert is_recurring({"recurringConfig": {"frequency": "monthly"}})
    assert not is_recurring({"type": "one-time"})
    assert not is_recurring(None)


def test_active_window_checks():
    record = _expense(
        "monthly",
        1000,
        recurrence={"startDate": "2025-03-01", "endDate": "2025-05-31"},
    )
    assert is_active_on_date(record, "2025-04-15")
    assert not is_active_on_date(record, "2025-02-28")
    assert not is_active_on_date(record, "2025-06-01")
    assert is_active_in_period(record, date(2025, 5, 1), date(2025, 6, 30))
    assert not is_active_in_period(record, date(2025, 6, 1), date(2025, 6, 30))

    paused = _expense("monthly", 1000, recurrence={"isActive": False})
    assert not is_active_on_date(paused, "2025-04-15")


def test_next_occurrence_keeps_anchor_day():
    recurrence = normalize({"recurrence": {"frequency": "monthly"}})
    anchor = date(2025, 1, 31)
    feb = next_occurrence(recurrence, anchor, anchor)
    assert feb == date(2025, 2, 28)
    assert next_occurrence(recurrence, feb, anchor) == date(2025, 3, 31)


def test_occurrences_between_honours_window():
    record = _expense(
        "custom",
        1000,
        interval=15,
        recurrence={"startDate": "2025-01-01", "endDate": "2025-02-10"},
    )
    assert occurrences_between(record, date(2025, 1, 10), date(2025, 3, 31)) == [
        date(2025, 1, 16),
        date(2025, 1, 31),
    ]


def test_occurrences_fall_back_to_creation_day():
    record = _expense("weekly", 1000, createdAt="2025-01-06T08:00:00")
    assert occurrences_between(record, date(2025, 1, 1), date(2025, 1, 20)) == [
        date(2025, 1, 6),
        date(2025, 1, 13),
        date(2025, 1, 20),
    ]
    assert occurrences_between({"recurrence": {"frequency": "weekly"}}, date(2025, 1, 1), date(2025, 2, 1)) == []


def test_fifteen_month_cycle_survives_storage():
    recurrence = normalize({"recurrence": {"frequency": "quarterly", "interval": 5}})
    stored = recurrence.to_dict()
    assert normalize({"recurrence": stored}) == recurrence
    assert describe({"recurrence": stored}) == "Every 15 months"
    assert monthly_amount({"amount": 1500000, "recurrence": stored}, "2025-06") == 100000


def test_active_window_clamps_to_start_and_end():
    record = _expense(
        "daily",
        1000,
        recurrence={"startDate": "2025-06-05", "endDate": "2025-06-10", "isActive": False},
    )
    assert active_window(record, "2025-06-01", "2025-06-30") == (
        date(2025, 6, 5),
        date(2025, 6, 10),
    )
    assert active_window(record, "2025-07-01", "2025-07-31") is None
    assert active_window(record, "bad", "2025-07-31") is None
