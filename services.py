from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Protocol

from rapidfuzz.distance import Levenshtein
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from csv_utils import export_expenses
from models import RECURRING_TYPES, Expense, ExpenseType, PaymentMethod
from periods import Period, month_bounds
from recurrence import (
    active_window,
    adjusted_amount_for_date,
    base_daily_amount,
    cycle_days,
    describe,
    is_active_in_period,
    is_active_on_date,
    local_today,
    month_key,
    monthly_amount,
    normalize,
    occurrences_between,
    range_amount,
    round_units,
    standard_monthly_amount,
    with_daily_adjustment,
    without_daily_adjustment,
)
from schemas import DailyAdjustmentIn, ExpenseIn, PaymentMethodIn, RecurrenceIn

logger = logging.getLogger(__name__)

UNCATEGORIZED = "sin-categoria"
CASH_BACKEND_ID = "efectivo"

BUILTIN_PAYMENT_METHODS = (
    ("efectivo", "Efectivo", "Pago en efectivo"),
    ("nequi", "Nequi", "Pago por Nequi"),
    ("nu", "Nu", "Tarjeta Nu"),
    ("daviplata", "Daviplata", "Pago por Daviplata"),
    ("tarjeta", "Tarjeta", "Tarjeta débito/crédito"),
    ("bancolombia", "Bancolombia", "Transferencia Bancolombia"),
    ("digital", "Pago Digital", "Otros métodos digitales"),
)


def get_current_user_id() -> int:
    return 1


def _to_float(value: Decimal, places: int = 2) -> float:
    return float(round(value, places))


class ExpenseNotFound(ValueError):
    pass


class ExpenseCategoryAmbiguous(ValueError):
    pass


class PaymentMethodNotFound(ValueError):
    pass


class PaymentMethodLocked(ValueError):
    pass


@dataclass
class ExpenseFilters:
    type: Optional[ExpenseType] = None
    category: Optional[str] = None
    payment_method: Optional[str] = None
    active: Optional[bool] = None


class PaymentMethodStore(Protocol):
    def list(self, include_hidden: bool = False) -> list[PaymentMethod]: ...

    def get(self, backend_id: str) -> Optional[PaymentMethod]: ...

    def add(self, data: PaymentMethodIn) -> PaymentMethod: ...

    def update(self, backend_id: str, data: PaymentMethodIn) -> PaymentMethod: ...

    def remove(self, backend_id: str) -> None: ...

    def restore(self, backend_id: str) -> None: ...


class SqlPaymentMethodStore:
    """Payment methods persisted per user.

    Built-in methods are seeded on first use. They cannot be edited and
    removing one only hides it; cash can never be removed.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _ensure_builtins(self) -> None:
        existing = set(
            self.session.scalars(
                select(PaymentMethod.backend_id).where(
                    PaymentMethod.user_id == self.user_id,
                    PaymentMethod.is_builtin.is_(True),
                )
            ).all()
        )
        missing = [row for row in BUILTIN_PAYMENT_METHODS if row[0] not in existing]
        if not missing:
            return
        for backend_id, name, description in missing:
            self.session.add(
                PaymentMethod(
                    user_id=self.user_id,
                    backend_id=backend_id,
                    name=name,
                    description=description,
                    is_builtin=True,
                )
            )
        self.session.flush()

    def _lookup(self, backend_id: str) -> Optional[PaymentMethod]:
        return self.session.scalar(
            select(PaymentMethod).where(
                PaymentMethod.user_id == self.user_id,
                PaymentMethod.backend_id == backend_id,
            )
        )

    def list(self, include_hidden: bool = False) -> list[PaymentMethod]:
        self._ensure_builtins()
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.user_id == self.user_id)
            .order_by(PaymentMethod.is_builtin.desc(), PaymentMethod.id)
        )
        if not include_hidden:
            stmt = stmt.where(PaymentMethod.hidden_at.is_(None))
        return self.session.scalars(stmt).all()

    def get(self, backend_id: str) -> Optional[PaymentMethod]:
        self._ensure_builtins()
        return self._lookup(backend_id)

    def add(self, data: PaymentMethodIn) -> PaymentMethod:
        self._ensure_builtins()
        if self._lookup(data.backend_id):
            raise ValueError("Payment method already exists")
        method = PaymentMethod(
            user_id=self.user_id,
            backend_id=data.backend_id,
            name=data.name.strip(),
            description=data.description,
            is_builtin=False,
        )
        self.session.add(method)
        self.session.commit()
        self.session.refresh(method)
        logger.info(f"payment_method_added: backend_id={method.backend_id}")
        return method

    def update(self, backend_id: str, data: PaymentMethodIn) -> PaymentMethod:
        method = self.get(backend_id)
        if not method:
            raise PaymentMethodNotFound("Payment method not found")
        if method.is_builtin:
            raise PaymentMethodLocked("Built-in payment methods cannot be edited")
        if data.backend_id != backend_id:
            if self._lookup(data.backend_id):
                raise ValueError("Payment method already exists")
            self.session.execute(
                update(Expense)
                .where(
                    Expense.user_id == self.user_id,
                    Expense.payment_method == backend_id,
                )
                .values(payment_method=data.backend_id)
            )
        method.backend_id = data.backend_id
        method.name = data.name.strip()
        method.description = data.description
        self.session.commit()
        self.session.refresh(method)
        return method

    def remove(self, backend_id: str) -> None:
        if backend_id == CASH_BACKEND_ID:
            raise PaymentMethodLocked("Cash cannot be removed")
        method = self.get(backend_id)
        if not method:
            raise PaymentMethodNotFound("Payment method not found")
        if method.is_builtin:
            method.hidden_at = datetime.utcnow()
        else:
            self.session.delete(method)
        self.session.commit()
        logger.info(f"payment_method_removed: backend_id={backend_id}")

    def restore(self, backend_id: str) -> None:
        method = self.get(backend_id)
        if not method:
            raise PaymentMethodNotFound("Payment method not found")
        method.hidden_at = None
        self.session.commit()


def _recurrence_payload(data: RecurrenceIn, previous: Optional[dict] = None) -> dict:
    canonical = normalize({"recurrence": data.model_dump(by_alias=True, mode="json")})
    payload = canonical.to_dict()
    if previous:
        kept = normalize({"recurrence": previous})
        payload["dailyAdjustments"] = dict(kept.daily_adjustments)
        payload["adjustmentsMonth"] = kept.adjustments_month
    return payload


class ExpenseService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        payment_methods: Optional[PaymentMethodStore] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.payment_methods = payment_methods or SqlPaymentMethodStore(
            session, self.user_id
        )

    def list(self, filters: Optional[ExpenseFilters] = None) -> list[Expense]:
        filters = filters or ExpenseFilters()
        stmt = (
            select(Expense)
            .where(Expense.user_id == self.user_id)
            .order_by(Expense.created_at.desc(), Expense.id.desc())
        )
        if filters.type is not None:
            stmt = stmt.where(Expense.type == filters.type)
        if filters.category:
            stmt = stmt.where(Expense.category == filters.category)
        if filters.payment_method:
            stmt = stmt.where(Expense.payment_method == filters.payment_method)
        expenses = self.session.scalars(stmt).all()
        if filters.active is not None:
            expenses = [
                expense
                for expense in expenses
                if expense.is_recurring
                and normalize(expense.to_record()).is_active == filters.active
            ]
        return expenses

    def get(self, expense_id: int) -> Expense:
        expense = self.session.get(Expense, expense_id)
        if not expense or expense.user_id != self.user_id:
            raise ExpenseNotFound("Expense not found")
        return expense

    def categories(self) -> list[str]:
        stmt = (
            select(Expense.category)
            .where(Expense.user_id == self.user_id)
            .distinct()
            .order_by(Expense.category)
        )
        return [name for name in self.session.scalars(stmt).all() if name]

    def _resolve_category(self, raw: str) -> str:
        name = raw.strip()
        if not name:
            return UNCATEGORIZED
        lowered = name.lower()
        known = self.categories()
        for existing in known:
            if existing.lower() == lowered:
                return existing

        best_distance: Optional[int] = None
        best: list[str] = []
        for existing in known:
            dist = int(Levenshtein.distance(lowered, existing.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [existing]
            elif dist == best_distance:
                best.append(existing)

        if best_distance is not None and best_distance <= 1:
            if len(best) > 1:
                options = ", ".join(sorted(best))
                raise ExpenseCategoryAmbiguous(
                    f"Category '{name}' is ambiguous; matches: {options}"
                )
            return best[0]
        return name

    def _check_payment_method(self, backend_id: Optional[str]) -> Optional[str]:
        if not backend_id:
            return None
        method = self.payment_methods.get(backend_id)
        if method is None:
            raise ValueError(f"Unknown payment method: {backend_id}")
        return method.backend_id

    def create(self, data: ExpenseIn) -> Expense:
        expense = Expense(
            user_id=self.user_id,
            type=data.type,
            amount=data.amount,
            category=self._resolve_category(data.category),
            payment_method=self._check_payment_method(data.payment_method),
            description=data.description,
        )
        if data.recurrence is not None:
            expense.recurrence = _recurrence_payload(data.recurrence)
            expense.date = data.date or data.recurrence.start_date
        else:
            expense.date = data.date or local_today()
        self.session.add(expense)
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"expense_created: id={expense.id} type={expense.type.value} "
            f"amount={expense.amount}"
        )
        return expense

    def update(self, expense_id: int, data: ExpenseIn) -> Expense:
        expense = self.get(expense_id)
        if expense.type == ExpenseType.recurring_instance:
            raise ValueError("Recurring instances are read-only")
        if data.category != expense.category:
            expense.category = self._resolve_category(data.category)
        expense.type = data.type
        expense.amount = data.amount
        expense.payment_method = self._check_payment_method(data.payment_method)
        expense.description = data.description
        if data.recurrence is not None:
            previous = None
            if expense.is_recurring:
                previous = normalize(expense.to_record()).to_dict()
            expense.recurrence = _recurrence_payload(data.recurrence, previous)
            expense.recurring_config = None
            expense.date = data.date or data.recurrence.start_date or expense.date
        else:
            expense.recurrence = None
            expense.recurring_config = None
            expense.date = data.date or expense.date or local_today()
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def delete(self, expense_id: int) -> None:
        expense = self.get(expense_id)
        self.session.delete(expense)
        self.session.commit()
        logger.info(f"expense_deleted: id={expense_id}")

    def _recurring(self, expense_id: int) -> Expense:
        expense = self.get(expense_id)
        if expense.type not in (ExpenseType.recurring, ExpenseType.recurring_template):
            raise ValueError("Expense is not a recurring expense")
        return expense

    def toggle_active(self, expense_id: int, is_active: bool) -> Expense:
        expense = self._recurring(expense_id)
        payload = normalize(expense.to_record()).to_dict()
        payload["isActive"] = is_active
        expense.recurrence = payload
        expense.recurring_config = None
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def set_daily_adjustment(self, expense_id: int, data: DailyAdjustmentIn) -> Expense:
        expense = self._recurring(expense_id)
        expense.recurrence = with_daily_adjustment(
            expense.to_record(), data.date, data.amount
        )
        expense.recurring_config = None
        self.session.commit()
        self.session.refresh(expense)
        logger.info(
            f"daily_adjustment_set: id={expense_id} date={data.date.isoformat()} "
            f"amount={data.amount}"
        )
        return expense

    def clear_daily_adjustment(self, expense_id: int, on: date) -> Expense:
        expense = self._recurring(expense_id)
        expense.recurrence = without_daily_adjustment(expense.to_record(), on)
        expense.recurring_config = None
        self.session.commit()
        self.session.refresh(expense)
        return expense

    def calculation(self, expense_id: int, month: str) -> dict[str, object]:
        expense = self._recurring(expense_id)
        record = expense.to_record()
        recurrence = normalize(record)
        return {
            "id": expense.id,
            "month": month,
            "description": describe(record),
            "cycle_days": cycle_days(recurrence.frequency, recurrence.interval),
            "base_daily_amount": _to_float(base_daily_amount(record, month)),
            "monthly_amount": monthly_amount(record, month),
            "standard_monthly_amount": standard_monthly_amount(record, month),
            "recurrence": recurrence.to_dict(),
        }


def _window_total(
    record: dict,
    start: date,
    end: date,
    worked_days: Optional[Iterable[date]] = None,
) -> int:
    window = active_window(record, start, end)
    if window is None:
        return 0
    return range_amount(record, window[0], window[1], worked_days)


def _month_total(record: dict, year: int, month: int) -> int:
    start, end = month_bounds(year, month)
    window = active_window(record, start, end)
    if window is None:
        return 0
    if window == (start, end):
        return monthly_amount(record, month_key(year, month))
    # Partially covered months are charged day by day.
    return range_amount(record, window[0], window[1])


class ExpenseReportService:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        payment_methods: Optional[PaymentMethodStore] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()
        self.payment_methods = payment_methods or SqlPaymentMethodStore(
            session, self.user_id
        )

    def _expenses(self) -> list[Expense]:
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.type != ExpenseType.recurring_instance,
            )
            .order_by(Expense.id)
        )
        return self.session.scalars(stmt).all()

    def _split(
        self, start: date, end: date
    ) -> tuple[list[Expense], list[tuple[Expense, dict]]]:
        one_time: list[Expense] = []
        recurring: list[tuple[Expense, dict]] = []
        for expense in self._expenses():
            if expense.type in RECURRING_TYPES:
                record = expense.to_record()
                if is_active_in_period(record, start, end):
                    recurring.append((expense, record))
            elif expense.date and start <= expense.date <= end:
                one_time.append(expense)
        return one_time, recurring

    def _method_name(self, backend_id: Optional[str]) -> str:
        if not backend_id:
            return "Sin método"
        method = self.payment_methods.get(backend_id)
        return method.name if method else backend_id

    def _summarize(
        self,
        one_time: list[tuple[Expense, int]],
        recurring: list[tuple[Expense, int]],
    ) -> dict[str, object]:
        by_category: dict[str, dict[str, int]] = {}
        by_method: dict[str, int] = {}

        def bucket(name: str) -> dict[str, int]:
            return by_category.setdefault(
                name,
                {"total": 0, "one_time_total": 0, "recurring_total": 0, "count": 0},
            )

        for expense, amount in one_time:
            entry = bucket(expense.category or UNCATEGORIZED)
            entry["total"] += amount
            entry["one_time_total"] += amount
            entry["count"] += 1
            key = expense.payment_method or ""
            by_method[key] = by_method.get(key, 0) + amount
        for expense, amount in recurring:
            entry = bucket(expense.category or UNCATEGORIZED)
            entry["total"] += amount
            entry["recurring_total"] += amount
            entry["count"] += 1
            key = expense.payment_method or ""
            by_method[key] = by_method.get(key, 0) + amount

        one_time_total = sum(amount for _, amount in one_time)
        recurring_total = sum(amount for _, amount in recurring)
        total = one_time_total + recurring_total
        categories = [
            {
                "category": name,
                **values,
                "percent": (values["total"] / total * 100) if total > 0 else 0,
            }
            for name, values in sorted(
                by_category.items(), key=lambda item: item[1]["total"], reverse=True
            )
        ]
        methods = [
            {
                "backend_id": backend_id or None,
                "name": self._method_name(backend_id),
                "total": amount,
            }
            for backend_id, amount in sorted(
                by_method.items(), key=lambda item: item[1], reverse=True
            )
        ]
        return {
            "total": total,
            "one_time_total": one_time_total,
            "recurring_total": recurring_total,
            "categories": categories,
            "payment_methods": methods,
        }

    def monthly_summary(self, year: int, month: int) -> dict[str, object]:
        start, end = month_bounds(year, month)
        one_time, recurring = self._split(start, end)
        summary = self._summarize(
            [(expense, round_units(expense.amount)) for expense in one_time],
            [
                (expense, _month_total(record, year, month))
                for expense, record in recurring
            ],
        )
        summary["month"] = month_key(year, month)
        return summary

    def range_summary(
        self, period: Period, worked_days: Optional[Iterable[date]] = None
    ) -> dict[str, object]:
        days = sorted(set(worked_days)) if worked_days is not None else None
        one_time, recurring = self._split(period.start, period.end)
        recurring_amounts = [
            (expense, _window_total(record, period.start, period.end, days))
            for expense, record in recurring
        ]
        summary = self._summarize(
            [(expense, round_units(expense.amount)) for expense in one_time],
            recurring_amounts,
        )
        summary["start"] = period.start.isoformat()
        summary["end"] = period.end.isoformat()
        summary["recurring"] = [
            {
                "id": expense.id,
                "description": expense.description,
                "category": expense.category,
                "frequency": describe(expense.to_record()),
                "amount": amount,
            }
            for expense, amount in recurring_amounts
        ]
        return summary

    def daily_breakdown(self, year: int, month: int) -> list[dict[str, object]]:
        start, end = month_bounds(year, month)
        one_time, recurring = self._split(start, end)
        one_time_by_day: dict[date, Decimal] = {}
        for expense in one_time:
            one_time_by_day[expense.date] = (
                one_time_by_day.get(expense.date, Decimal("0")) + expense.amount
            )

        days: list[dict[str, object]] = []
        current = start
        while current <= end:
            day_text = current.isoformat()
            items = []
            recurring_total = Decimal("0")
            for expense, record in recurring:
                if not is_active_on_date(record, day_text):
                    continue
                base = base_daily_amount(record, day_text)
                adjusted = adjusted_amount_for_date(record, day_text)
                recurring_total += adjusted
                items.append(
                    {
                        "id": expense.id,
                        "description": expense.description,
                        "base_amount": _to_float(base),
                        "amount": _to_float(adjusted),
                        "adjusted": adjusted != base,
                    }
                )
            one_time_total = one_time_by_day.get(current, Decimal("0"))
            days.append(
                {
                    "date": day_text,
                    "recurring": round_units(recurring_total),
                    "one_time": round_units(one_time_total),
                    "total": round_units(recurring_total + one_time_total),
                    "items": items,
                }
            )
            current += timedelta(days=1)
        return days

    def recurring_statistics(self, year: int, month: int) -> dict[str, object]:
        target = month_key(year, month)
        recurring = [
            expense for expense in self._expenses() if expense.type in RECURRING_TYPES
        ]

        total = 0
        active_count = 0
        by_category: dict[str, int] = {}
        items = []
        for expense in recurring:
            record = expense.to_record()
            recurrence = normalize(record)
            monthly = _month_total(record, year, month)
            if recurrence.is_active:
                active_count += 1
                total += monthly
                category = expense.category or UNCATEGORIZED
                by_category[category] = by_category.get(category, 0) + monthly
            items.append(
                {
                    "id": expense.id,
                    "description": expense.description,
                    "category": expense.category,
                    "amount": _to_float(expense.amount),
                    "frequency": describe(record),
                    "is_active": recurrence.is_active,
                    "base_daily_amount": _to_float(base_daily_amount(record, target)),
                    "monthly_amount": monthly,
                    "has_adjustments": recurrence.adjustments_month == target
                    and bool(recurrence.daily_adjustments),
                }
            )

        breakdown = [
            {
                "name": name,
                "amount": amount,
                "percent": (amount / total * 100) if total > 0 else 0,
            }
            for name, amount in sorted(
                by_category.items(), key=lambda item: item[1], reverse=True
            )
        ]
        return {
            "month": target,
            "total_monthly": total,
            "counts": {
                "active": active_count,
                "inactive": len(recurring) - active_count,
                "total": len(recurring),
            },
            "breakdown": breakdown,
            "items": items,
        }


class RecurringInstanceService:
    """Materializes ``recurring-instance`` expenses from active templates."""

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def catch_up_template(self, template: Expense, today: Optional[date] = None) -> int:
        today = today or local_today()
        record = template.to_record()
        if not normalize(record).is_active:
            return 0
        window_start = (
            template.last_processed + timedelta(days=1)
            if template.last_processed
            else date.min
        )
        due = occurrences_between(record, window_start, today)
        if not due:
            return 0

        existing = set(
            self.session.scalars(
                select(Expense.date).where(Expense.parent_id == template.id)
            ).all()
        )
        created = 0
        for occurrence in due:
            if occurrence in existing:
                continue
            self.session.add(
                Expense(
                    user_id=template.user_id,
                    type=ExpenseType.recurring_instance,
                    amount=template.amount,
                    category=template.category,
                    payment_method=template.payment_method,
                    description=template.description,
                    date=occurrence,
                    parent_id=template.id,
                )
            )
            created += 1
        template.last_processed = due[-1]
        self.session.flush()
        return created

    def generate_due(self, today: Optional[date] = None) -> int:
        today = today or local_today()
        stmt = (
            select(Expense)
            .where(
                Expense.user_id == self.user_id,
                Expense.type == ExpenseType.recurring_template,
            )
            .order_by(Expense.id)
        )
        created = 0
        for template in self.session.scalars(stmt).all():
            template_id = template.id
            try:
                created += self.catch_up_template(template, today)
                self.session.commit()
            except Exception:
                self.session.rollback()
                logger.exception(
                    f"instance_generation_failed: template_id={template_id}"
                )
        return created


class CSVService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def export(self, month: str, filters: Optional[ExpenseFilters] = None) -> str:
        expenses = ExpenseService(self.session, self.user_id).list(filters)
        return export_expenses(expenses, month=month)
