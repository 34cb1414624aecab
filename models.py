from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class ExpenseType(str, Enum):
    one_time = "one-time"
    recurring = "recurring"
    recurring_template = "recurring-template"
    recurring_instance = "recurring-instance"


RECURRING_TYPES = {
    ExpenseType.recurring,
    ExpenseType.recurring_template,
    ExpenseType.recurring_instance,
}

EXPENSE_TYPE_ENUM = SAEnum(
    ExpenseType,
    name="expensetype",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Expense(Base, TimestampMixin):
    __tablename__ = "expenses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[ExpenseType] = mapped_column(EXPENSE_TYPE_ENUM, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(String(60))
    description: Mapped[Optional[str]] = mapped_column(Text)
    last_processed: Mapped[Optional[date]] = mapped_column(Date)
    date: Mapped[Optional[date]] = mapped_column(Date)
    # Canonical descriptor including dailyAdjustments/adjustmentsMonth.
    recurrence: Mapped[Optional[dict]] = mapped_column(JSON)
    recurring_config: Mapped[Optional[dict]] = mapped_column(JSON)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE")
    )

    parent: Mapped[Optional["Expense"]] = relationship(
        "Expense", remote_side="Expense.id", back_populates="instances"
    )
    instances: Mapped[list["Expense"]] = relationship(
        "Expense", back_populates="parent", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_expense_amount_positive"),
        UniqueConstraint("parent_id", "date", name="uq_expense_instance_date"),
        Index("ix_expenses_user_type", "user_id", "type"),
        Index("ix_expenses_user_date", "user_id", "date"),
    )

    @property
    def is_recurring(self) -> bool:
        return self.type in RECURRING_TYPES

    def to_record(self) -> dict[str, object]:
        return {
            "id": self.id,
            "amount": self.amount,
            "type": self.type.value,
            "category": self.category,
            "paymentMethod": self.payment_method,
            "description": self.description,
            "date": self.date.isoformat() if self.date else None,
            "recurrence": self.recurrence,
            "recurringConfig": self.recurring_config,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"
    __table_args__ = (
        UniqueConstraint("user_id", "backend_id", name="uq_payment_method_backend_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    backend_id: Mapped[str] = mapped_column(String(60), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(200))
    is_builtin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    hidden_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
