import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from csv_utils import parse_amount
from models import ExpenseType
from recurrence import is_known_frequency


class RecurrenceIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    frequency: str = "monthly"
    interval: int = Field(default=1, ge=1, le=365)
    start_date: Optional[dt.date] = Field(default=None, alias="startDate")
    end_date: Optional[dt.date] = Field(default=None, alias="endDate")
    is_active: bool = Field(default=True, alias="isActive")

    @field_validator("frequency")
    @classmethod
    def _known_frequency(cls, value: str) -> str:
        if not is_known_frequency(value):
            raise ValueError(f"Unsupported frequency: {value}")
        return value.strip().lower()

    @model_validator(mode="after")
    def _end_after_start(self) -> "RecurrenceIn":
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("End date must be after start date")
        return self


class ExpenseIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: ExpenseType = ExpenseType.one_time
    amount: Decimal = Field(..., ge=0)
    category: str = Field(..., min_length=1, max_length=100)
    payment_method: Optional[str] = Field(
        default=None, max_length=60, alias="paymentMethod"
    )
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    recurrence: Optional[RecurrenceIn] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_amount(value)
        return value

    @model_validator(mode="after")
    def _recurrence_matches_type(self) -> "ExpenseIn":
        if self.type == ExpenseType.recurring_instance:
            raise ValueError("Recurring instances are generated, not created")
        if self.type == ExpenseType.one_time and self.recurrence is not None:
            raise ValueError("One-time expenses cannot carry a recurrence")
        if self.type != ExpenseType.one_time and self.recurrence is None:
            raise ValueError("Recurring expenses require a recurrence")
        return self


class DailyAdjustmentIn(BaseModel):
    date: dt.date
    amount: Decimal

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> object:
        if isinstance(value, str):
            return parse_amount(value, allow_negative=True)
        return value


class PaymentMethodIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    backend_id: str = Field(
        ..., min_length=1, max_length=60, pattern=r"^[a-z0-9_-]+$", alias="backendId"
    )
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=200)


class PaymentMethodOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    backend_id: str
    name: str
    description: Optional[str] = None
    is_builtin: bool = False
