from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from schemas import ExpenseIn, PaymentMethodIn
from services import (
    BUILTIN_PAYMENT_METHODS,
    ExpenseService,
    PaymentMethodLocked,
    PaymentMethodNotFound,
    SqlPaymentMethodStore,
)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_builtins_are_seeded_once() -> None:
    with _session() as session:
        store = SqlPaymentMethodStore(session)
        first = [m.backend_id for m in store.list()]
        second = [m.backend_id for m in store.list()]
        assert first == [row[0] for row in BUILTIN_PAYMENT_METHODS]
        assert second == first
        assert all(m.is_builtin for m in store.list())


def test_add_custom_method_lists_after_builtins() -> None:
    with _session() as session:
        store = SqlPaymentMethodStore(session)
        store.add(PaymentMethodIn(backendId="caja-menor", name=" Caja menor "))
        methods = store.list()
        assert methods[-1].backend_id == "caja-menor"
        assert methods[-1].name == "Caja menor"
        assert methods[-1].is_builtin is False

        with pytest.raises(ValueError, match="already exists"):
            store.add(PaymentMethodIn(backendId="caja-menor", name="Otra"))


def test_builtins_cannot_be_edited() -> None:
    with _session() as session:
        store = SqlPaymentMethodStore(session)
        with pytest.raises(PaymentMethodLocked):
            store.update("nequi", PaymentMethodIn(backendId="nequi", name="Nequi 2"))
        with pytest.raises(PaymentMethodNotFound):
            store.update("ghost", PaymentMethodIn(backendId="ghost", name="Ghost"))


def test_renaming_custom_method_moves_expenses() -> None:
    with _session() as session:
        store = SqlPaymentMethodStore(session)
        store.add(PaymentMethodIn(backendId="caja", name="Caja"))
        expense = ExpenseService(session, payment_methods=store).create(
            ExpenseIn(
                amount=100, category="Aseo", payment_method="caja", date=date(2025, 1, 1)
            )
        )

        store.update("caja", PaymentMethodIn(backendId="caja-menor", name="Caja menor"))
        session.refresh(expense)
        assert expense.payment_method == "caja-menor"
        assert store.get("caja") is None


def test_remove_hides_builtins_and_deletes_custom() -> None:
    with _session() as session:
        store = SqlPaymentMethodStore(session)
        store.add(PaymentMethodIn(backendId="caja", name="Caja"))

        store.remove("nequi")
        store.remove("caja")
        visible = {m.backend_id for m in store.list()}
        everything = {m.backend_id for m in store.list(include_hidden=True)}
        assert "nequi" not in visible
        assert "nequi" in everything
        assert "caja" not in everything

        store.restore("nequi")
        assert "nequi" in {m.backend_id for m in store.list()}


def test_cash_cannot_be_removed() -> None:
    with _session() as session:
        store = SqlPaymentMethodStore(session)
        with pytest.raises(PaymentMethodLocked):
            store.remove("efectivo")
        with pytest.raises(PaymentMethodNotFound):
            store.remove("ghost")
