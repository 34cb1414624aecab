import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from config import get_settings
from csrf import CSRF_HEADER, generate_csrf_token, validate_csrf_token
from database import SessionLocal
from models import Expense, ExpenseType, PaymentMethod
from periods import Period, parse_month, resolve_period
from recurrence import describe, local_today, month_key, normalize
from scheduler import SchedulerManager
from schemas import DailyAdjustmentIn, ExpenseIn, PaymentMethodIn, PaymentMethodOut
from services import (
    CSVService,
    ExpenseFilters,
    ExpenseNotFound,
    ExpenseReportService,
    ExpenseService,
    PaymentMethodLocked,
    PaymentMethodNotFound,
    RecurringInstanceService,
    SqlPaymentMethodStore,
)

settings = get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Barbershop Expenses")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_csrf(request: Request) -> None:
    if not validate_csrf_token(request.headers.get(CSRF_HEADER)):
        raise HTTPException(status_code=400, detail="Invalid CSRF token")


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def month_from_request(request: Request) -> str:
    raw = request.query_params.get("month")
    if not raw:
        today = local_today()
        return month_key(today.year, today.month)
    try:
        year, month = parse_month(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return month_key(year, month)


def period_from_request(request: Request) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    if start and end and not period_slug:
        period_slug = "custom"
    try:
        return resolve_period(period_slug, start, end, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def worked_days_from_request(request: Request) -> Optional[list[date]]:
    raw = request.query_params.get("worked_days")
    if raw is None:
        return None
    try:
        return [date.fromisoformat(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail="worked_days must be YYYY-MM-DD values"
        ) from exc


def filters_from_request(request: Request) -> ExpenseFilters:
    type_param = request.query_params.get("type")
    active_param = request.query_params.get("active")
    expense_type = None
    if type_param:
        try:
            expense_type = ExpenseType(type_param)
        except ValueError:
            expense_type = None
    active = None
    if active_param in {"true", "false"}:
        active = active_param == "true"
    return ExpenseFilters(
        type=expense_type,
        category=request.query_params.get("category") or None,
        payment_method=request.query_params.get("payment_method") or None,
        active=active,
    )


def expense_payload(expense: Expense) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": expense.id,
        "type": expense.type.value,
        "amount": float(expense.amount),
        "category": expense.category,
        "paymentMethod": expense.payment_method,
        "description": expense.description,
        "date": expense.date.isoformat() if expense.date else None,
        "parentId": expense.parent_id,
        "createdAt": expense.created_at.isoformat(),
        "updatedAt": expense.updated_at.isoformat(),
    }
    if expense.is_recurring:
        record = expense.to_record()
        payload["recurrence"] = normalize(record).to_dict()
        payload["frequencyDescription"] = describe(record)
    return payload


def payment_method_payload(method: PaymentMethod) -> dict[str, object]:
    return PaymentMethodOut.model_validate(method).model_dump()


@app.get("/api/csrf-token")
def api_csrf_token():
    return {"token": generate_csrf_token(), "header": CSRF_HEADER}


@app.get("/api/expenses")
def api_expenses(request: Request, db: Session = Depends(get_db)):
    expenses = ExpenseService(db).list(filters_from_request(request))
    return {"items": [expense_payload(expense) for expense in expenses]}


@app.get("/api/expenses/export.csv")
def api_export_expenses(request: Request, db: Session = Depends(get_db)):
    month = month_from_request(request)
    content = CSVService(db).export(month, filters_from_request(request))
    filename = f"expenses-{month}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/expenses", status_code=201, dependencies=[Depends(require_csrf)])
def api_create_expense(data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).create(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_payload(expense)


@app.get("/api/expenses/{expense_id}")
def api_get_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).get(expense_id)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return expense_payload(expense)


@app.put("/api/expenses/{expense_id}", dependencies=[Depends(require_csrf)])
def api_update_expense(expense_id: int, data: ExpenseIn, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).update(expense_id, data)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_payload(expense)


@app.delete(
    "/api/expenses/{expense_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def api_delete_expense(expense_id: int, db: Session = Depends(get_db)):
    try:
        ExpenseService(db).delete(expense_id)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/expenses/{expense_id}/toggle", dependencies=[Depends(require_csrf)])
def api_toggle_expense(
    expense_id: int, request: Request, db: Session = Depends(get_db)
):
    is_active = request.query_params.get("active", "true") == "true"
    try:
        expense = ExpenseService(db).toggle_active(expense_id, is_active)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_payload(expense)


@app.put(
    "/api/expenses/{expense_id}/adjustments", dependencies=[Depends(require_csrf)]
)
def api_set_adjustment(
    expense_id: int, data: DailyAdjustmentIn, db: Session = Depends(get_db)
):
    try:
        expense = ExpenseService(db).set_daily_adjustment(expense_id, data)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_payload(expense)


@app.delete(
    "/api/expenses/{expense_id}/adjustments/{day}",
    dependencies=[Depends(require_csrf)],
)
def api_clear_adjustment(expense_id: int, day: date, db: Session = Depends(get_db)):
    try:
        expense = ExpenseService(db).clear_daily_adjustment(expense_id, day)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return expense_payload(expense)


@app.get("/api/expenses/{expense_id}/calculation")
def api_expense_calculation(
    expense_id: int, request: Request, db: Session = Depends(get_db)
):
    month = month_from_request(request)
    try:
        return ExpenseService(db).calculation(expense_id, month)
    except ExpenseNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/reports/monthly")
def api_monthly_report(request: Request, db: Session = Depends(get_db)):
    year, month = parse_month(month_from_request(request))
    return ExpenseReportService(db).monthly_summary(year, month)


@app.get("/api/reports/range")
def api_range_report(request: Request, db: Session = Depends(get_db)):
    period = period_from_request(request)
    worked_days = worked_days_from_request(request)
    return ExpenseReportService(db).range_summary(period, worked_days)


@app.get("/api/reports/daily")
def api_daily_report(request: Request, db: Session = Depends(get_db)):
    target = month_from_request(request)
    year, month = parse_month(target)
    return {"month": target, "days": ExpenseReportService(db).daily_breakdown(year, month)}


@app.get("/api/reports/recurring-statistics")
def api_recurring_statistics(request: Request, db: Session = Depends(get_db)):
    year, month = parse_month(month_from_request(request))
    return ExpenseReportService(db).recurring_statistics(year, month)


@app.get("/api/payment-methods")
def api_payment_methods(request: Request, db: Session = Depends(get_db)):
    include_hidden = request.query_params.get("include_hidden") == "true"
    methods = SqlPaymentMethodStore(db).list(include_hidden=include_hidden)
    return {"items": [payment_method_payload(method) for method in methods]}


@app.post(
    "/api/payment-methods", status_code=201, dependencies=[Depends(require_csrf)]
)
def api_add_payment_method(data: PaymentMethodIn, db: Session = Depends(get_db)):
    try:
        method = SqlPaymentMethodStore(db).add(data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return payment_method_payload(method)


@app.put("/api/payment-methods/{backend_id}", dependencies=[Depends(require_csrf)])
def api_update_payment_method(
    backend_id: str, data: PaymentMethodIn, db: Session = Depends(get_db)
):
    try:
        method = SqlPaymentMethodStore(db).update(backend_id, data)
    except PaymentMethodNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PaymentMethodLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return payment_method_payload(method)


@app.delete(
    "/api/payment-methods/{backend_id}",
    status_code=204,
    dependencies=[Depends(require_csrf)],
)
def api_remove_payment_method(backend_id: str, db: Session = Depends(get_db)):
    try:
        SqlPaymentMethodStore(db).remove(backend_id)
    except PaymentMethodNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PaymentMethodLocked as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post(
    "/api/payment-methods/{backend_id}/restore",
    dependencies=[Depends(require_csrf)],
)
def api_restore_payment_method(backend_id: str, db: Session = Depends(get_db)):
    try:
        SqlPaymentMethodStore(db).restore(backend_id)
    except PaymentMethodNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"restored": backend_id}


@app.post("/api/admin/generate-instances", dependencies=[Depends(require_csrf)])
def api_generate_instances(db: Session = Depends(get_db)):
    created = RecurringInstanceService(db).generate_due()
    logger.info(f"instances_generated: source=api created={created}")
    return {"created": created}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
