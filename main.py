import logging
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from csv_utils import cents_to_amount, format_money
from config import get_settings
from database import get_db
from errors import FinanceError, ValidationError
from flows import FinanceAI
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AskIn,
    BulkCategorizeIn,
    BulkCommitIn,
    CategorizeIn,
    ManualTransactionIn,
    NewTransactionIn,
    ProfileUpdateIn,
    TransactionUpdateIn,
)
from services import (
    AssistantService,
    BalanceLedger,
    BalanceReport,
    BulkImportService,
    InsightService,
    MetricsService,
    MutationResult,
    ProfileService,
    TransactionService,
    serialize_transaction,
)
from timezones import COMMON_TIMEZONES

logger = logging.getLogger(__name__)

app = FastAPI(title="Verdant")


def _load_app_version() -> str:
    try:
        import tomllib
    except Exception:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except Exception:
        return "unknown"


APP_VERSION = _load_app_version()


def get_ai() -> FinanceAI:
    return FinanceAI()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(FinanceError)
async def finance_error_handler(request: Request, exc: FinanceError) -> JSONResponse:
    logger.info(
        f"request_failed: path={request.url.path} error={type(exc).__name__} message={exc.message}"
    )
    content: dict[str, object] = {"success": False, "message": exc.message}
    if isinstance(exc, ValidationError) and exc.field_errors:
        content["field_errors"] = exc.field_errors
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    field_errors: dict[str, list[str]] = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        field_errors.setdefault(".".join(loc) or "body", []).append(error.get("msg", ""))
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "message": "Invalid data provided.",
            "field_errors": field_errors,
        },
    )


def money(cents: int) -> float:
    return cents_to_amount(cents)


def mutation_payload(
    result: MutationResult, tz: Optional[str] = None
) -> dict[str, object]:
    return {
        "success": True,
        "message": result.message,
        "balance": money(result.balance_cents),
        "replayed": result.replayed,
        "transaction": serialize_transaction(result.transaction, tz)
        if result.transaction is not None
        else None,
    }


def report_payload(report: BalanceReport) -> dict[str, object]:
    return {
        "success": True,
        "message": "Balance is consistent."
        if report.is_consistent
        else f"Balance drifted by {format_money(report.drift_cents, get_settings().currency_symbol)}.",
        "consistent": report.is_consistent,
        "cached_balance": money(report.cached_cents),
        "ledger_balance": money(report.ledger_cents),
        "drift": money(report.drift_cents),
    }


def period_from_request(request: Request, metrics: MetricsService) -> Period:
    try:
        return resolve_period(
            request.query_params.get("period"),
            request.query_params.get("start"),
            request.query_params.get("end"),
            today=metrics.today(),
        )
    except ValueError as exc:
        raise ValidationError(str(exc), {"period": [str(exc)]}) from exc


@app.get("/")
def root():
    return {"success": True, "message": "Verdant API", "version": APP_VERSION}


@app.get("/api/timezones")
def api_timezones():
    return {"success": True, "message": "", "timezones": COMMON_TIMEZONES}


@app.get("/api/users/{user_id}/profile")
def get_profile(user_id: str, db: Session = Depends(get_db)):
    profile = ProfileService(db, user_id).get()
    balance = BalanceLedger(db, user_id).current_balance()
    return {
        "success": True,
        "message": "",
        "profile": {
            "id": user_id,
            "display_name": profile.display_name if profile else None,
            "photo_url": profile.photo_url if profile else None,
            "timezone": profile.timezone if profile else None,
            "balance": money(balance),
        },
    }


@app.post("/api/users/{user_id}/profile")
def update_profile(user_id: str, payload: ProfileUpdateIn, db: Session = Depends(get_db)):
    profile = ProfileService(db, user_id).update(payload)
    return {
        "success": True,
        "message": "Profile updated successfully.",
        "profile": {
            "id": profile.id,
            "display_name": profile.display_name,
            "photo_url": profile.photo_url,
            "timezone": profile.timezone,
            "balance": money(profile.balance_cents),
        },
    }


@app.get("/api/users/{user_id}/transactions")
def list_transactions(
    user_id: str, limit: Optional[int] = None, db: Session = Depends(get_db)
):
    if limit is not None:
        limit = min(max(limit, 1), 1000)
    items = TransactionService(db, user_id).list(limit=limit)
    tz = ProfileService(db, user_id).timezone()
    return {
        "success": True,
        "message": "",
        "items": [serialize_transaction(txn, tz) for txn in items],
    }


@app.post("/api/users/{user_id}/transactions")
def add_manual_transaction(
    user_id: str, payload: ManualTransactionIn, db: Session = Depends(get_db)
):
    result = TransactionService(db, user_id).apply_manual(payload)
    return mutation_payload(result, ProfileService(db, user_id).timezone())


@app.post("/api/users/{user_id}/transactions/apply")
def apply_transaction(
    user_id: str, payload: NewTransactionIn, db: Session = Depends(get_db)
):
    result = TransactionService(db, user_id).apply_new(payload)
    return mutation_payload(result, ProfileService(db, user_id).timezone())


@app.post("/api/users/{user_id}/transactions/categorize")
def categorize_transaction(
    user_id: str,
    payload: CategorizeIn,
    db: Session = Depends(get_db),
    ai: FinanceAI = Depends(get_ai),
):
    guess, result = TransactionService(db, user_id, ai=ai).categorize_and_apply(payload)
    body = mutation_payload(result, ProfileService(db, user_id).timezone())
    body["categorized"] = guess.model_dump(mode="json", by_alias=True)
    return body


@app.put("/api/users/{user_id}/transactions/{transaction_id}")
def update_transaction(
    user_id: str,
    transaction_id: int,
    payload: TransactionUpdateIn,
    db: Session = Depends(get_db),
):
    result = TransactionService(db, user_id).update(transaction_id, payload)
    return mutation_payload(result, ProfileService(db, user_id).timezone())


@app.delete("/api/users/{user_id}/transactions/{transaction_id}")
def delete_transaction(user_id: str, transaction_id: int, db: Session = Depends(get_db)):
    result = TransactionService(db, user_id).delete(transaction_id)
    return mutation_payload(result, ProfileService(db, user_id).timezone())


@app.get("/api/users/{user_id}/transactions/export.csv")
def export_transactions_endpoint(user_id: str, db: Session = Depends(get_db)):
    csv_text = TransactionService(db, user_id).export_csv()
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="transactions.csv"'},
    )


@app.post("/api/users/{user_id}/transactions/bulk/preview")
def bulk_preview(
    user_id: str,
    payload: BulkCategorizeIn,
    db: Session = Depends(get_db),
    ai: FinanceAI = Depends(get_ai),
):
    items = BulkImportService(db, user_id, ai=ai).preview(payload)
    return {
        "success": True,
        "message": f"Found {len(items)} transactions.",
        "transactions": [item.model_dump(mode="json", by_alias=True) for item in items],
    }


@app.post("/api/users/{user_id}/transactions/bulk/commit")
def bulk_commit(user_id: str, payload: BulkCommitIn, db: Session = Depends(get_db)):
    result = BulkImportService(db, user_id).commit(payload)
    return {
        "success": True,
        "message": result.message,
        "added": result.added,
        "skipped": result.skipped,
        "balance": money(result.balance_cents),
    }


@app.get("/api/users/{user_id}/insights")
def insights(
    user_id: str, db: Session = Depends(get_db), ai: FinanceAI = Depends(get_ai)
):
    feed = InsightService(db, user_id, ai=ai).evaluate()
    return {
        "success": feed.state != "error",
        "message": "",
        "state": feed.state,
        "insights": feed.insights,
    }


@app.post("/api/users/{user_id}/ask")
def ask(
    user_id: str,
    payload: AskIn,
    db: Session = Depends(get_db),
    ai: FinanceAI = Depends(get_ai),
):
    result = AssistantService(db, user_id, ai=ai).ask(payload)
    return {"success": True, "message": "", "answer": result.answer}


@app.get("/api/users/{user_id}/analytics/kpis")
def api_kpis(user_id: str, request: Request, db: Session = Depends(get_db)):
    metrics = MetricsService(db, user_id)
    period = period_from_request(request, metrics)
    data = metrics.kpis(period)
    return {
        "success": True,
        "message": "",
        "period": {
            "slug": period.slug,
            "start": period.start.isoformat(),
            "end": period.end.isoformat(),
        },
        "income": money(data["income"]),
        "expenses": money(data["expenses"]),
        "net": money(data["net"]),
        "transaction_count": data["transaction_count"],
        "balance": money(data["balance"]),
    }


@app.get("/api/users/{user_id}/analytics/category-breakdown")
def api_category_breakdown(user_id: str, request: Request, db: Session = Depends(get_db)):
    metrics = MetricsService(db, user_id)
    period = period_from_request(request, metrics)
    rows = metrics.category_breakdown(period)
    return {
        "success": True,
        "message": "",
        "items": [
            {
                "category": row["category"],
                "amount": money(int(row["amount_cents"])),
                "share": row["share"],
            }
            for row in rows
        ],
    }


@app.get("/api/users/{user_id}/balance/verify")
def verify_balance(user_id: str, db: Session = Depends(get_db)):
    return report_payload(BalanceLedger(db, user_id).verify())


@app.post("/api/users/{user_id}/balance/repair")
def repair_balance(user_id: str, db: Session = Depends(get_db)):
    return report_payload(BalanceLedger(db, user_id).repair())


def main():
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
