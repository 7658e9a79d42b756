import logging
from datetime import date
from typing import Iterator, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import Database
from errors import (
    Blocked,
    ExtractionFailed,
    FinanceError,
    InvalidFormat,
    NotFound,
    RateLimited,
    Unauthorized,
)
from identity import IdentityResolver, SessionTokens
from models import TransactionStatus, TransactionType
from rate_limit import RateLimiter
from receipts import ReceiptScanner, read_image
from schemas import (
    AccountIn,
    AccountOut,
    BulkDeleteIn,
    SessionIn,
    TransactionIn,
    TransactionOut,
)
from seed import DemoSeeder
from services import (
    AccountService,
    MutationResult,
    TransactionFilters,
    TransactionService,
)
from views import ViewInvalidator


settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")

session_tokens = SessionTokens(settings.session_secret, settings.session_max_age_hours)
rate_limiter = RateLimiter(
    capacity=settings.rate_limit_capacity,
    refill_secs=settings.rate_limit_refill_secs,
    blocked_keys=settings.blocked_users,
)
view_invalidator = ViewInvalidator()


@app.on_event("startup")
def startup_event():
    database = Database(settings.database_url)
    database.create_all()
    app.state.database = database
    logger.info("database_ready")


@app.on_event("shutdown")
def shutdown_event():
    database: Optional[Database] = getattr(app.state, "database", None)
    if database is not None:
        database.close()
        logger.info("database_closed")


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()


def get_identity(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return session_tokens.verify(token.strip())


def _status_for(exc: FinanceError) -> int:
    if isinstance(exc, Unauthorized):
        return 401
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, RateLimited):
        return 429
    if isinstance(exc, Blocked):
        return 403
    if isinstance(exc, InvalidFormat):
        return 422
    if isinstance(exc, ExtractionFailed):
        return 502
    return 500


def _mutation_response(result: MutationResult) -> JSONResponse:
    if not result.success:
        return JSONResponse({"success": False, "error": result.error}, status_code=400)
    data = result.data
    if data is not None and not isinstance(data, dict):
        data = TransactionOut.from_model(data).model_dump(mode="json")
    return JSONResponse({"success": True, "data": data})


def _transactions(db: Session, identity: Optional[str]) -> TransactionService:
    return TransactionService(
        db,
        identity,
        rate_limiter=rate_limiter,
        invalidator=view_invalidator,
        settings=settings,
    )


@app.post("/api/session")
def create_session(payload: SessionIn, db: Session = Depends(get_db)):
    user = IdentityResolver(db).register(payload.external_id, payload.email, payload.name)
    return {"user_id": user.id, "token": session_tokens.issue(user.external_id)}


@app.get("/api/accounts")
def list_accounts(
    db: Session = Depends(get_db), identity: Optional[str] = Depends(get_identity)
):
    try:
        accounts = AccountService(db, identity).list()
    except FinanceError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return [AccountOut.from_model(a).model_dump(mode="json") for a in accounts]


@app.post("/api/accounts")
def create_account(
    payload: AccountIn,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    try:
        account = AccountService(db, identity).create(payload)
    except FinanceError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return AccountOut.from_model(account).model_dump(mode="json")


@app.get("/api/accounts/{account_id}")
def get_account(
    account_id: int,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    try:
        account = AccountService(db, identity).get(account_id)
    except FinanceError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return AccountOut.from_model(account).model_dump(mode="json")


@app.post("/api/accounts/{account_id}/seed")
def seed_account(
    account_id: int,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    result = DemoSeeder(db, identity, invalidator=view_invalidator).seed(account_id)
    body = {
        "success": result.success,
        "transactions_created": result.transactions_created,
        "balance_cents": result.balance_cents,
        "error": result.error,
    }
    return JSONResponse(body, status_code=200 if result.success else 400)


@app.post("/api/transactions")
def create_transaction(
    payload: TransactionIn,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    return _mutation_response(_transactions(db, identity).create(payload))


@app.put("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: int,
    payload: TransactionIn,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    return _mutation_response(_transactions(db, identity).update(transaction_id, payload))


@app.post("/api/transactions/bulk-delete")
def bulk_delete_transactions(
    payload: BulkDeleteIn,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    return _mutation_response(_transactions(db, identity).bulk_delete(payload.ids))


@app.get("/api/transactions/{transaction_id}")
def get_transaction(
    transaction_id: int,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    try:
        txn = _transactions(db, identity).get(transaction_id)
    except FinanceError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return TransactionOut.from_model(txn).model_dump(mode="json")


@app.get("/api/transactions")
def list_transactions(
    account_id: Optional[int] = None,
    type: Optional[TransactionType] = None,
    category: Optional[str] = None,
    status: Optional[TransactionStatus] = None,
    is_recurring: Optional[bool] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="Start date must be before end date")
    filters = TransactionFilters(
        account_id=account_id,
        type=type,
        category=category,
        status=status,
        is_recurring=is_recurring,
        start=start,
        end=end,
    )
    try:
        txns = _transactions(db, identity).list(filters, limit=limit, offset=offset)
    except FinanceError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return [TransactionOut.from_model(t).model_dump(mode="json") for t in txns]


@app.post("/api/receipts/scan")
def scan_receipt(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    identity: Optional[str] = Depends(get_identity),
):
    try:
        IdentityResolver(db).resolve(identity)
        content = read_image(file.file)
        fields = ReceiptScanner(settings=settings).scan(content, file.content_type or "")
    except FinanceError as exc:
        raise HTTPException(status_code=_status_for(exc), detail=str(exc)) from exc
    return fields.model_dump(mode="json", by_alias=True)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
