from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from sqlalchemy.orm import Session

from database import SessionLocal, init_db
from errors import LedgerError, NotFoundError
from formatting import CurrencyContext
from models import Account, Recurrence, Tag, Transaction, TransactionDirection
from periods import resolve_period
from recurrence import ledger_tz
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    RecurrenceIn,
    TagIn,
    TransactionFilter,
    TransactionIn,
)
from services import (
    AccountService,
    RecurrenceService,
    StatisticsService,
    TagService,
    TransactionService,
)

app = FastAPI(title="Ledger")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_db()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _money(amount: Decimal) -> str:
    return str(amount)


def account_payload(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "currency_code": account.currency_code,
        "description": account.description,
    }


def tag_payload(tag: Tag) -> dict:
    return {
        "id": tag.id,
        "name": tag.name,
        "description": tag.description,
        "parent_id": tag.parent_id,
    }


def transaction_payload(txn: Transaction, currency: Optional[CurrencyContext] = None) -> dict:
    payload = {
        "id": txn.id,
        "account_id": txn.account_id,
        "value_date": txn.value_date.astimezone(ledger_tz()).isoformat(),
        "amount": _money(txn.amount),
        "direction": txn.direction.value,
        "description": txn.description,
        "recurrence_id": txn.recurrence_id,
        "tag_ids": sorted(txn.tag_ids),
    }
    if currency is not None:
        payload["display_amount"] = currency.format_signed(txn.amount, txn.direction)
    return payload


def recurrence_payload(recurrence: Recurrence) -> dict:
    tz = ledger_tz()
    return {
        "id": recurrence.id,
        "account_id": recurrence.account_id,
        "start_date": recurrence.start_date.astimezone(tz).isoformat(),
        "end_date": (
            recurrence.end_date.astimezone(tz).isoformat()
            if recurrence.end_date
            else None
        ),
        "frequency": recurrence.frequency.value,
        "direction": recurrence.direction.value,
        "amount": _money(recurrence.amount),
        "description": recurrence.description,
        "tag_ids": sorted(recurrence.tag_ids),
    }


@app.get("/accounts")
def list_accounts(db: Session = Depends(get_db)):
    return [account_payload(a) for a in AccountService(db).list_all()]


@app.post("/accounts", status_code=201)
def create_account(data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return account_payload(account)


@app.get("/accounts/{account_id}")
def get_account(account_id: int, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).get(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return account_payload(account)


@app.put("/accounts/{account_id}")
def update_account(account_id: int, data: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).update(account_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return account_payload(account)


@app.delete("/accounts/{account_id}", status_code=204)
def delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/tags")
def list_tags(roots_only: bool = False, db: Session = Depends(get_db)):
    service = TagService(db)
    tags = service.list_roots() if roots_only else service.list_all()
    return [tag_payload(t) for t in tags]


@app.post("/tags", status_code=201)
def create_tag(data: TagIn, db: Session = Depends(get_db)):
    try:
        tag = TagService(db).create(data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return tag_payload(tag)


@app.get("/tags/{tag_id}/children")
def list_tag_children(tag_id: int, db: Session = Depends(get_db)):
    try:
        children = TagService(db).list_children(tag_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [tag_payload(t) for t in children]


@app.put("/tags/{tag_id}")
def update_tag(tag_id: int, data: TagIn, db: Session = Depends(get_db)):
    try:
        tag = TagService(db).update(tag_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return tag_payload(tag)


@app.delete("/tags/{tag_id}", status_code=204)
def delete_tag(tag_id: int, db: Session = Depends(get_db)):
    try:
        TagService(db).delete(tag_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/accounts/{account_id}/transactions")
def search_transactions(
    account_id: int,
    direction: Optional[TransactionDirection] = None,
    tag_id: Optional[list[int]] = Query(default=None),
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    q: Optional[str] = None,
    page: int = 0,
    size: int = 20,
    db: Session = Depends(get_db),
):
    filters = TransactionFilter(
        direction=direction,
        tag_ids=set(tag_id or []),
        from_date=from_date,
        to_date=to_date,
        description=q,
    )
    service = TransactionService(db)
    try:
        account = AccountService(db).get(account_id)
        items = service.search(account_id, filters, page=page, size=size)
        total = service.count(account_id, filters)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    currency = CurrencyContext.for_account(account)
    return {
        "items": [transaction_payload(t, currency) for t in items],
        "page": page,
        "size": size,
        "total": total,
    }


@app.post("/accounts/{account_id}/transactions", status_code=201)
def create_transaction(
    account_id: int, data: TransactionIn, db: Session = Depends(get_db)
):
    try:
        txn = TransactionService(db).create(account_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_payload(txn)


@app.put("/accounts/{account_id}/transactions/{transaction_id}")
def update_transaction(
    account_id: int,
    transaction_id: int,
    data: TransactionIn,
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db).update(
            transaction_id, data, account_id=account_id
        )
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return transaction_payload(txn)


@app.delete("/accounts/{account_id}/transactions/{transaction_id}", status_code=204)
def delete_transaction(
    account_id: int, transaction_id: int, db: Session = Depends(get_db)
):
    try:
        TransactionService(db).delete(transaction_id, account_id=account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc


@app.get("/accounts/{account_id}/recurrences")
def list_recurrences(account_id: int, db: Session = Depends(get_db)):
    try:
        recurrences = RecurrenceService(db).list_by_account(account_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [recurrence_payload(r) for r in recurrences]


@app.post("/accounts/{account_id}/recurrences", status_code=201)
def create_recurrence(
    account_id: int, data: RecurrenceIn, db: Session = Depends(get_db)
):
    try:
        result = RecurrenceService(db).create_recurrence(account_id, data)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {
        "recurrence": recurrence_payload(result.recurrence),
        "transaction_count": result.transaction_count,
        "summary": result.summary,
    }


@app.get("/recurrences/{recurrence_id}/transactions")
def list_recurrence_transactions(recurrence_id: int, db: Session = Depends(get_db)):
    try:
        RecurrenceService(db).get(recurrence_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return [
        transaction_payload(t)
        for t in TransactionService(db).list_by_recurrence(recurrence_id)
    ]


@app.delete("/recurrences/{recurrence_id}")
def delete_recurrence(recurrence_id: int, db: Session = Depends(get_db)):
    try:
        removed = RecurrenceService(db).delete_recurrence(recurrence_id)
    except LedgerError as exc:
        raise _http_error(exc) from exc
    return {"transactions_removed": removed}


@app.get("/accounts/{account_id}/statistics")
def account_statistics(
    account_id: int,
    period: Optional[str] = None,
    start: Optional[str] = None,
    end: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        resolved = resolve_period(period, start, end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    range_start, range_end = resolved.bounds(ledger_tz())
    try:
        account = AccountService(db).get(account_id)
        snapshot = StatisticsService(db).statistics(account_id, range_start, range_end)
    except LedgerError as exc:
        raise _http_error(exc) from exc

    currency = CurrencyContext.for_account(account)
    return {
        "period": {
            "slug": resolved.slug,
            "start": resolved.start.isoformat(),
            "end": resolved.end.isoformat(),
        },
        "currency_code": snapshot.currency_code,
        "balance": _money(snapshot.balance),
        "income": _money(snapshot.income),
        "expenses": _money(snapshot.expenses),
        "net": _money(snapshot.net),
        "display": {
            "balance": currency.format_amount(snapshot.balance),
            "income": currency.format_amount(snapshot.income),
            "expenses": currency.format_amount(snapshot.expenses),
        },
        "spending_by_category": {
            name: _money(amount)
            for name, amount in snapshot.spending_by_category.items()
        },
        "transaction_count": snapshot.transaction_count,
        "recent_transactions": [
            transaction_payload(t, currency) for t in snapshot.recent_transactions
        ],
    }
