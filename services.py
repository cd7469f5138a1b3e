from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from balances import signed_total, spending_by_tag, total_for_direction
from config import get_settings
from database import casefold, casefold_text, unit_of_work
from errors import (
    InvalidArgumentError,
    InvariantViolationError,
    LedgerError,
    NotFoundError,
)
from formatting import CurrencyContext
from models import (
    Account,
    Recurrence,
    Tag,
    Transaction,
    TransactionDirection,
    recurrence_tags,
)
from recurrence import (
    TransactionMaterializer,
    ledger_now,
    pending_occurrences,
    recurrence_occurrences,
    to_ledger_tz,
)
from repositories import (
    AccountRepository,
    RecurrenceRepository,
    TagRepository,
    TransactionRepository,
)
from schemas import (
    AccountIn,
    RecurrenceCreationResult,
    RecurrenceIn,
    StatisticsSnapshot,
    TagIn,
    TransactionFilter,
    TransactionIn,
)


logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "Recurring transaction created successfully!"


def creation_summary(count: int) -> str:
    if count == 0:
        return (
            f"{SUMMARY_PREFIX} No transactions were added since the start date "
            "is in the future."
        )
    if count == 1:
        return f"{SUMMARY_PREFIX} 1 transaction has been added."
    return f"{SUMMARY_PREFIX} {count} transactions have been added."


def require_account(session: Session, account_id: int) -> Account:
    account = AccountRepository(session).find_by_id(account_id)
    if account is None:
        raise NotFoundError("Account", account_id)
    return account


def resolve_tags(session: Session, tag_ids: Iterable[int]) -> list[Tag]:
    wanted = set(tag_ids)
    tags = TagRepository(session).find_by_ids(wanted)
    missing = wanted - {tag.id for tag in tags}
    if missing:
        raise NotFoundError("Tag", min(missing))
    return tags


def validate_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start = to_ledger_tz(start)
    end = to_ledger_tz(end)
    if end < start:
        raise InvalidArgumentError("End date must not be before start date")
    return start, end


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.accounts = AccountRepository(session)

    def create(self, data: AccountIn) -> Account:
        name = data.name.strip()
        if not name:
            raise InvalidArgumentError("Account name must not be empty")
        account = Account(
            name=name,
            currency_code=data.currency_code,
            description=data.description,
        )
        with unit_of_work(self.session):
            self.accounts.save(account)
        logger.info(
            f"account_created: id={account.id} currency={account.currency_code}"
        )
        return account

    def get(self, account_id: int) -> Account:
        return require_account(self.session, account_id)

    def list_all(self) -> list[Account]:
        return self.accounts.find_all()

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        name = data.name.strip()
        if not name:
            raise InvalidArgumentError("Account name must not be empty")
        with unit_of_work(self.session):
            account.name = name
            account.currency_code = data.currency_code
            account.description = data.description
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        txn_count = self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.account_id == account_id
            )
        )
        if txn_count:
            raise InvalidArgumentError(
                f"Cannot delete account {account_id}: it has {txn_count} transactions"
            )
        recurrence_count = self.session.scalar(
            select(func.count(Recurrence.id)).where(
                Recurrence.account_id == account_id
            )
        )
        if recurrence_count:
            raise InvalidArgumentError(
                f"Cannot delete account {account_id}: "
                f"it has {recurrence_count} recurrences"
            )
        with unit_of_work(self.session):
            self.accounts.delete(account)
        logger.info(f"account_deleted: id={account_id}")


class TagService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.tags = TagRepository(session)

    def get(self, tag_id: int) -> Tag:
        tag = self.tags.find_by_id(tag_id)
        if tag is None:
            raise NotFoundError("Tag", tag_id)
        return tag

    def list_all(self) -> list[Tag]:
        return self.tags.find_all()

    def list_roots(self) -> list[Tag]:
        return self.tags.find_children(None)

    def list_children(self, parent_id: int) -> list[Tag]:
        self.get(parent_id)
        return self.tags.find_children(parent_id)

    def create(self, data: TagIn) -> Tag:
        name = self._clean_name(data.name)
        self._ensure_unique_name(name)
        if data.parent_id is not None:
            self._check_parent(None, data.parent_id)
        tag = Tag(name=name, description=data.description, parent_id=data.parent_id)
        with unit_of_work(self.session):
            self.tags.save(tag)
        return tag

    def update(self, tag_id: int, data: TagIn) -> Tag:
        tag = self.get(tag_id)
        name = self._clean_name(data.name)
        self._ensure_unique_name(name, exclude_id=tag_id)
        if data.parent_id is not None:
            self._check_parent(tag_id, data.parent_id)
        with unit_of_work(self.session):
            tag.name = name
            tag.description = data.description
            tag.parent_id = data.parent_id
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.get(tag_id)
        children = self.tags.find_children(tag_id)
        if children:
            raise InvalidArgumentError(
                f"Cannot delete tag {tag_id}: it has {len(children)} child tags"
            )
        with unit_of_work(self.session):
            self.session.execute(
                delete(recurrence_tags).where(recurrence_tags.c.tag_id == tag_id)
            )
            self.tags.delete(tag)

    def descendant_ids(self, tag_id: int) -> set[int]:
        """``tag_id`` together with every tag below it."""
        self.get(tag_id)
        children_of: dict[int, list[int]] = {}
        for child_id, parent_id in self.tags.parent_index().items():
            if parent_id is not None:
                children_of.setdefault(parent_id, []).append(child_id)
        result: set[int] = set()
        stack = [tag_id]
        while stack:
            current = stack.pop()
            if current in result:
                continue
            result.add(current)
            stack.extend(children_of.get(current, []))
        return result

    def _check_parent(self, tag_id: Optional[int], parent_id: int) -> None:
        """Walk the proposed parent's ancestor chain up to a root.

        ``tag_id`` is ``None`` for a tag that has not been stored yet.
        """
        parents = self.tags.parent_index()
        if parent_id not in parents:
            raise NotFoundError("Parent tag", parent_id)
        seen: set[int] = set()
        current: Optional[int] = parent_id
        while current is not None:
            if current == tag_id:
                raise InvalidArgumentError(
                    f"Tag {tag_id} cannot be placed under {parent_id}: "
                    "the hierarchy would contain a cycle"
                )
            if current in seen:
                raise InvariantViolationError(
                    f"Tag hierarchy already contains a cycle at tag {current}"
                )
            seen.add(current)
            current = parents.get(current)

    def _clean_name(self, name: str) -> str:
        clean_name = name.strip()
        if not clean_name:
            raise InvalidArgumentError("Tag name must not be empty")
        return clean_name

    def _ensure_unique_name(self, name: str, exclude_id: Optional[int] = None) -> None:
        existing = self.tags.find_by_name(name)
        if existing is not None and existing.id != exclude_id:
            raise InvalidArgumentError(f"Tag named {name!r} already exists")


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionRepository(session)

    def create(self, account_id: int, data: TransactionIn) -> Transaction:
        require_account(self.session, account_id)
        tags = resolve_tags(self.session, data.tag_ids)
        txn = Transaction(
            account_id=account_id,
            value_date=to_ledger_tz(data.value_date),
            amount=data.amount,
            direction=data.direction,
            description=data.description,
            tags=tags,
        )
        with unit_of_work(self.session):
            self.transactions.save(txn)
        return txn

    def get(
        self, transaction_id: int, *, account_id: Optional[int] = None
    ) -> Transaction:
        """Look a transaction up, optionally only within ``account_id``."""
        txn = self.transactions.find_by_id(transaction_id)
        if txn is None or (account_id is not None and txn.account_id != account_id):
            raise NotFoundError("Transaction", transaction_id)
        return txn

    def update(
        self,
        transaction_id: int,
        data: TransactionIn,
        *,
        account_id: Optional[int] = None,
    ) -> Transaction:
        txn = self.get(transaction_id, account_id=account_id)
        value_date = to_ledger_tz(data.value_date)
        tags = resolve_tags(self.session, data.tag_ids)
        if txn.recurrence_id is not None:
            self._check_occurrence(txn.recurrence, value_date)
        with unit_of_work(self.session):
            txn.value_date = value_date
            txn.amount = data.amount
            txn.direction = data.direction
            txn.description = data.description
            txn.tags = tags
        return txn

    def delete(self, transaction_id: int, *, account_id: Optional[int] = None) -> None:
        self.get(transaction_id, account_id=account_id)
        with unit_of_work(self.session):
            self.transactions.delete_by_id(transaction_id)

    def search(
        self,
        account_id: int,
        filters: Optional[TransactionFilter] = None,
        page: int = 0,
        size: int = 20,
    ) -> list[Transaction]:
        """One page of the filtered ledger, newest first.

        Ties on the value date are broken by id so that consecutive pages
        partition the full result without gaps or repeats.
        """
        if size < 1:
            raise InvalidArgumentError("Page size must be at least 1")
        if page < 0:
            raise InvalidArgumentError("Page index must not be negative")
        stmt = (
            self._filtered(account_id, filters or TransactionFilter())
            .order_by(Transaction.value_date.desc(), Transaction.id.desc())
            .offset(page * size)
            .limit(size)
        )
        return list(self.session.scalars(stmt).all())

    def count(self, account_id: int, filters: Optional[TransactionFilter] = None) -> int:
        stmt = self._filtered(account_id, filters or TransactionFilter())
        return int(
            self.session.scalar(select(func.count()).select_from(stmt.subquery()))
            or 0
        )

    def list_all(
        self, account_id: int, filters: Optional[TransactionFilter] = None
    ) -> list[Transaction]:
        stmt = self._filtered(account_id, filters or TransactionFilter()).order_by(
            Transaction.value_date.desc(), Transaction.id.desc()
        )
        return list(self.session.scalars(stmt).all())

    def list_by_tag(
        self, account_id: int, tag_id: int, *, include_descendants: bool = True
    ) -> list[Transaction]:
        tag_service = TagService(self.session)
        if include_descendants:
            tag_ids = tag_service.descendant_ids(tag_id)
        else:
            tag_ids = {tag_service.get(tag_id).id}
        return self.list_all(account_id, TransactionFilter(tag_ids=tag_ids))

    def list_by_direction(
        self, account_id: int, direction: TransactionDirection
    ) -> list[Transaction]:
        return self.list_all(account_id, TransactionFilter(direction=direction))

    def list_by_date_range(
        self, account_id: int, start: datetime, end: datetime
    ) -> list[Transaction]:
        start, end = validate_range(start, end)
        return self.list_all(
            account_id, TransactionFilter(from_date=start, to_date=end)
        )

    def list_by_recurrence(self, recurrence_id: int) -> list[Transaction]:
        return self.transactions.find_by_recurrence(recurrence_id)

    def recent(self, account_id: int, limit: Optional[int] = None) -> list[Transaction]:
        size = limit if limit is not None else get_settings().recent_limit
        return self.search(account_id, TransactionFilter(), page=0, size=size)

    def list_future(self, account_id: int, after: datetime) -> list[Transaction]:
        stmt = (
            self._filtered(account_id, TransactionFilter())
            .where(Transaction.value_date > to_ledger_tz(after))
            .order_by(Transaction.value_date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def list_past(self, account_id: int, until: datetime) -> list[Transaction]:
        return self.list_all(account_id, TransactionFilter(to_date=until))

    def _filtered(self, account_id: int, filters: TransactionFilter):
        require_account(self.session, account_id)
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.account_id == account_id)
        )
        if filters.direction is not None:
            stmt = stmt.where(Transaction.direction == filters.direction)
        if filters.tag_ids:
            stmt = stmt.where(Transaction.tags.any(Tag.id.in_(filters.tag_ids)))
        if filters.from_date is not None and filters.to_date is not None:
            validate_range(filters.from_date, filters.to_date)
        if filters.from_date is not None:
            stmt = stmt.where(Transaction.value_date >= to_ledger_tz(filters.from_date))
        if filters.to_date is not None:
            stmt = stmt.where(Transaction.value_date <= to_ledger_tz(filters.to_date))
        query = (filters.description or "").strip()
        if query:
            stmt = stmt.where(
                casefold(self.session, func.coalesce(Transaction.description, ""))
                .contains(casefold_text(self.session, query), autoescape=True)
            )
        return stmt

    def _check_occurrence(self, recurrence: Recurrence, value_date: datetime) -> None:
        if value_date not in recurrence_occurrences(recurrence, value_date):
            raise InvariantViolationError(
                f"{value_date.isoformat()} is not an occurrence of recurrence "
                f"{recurrence.id}"
            )


class StatisticsService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.transactions = TransactionService(session)

    def balance(self, account_id: int) -> Decimal:
        require_account(self.session, account_id)
        return signed_total(TransactionRepository(self.session).find_by_account(account_id))

    def income(self, account_id: int, start: datetime, end: datetime) -> Decimal:
        in_range = self.transactions.list_by_date_range(account_id, start, end)
        return total_for_direction(in_range, TransactionDirection.income)

    def expenses(self, account_id: int, start: datetime, end: datetime) -> Decimal:
        in_range = self.transactions.list_by_date_range(account_id, start, end)
        return total_for_direction(in_range, TransactionDirection.expense)

    def spending_by_category(
        self, account_id: int, start: datetime, end: datetime
    ) -> dict[str, Decimal]:
        in_range = self.transactions.list_by_date_range(account_id, start, end)
        return self._spending(in_range)

    def statistics(
        self, account_id: int, start: datetime, end: datetime
    ) -> StatisticsSnapshot:
        account = require_account(self.session, account_id)
        currency = CurrencyContext.for_account(account)
        in_range = self.transactions.list_by_date_range(account_id, start, end)
        income = total_for_direction(in_range, TransactionDirection.income)
        expenses = total_for_direction(in_range, TransactionDirection.expense)
        return StatisticsSnapshot(
            currency_code=currency.code,
            balance=self.balance(account_id),
            income=income,
            expenses=expenses,
            net=income - expenses,
            spending_by_category=self._spending(in_range),
            recent_transactions=self.transactions.recent(account_id),
            transaction_count=len(in_range),
        )

    def _spending(self, transactions: list[Transaction]) -> dict[str, Decimal]:
        tag_ids: set[int] = set()
        for txn in transactions:
            if txn.direction == TransactionDirection.expense:
                tag_ids |= txn.tag_ids
        names = {tag.id: tag.name for tag in TagRepository(self.session).find_by_ids(tag_ids)}
        return spending_by_tag(transactions, names)


class RecurrenceService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.recurrences = RecurrenceRepository(session)
        self.transactions = TransactionRepository(session)

    def get(self, recurrence_id: int) -> Recurrence:
        recurrence = self.recurrences.find_by_id(recurrence_id)
        if recurrence is None:
            raise NotFoundError("Recurrence", recurrence_id)
        return recurrence

    def list_by_account(self, account_id: int) -> list[Recurrence]:
        require_account(self.session, account_id)
        return self.recurrences.find_by_account(account_id)

    def list_active_as_of(self, at: datetime) -> list[Recurrence]:
        return self.recurrences.find_active_as_of(to_ledger_tz(at))

    def create_recurrence(
        self,
        account_id: int,
        data: RecurrenceIn,
        *,
        now: Optional[datetime] = None,
    ) -> RecurrenceCreationResult:
        now = to_ledger_tz(now) if now is not None else ledger_now()
        start = to_ledger_tz(data.start_date)
        end = to_ledger_tz(data.end_date) if data.end_date is not None else None
        if end is not None and end < start:
            raise InvalidArgumentError("End date must not be before start date")
        require_account(self.session, account_id)
        tags = resolve_tags(self.session, data.tag_ids)

        recurrence = Recurrence(
            account_id=account_id,
            start_date=start,
            end_date=end,
            frequency=data.frequency,
            direction=data.direction,
            amount=data.amount,
            description=data.description,
            materialized_until=now,
            tags=tags,
        )
        occurrences = recurrence_occurrences(recurrence, now)
        with unit_of_work(self.session):
            self.recurrences.save(recurrence)
            generated = TransactionMaterializer(self.session).materialize(
                recurrence, occurrences
            )

        summary = creation_summary(len(generated))
        logger.info(
            f"recurrence_created: id={recurrence.id} account_id={account_id} "
            f"frequency={recurrence.frequency.value} generated={len(generated)}"
        )
        return RecurrenceCreationResult(
            recurrence=recurrence,
            generated_transactions=generated,
            summary=summary,
        )

    def delete_recurrence(self, recurrence_id: int) -> int:
        """Delete a recurrence and every transaction generated from it."""
        self.get(recurrence_id)
        with unit_of_work(self.session):
            removed = self.transactions.delete_by_recurrence_id(recurrence_id)
            self.recurrences.delete_by_id(recurrence_id)
        logger.info(
            f"recurrence_deleted: id={recurrence_id} transactions_removed={removed}"
        )
        return removed

    def verify(self, recurrence_id: int) -> None:
        recurrence = self.get(recurrence_id)
        transactions = self.transactions.find_by_recurrence(recurrence_id)
        if not transactions:
            return
        latest = max(txn.value_date for txn in transactions)
        occurrences = set(recurrence_occurrences(recurrence, latest))
        for txn in transactions:
            if txn.value_date not in occurrences:
                raise InvariantViolationError(
                    f"Transaction {txn.id} is dated {txn.value_date.isoformat()}, "
                    f"which is not an occurrence of recurrence {recurrence_id}"
                )

    def catch_up(
        self, recurrence_id: int, *, now: Optional[datetime] = None
    ) -> list[Transaction]:
        now = to_ledger_tz(now) if now is not None else ledger_now()
        return self._catch_up(self.get(recurrence_id), now)

    def catch_up_all(self, *, now: Optional[datetime] = None) -> int:
        now = to_ledger_tz(now) if now is not None else ledger_now()
        posted = 0
        for recurrence in self.recurrences.find_due_as_of(now):
            try:
                posted += len(self._catch_up(recurrence, now))
            except (LedgerError, SQLAlchemyError):
                logger.exception(f"catch_up_failed: recurrence_id={recurrence.id}")
        return posted

    def _catch_up(self, recurrence: Recurrence, now: datetime) -> list[Transaction]:
        occurrences = pending_occurrences(recurrence, now)
        with unit_of_work(self.session):
            created = TransactionMaterializer(self.session).materialize(
                recurrence, occurrences
            )
            if recurrence.materialized_until is None or now > recurrence.materialized_until:
                recurrence.materialized_until = now
        if created:
            logger.info(
                f"recurrence_catch_up: id={recurrence.id} generated={len(created)}"
            )
        return created
