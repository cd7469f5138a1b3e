from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from database import casefold, casefold_text
from models import Account, Recurrence, Tag, Transaction


class AccountRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_id(self, account_id: int) -> Optional[Account]:
        return self.session.get(Account, account_id)

    def find_all(self) -> list[Account]:
        stmt = select(Account).order_by(Account.name, Account.id)
        return list(self.session.scalars(stmt).all())

    def save(self, account: Account) -> Account:
        self.session.add(account)
        self.session.flush()
        return account

    def delete(self, account: Account) -> None:
        self.session.delete(account)
        self.session.flush()


class TagRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def find_by_id(self, tag_id: int) -> Optional[Tag]:
        return self.session.get(Tag, tag_id)

    def find_by_ids(self, tag_ids: Iterable[int]) -> list[Tag]:
        ids = set(tag_ids)
        if not ids:
            return []
        stmt = select(Tag).where(Tag.id.in_(ids)).order_by(Tag.id)
        return list(self.session.scalars(stmt).all())

    def find_all(self) -> list[Tag]:
        stmt = select(Tag).order_by(Tag.name)
        return list(self.session.scalars(stmt).all())

    def find_by_name(self, name: str) -> Optional[Tag]:
        stmt = select(Tag).where(
            casefold(self.session, Tag.name)
            == casefold_text(self.session, name.strip())
        )
        return self.session.scalar(stmt)

    def find_children(self, parent_id: Optional[int]) -> list[Tag]:
        if parent_id is None:
            stmt = select(Tag).where(Tag.parent_id.is_(None))
        else:
            stmt = select(Tag).where(Tag.parent_id == parent_id)
        return list(self.session.scalars(stmt.order_by(Tag.name)).all())

    def parent_index(self) -> dict[int, Optional[int]]:
        """Every tag id mapped to its parent id."""
        rows = self.session.execute(select(Tag.id, Tag.parent_id)).all()
        return {row.id: row.parent_id for row in rows}

    def save(self, tag: Tag) -> Tag:
        self.session.add(tag)
        self.session.flush()
        return tag

    def delete(self, tag: Tag) -> None:
        self.session.delete(tag)
        self.session.flush()


class TransactionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def save(self, txn: Transaction) -> Transaction:
        self.session.add(txn)
        self.session.flush()
        return txn

    def find_by_id(self, transaction_id: int) -> Optional[Transaction]:
        return self.session.get(Transaction, transaction_id)

    def delete_by_id(self, transaction_id: int) -> bool:
        txn = self.find_by_id(transaction_id)
        if txn is None:
            return False
        self.session.delete(txn)
        self.session.flush()
        return True

    def find_by_account(self, account_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.value_date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def find_by_recurrence(self, recurrence_id: int) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.recurrence_id == recurrence_id)
            .order_by(Transaction.value_date.asc(), Transaction.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def delete_by_recurrence_id(self, recurrence_id: int) -> int:
        # ORM deletes so that tag association rows go with each transaction.
        transactions = self.find_by_recurrence(recurrence_id)
        for txn in transactions:
            self.session.delete(txn)
        self.session.flush()
        return len(transactions)


class RecurrenceRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def save(self, recurrence: Recurrence) -> Recurrence:
        self.session.add(recurrence)
        self.session.flush()
        return recurrence

    def find_by_id(self, recurrence_id: int) -> Optional[Recurrence]:
        return self.session.get(Recurrence, recurrence_id)

    def delete_by_id(self, recurrence_id: int) -> bool:
        recurrence = self.find_by_id(recurrence_id)
        if recurrence is None:
            return False
        self.session.delete(recurrence)
        self.session.flush()
        return True

    def find_by_account(self, account_id: int) -> list[Recurrence]:
        stmt = (
            select(Recurrence)
            .where(Recurrence.account_id == account_id)
            .order_by(Recurrence.start_date.desc(), Recurrence.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def find_active_as_of(self, at: datetime) -> list[Recurrence]:
        stmt = (
            select(Recurrence)
            .where(
                Recurrence.start_date <= at,
                or_(Recurrence.end_date.is_(None), Recurrence.end_date >= at),
            )
            .order_by(Recurrence.start_date.asc(), Recurrence.id.asc())
        )
        return list(self.session.scalars(stmt).all())

    def find_due_as_of(self, at: datetime) -> list[Recurrence]:
        """Recurrences that may still owe occurrences up to ``at``.

        Unlike :meth:`find_active_as_of` this keeps recurrences whose end
        date has passed but whose tail was never materialized.
        """
        stmt = (
            select(Recurrence)
            .where(
                Recurrence.start_date <= at,
                or_(
                    Recurrence.end_date.is_(None),
                    Recurrence.materialized_until.is_(None),
                    Recurrence.materialized_until < Recurrence.end_date,
                ),
            )
            .order_by(Recurrence.start_date.asc(), Recurrence.id.asc())
        )
        return list(self.session.scalars(stmt).all())
