from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidArgumentError, NotFoundError
from models import RecurrenceFrequency, TransactionDirection, recurrence_tags
from schemas import AccountIn, RecurrenceIn, TagIn, TransactionIn
from services import AccountService, RecurrenceService, TagService, TransactionService


BERLIN = ZoneInfo("Europe/Berlin")


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_hierarchy_lookups() -> None:
    with _session() as session:
        tags = TagService(session)
        food = tags.create(TagIn(name="Food"))
        groceries = tags.create(TagIn(name="Groceries", parent_id=food.id))
        organic = tags.create(TagIn(name="Organic", parent_id=groceries.id))
        travel = tags.create(TagIn(name="Travel"))

        assert [t.name for t in tags.list_roots()] == ["Food", "Travel"]
        assert [t.id for t in tags.list_children(food.id)] == [groceries.id]
        assert tags.descendant_ids(food.id) == {food.id, groceries.id, organic.id}
        assert tags.descendant_ids(travel.id) == {travel.id}


def test_reparenting_that_would_create_a_cycle_is_rejected() -> None:
    with _session() as session:
        tags = TagService(session)
        a = tags.create(TagIn(name="A"))
        b = tags.create(TagIn(name="B", parent_id=a.id))
        c = tags.create(TagIn(name="C", parent_id=b.id))

        with pytest.raises(InvalidArgumentError):
            tags.update(a.id, TagIn(name="A", parent_id=c.id))
        with pytest.raises(InvalidArgumentError):
            tags.update(a.id, TagIn(name="A", parent_id=a.id))

        moved = tags.update(c.id, TagIn(name="C", parent_id=a.id))
        assert moved.parent_id == a.id


def test_unknown_parent_and_duplicate_names_are_rejected() -> None:
    with _session() as session:
        tags = TagService(session)
        tags.create(TagIn(name="Dining"))

        with pytest.raises(NotFoundError):
            tags.create(TagIn(name="Orphan", parent_id=99))
        with pytest.raises(InvalidArgumentError):
            tags.create(TagIn(name=" dining "))


def test_tag_with_children_cannot_be_deleted() -> None:
    with _session() as session:
        tags = TagService(session)
        food = tags.create(TagIn(name="Food"))
        tags.create(TagIn(name="Groceries", parent_id=food.id))

        with pytest.raises(InvalidArgumentError):
            tags.delete(food.id)


def test_deleting_used_tag_clears_associations() -> None:
    with _session() as session:
        account_id = AccountService(session).create(
            AccountIn(name="Main", currency_code="EUR")
        ).id
        dining = TagService(session).create(TagIn(name="Dining"))
        txn = TransactionService(session).create(
            account_id,
            TransactionIn(
                value_date=datetime(2025, 1, 5, 12, 0, tzinfo=BERLIN),
                amount=Decimal("12.99"),
                direction=TransactionDirection.expense,
                description="Lunch",
                tag_ids=[dining.id],
            ),
        )
        RecurrenceService(session).create_recurrence(
            account_id,
            RecurrenceIn(
                start_date=datetime(2025, 2, 1, 12, 0, tzinfo=BERLIN),
                frequency=RecurrenceFrequency.weekly,
                direction=TransactionDirection.expense,
                amount=Decimal("8.00"),
                tag_ids=[dining.id],
            ),
            now=datetime(2025, 1, 10, tzinfo=BERLIN),
        )

        TagService(session).delete(dining.id)

        assert TransactionService(session).get(txn.id).tags == []
        assert session.execute(select(recurrence_tags)).all() == []
        with pytest.raises(NotFoundError):
            TagService(session).get(dining.id)


def test_transaction_tag_ids_are_deduplicated() -> None:
    with _session() as session:
        account_id = AccountService(session).create(
            AccountIn(name="Main", currency_code="EUR")
        ).id
        dining = TagService(session).create(TagIn(name="Dining"))

        txn = TransactionService(session).create(
            account_id,
            TransactionIn(
                value_date=datetime(2025, 1, 5, 12, 0, tzinfo=BERLIN),
                amount=Decimal("12.99"),
                direction=TransactionDirection.expense,
                tag_ids=[dining.id, dining.id],
            ),
        )

        assert txn.tag_ids == {dining.id}


def test_tag_names_compare_without_case_beyond_ascii() -> None:
    with _session() as session:
        tags = TagService(session)
        cafe = tags.create(TagIn(name="Café"))

        with pytest.raises(InvalidArgumentError):
            tags.create(TagIn(name="CAFÉ"))
        assert tags.update(cafe.id, TagIn(name="CAFÉ")).name == "CAFÉ"
