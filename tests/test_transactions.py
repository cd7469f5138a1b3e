from datetime import datetime
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session

from database import Base
from errors import InvalidArgumentError, NotFoundError
from models import TransactionDirection
from schemas import AccountIn, TagIn, TransactionFilter, TransactionIn
from services import AccountService, TagService, TransactionService


BERLIN = ZoneInfo("Europe/Berlin")


def _dt(year: int, month: int, day: int, hour: int = 12) -> datetime:
    return datetime(year, month, day, hour, 0, tzinfo=BERLIN)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _account(session: Session, name: str = "Main") -> int:
    return AccountService(session).create(AccountIn(name=name, currency_code="EUR")).id


def _txn(
    service: TransactionService,
    account_id: int,
    when: datetime,
    amount: str = "10.00",
    direction: TransactionDirection = TransactionDirection.expense,
    description=None,
    tag_ids=(),
):
    return service.create(
        account_id,
        TransactionIn(
            value_date=when,
            amount=Decimal(amount),
            direction=direction,
            description=description,
            tag_ids=list(tag_ids),
        ),
    )


def test_pages_partition_the_result_without_gaps_or_repeats():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        created = [
            _txn(service, account_id, _dt(2024, 1, 1 + i // 3)) for i in range(25)
        ]

        pages = [service.search(account_id, page=p, size=10) for p in range(4)]

        assert [len(p) for p in pages] == [10, 10, 5, 0]
        seen = [t.id for page in pages for t in page]
        assert sorted(seen) == sorted(t.id for t in created)
        assert len(set(seen)) == 25
        assert service.count(account_id) == 25


def test_results_are_newest_first_with_id_tie_break():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        older = _txn(service, account_id, _dt(2024, 1, 1))
        same_day_a = _txn(service, account_id, _dt(2024, 1, 2))
        same_day_b = _txn(service, account_id, _dt(2024, 1, 2))

        results = service.search(account_id, size=10)

        assert [t.id for t in results] == [same_day_b.id, same_day_a.id, older.id]


def test_filters_combine_with_and():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        salary = _txn(
            service,
            account_id,
            _dt(2024, 1, 25),
            "3000.00",
            TransactionDirection.income,
            "Salary January",
        )
        coffee = _txn(service, account_id, _dt(2024, 1, 10), "3.50", description="Morning Coffee")
        _txn(service, account_id, _dt(2024, 2, 10), "3.50", description="Coffee beans")

        by_direction = service.search(
            account_id, TransactionFilter(direction=TransactionDirection.income)
        )
        assert [t.id for t in by_direction] == [salary.id]

        january_coffee = service.search(
            account_id,
            TransactionFilter(
                description="COFFEE",
                from_date=_dt(2024, 1, 1, 0),
                to_date=_dt(2024, 1, 31, 23),
            ),
        )
        assert [t.id for t in january_coffee] == [coffee.id]

        assert service.search(
            account_id,
            TransactionFilter(direction=TransactionDirection.income, description="coffee"),
        ) == []


def test_date_bounds_are_inclusive():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        first = _txn(service, account_id, _dt(2024, 3, 1))
        last = _txn(service, account_id, _dt(2024, 3, 31))
        _txn(service, account_id, _dt(2024, 4, 1))

        results = service.list_by_date_range(account_id, _dt(2024, 3, 1), _dt(2024, 3, 31))

        assert [t.id for t in results] == [last.id, first.id]


def test_description_wildcards_match_literally():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        juice = _txn(service, account_id, _dt(2024, 1, 1), description="100% juice")
        _txn(service, account_id, _dt(2024, 1, 2), description="Water")

        results = service.search(account_id, TransactionFilter(description="%"))

        assert [t.id for t in results] == [juice.id]


def test_tag_filter_is_a_union_without_duplicates():
    with _session() as session:
        account_id = _account(session)
        tags = TagService(session)
        food = tags.create(TagIn(name="Food"))
        travel = tags.create(TagIn(name="Travel"))
        service = TransactionService(session)
        a = _txn(service, account_id, _dt(2024, 1, 1), tag_ids=[food.id])
        b = _txn(service, account_id, _dt(2024, 1, 2), tag_ids=[travel.id])
        c = _txn(service, account_id, _dt(2024, 1, 3), tag_ids=[food.id, travel.id])
        _txn(service, account_id, _dt(2024, 1, 4))

        filters = TransactionFilter(tag_ids={food.id, travel.id})
        results = service.search(account_id, filters, size=10)

        assert [t.id for t in results] == [c.id, b.id, a.id]
        assert service.count(account_id, filters) == 3


def test_list_by_tag_includes_descendants_on_request():
    with _session() as session:
        account_id = _account(session)
        tags = TagService(session)
        food = tags.create(TagIn(name="Food"))
        groceries = tags.create(TagIn(name="Groceries", parent_id=food.id))
        service = TransactionService(session)
        txn = _txn(service, account_id, _dt(2024, 1, 1), tag_ids=[groceries.id])

        assert [t.id for t in service.list_by_tag(account_id, food.id)] == [txn.id]
        assert service.list_by_tag(account_id, food.id, include_descendants=False) == []


def test_invalid_paging_and_ranges_are_rejected():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)

        with pytest.raises(InvalidArgumentError):
            service.search(account_id, page=0, size=0)
        with pytest.raises(InvalidArgumentError):
            service.search(account_id, page=-1, size=10)
        with pytest.raises(InvalidArgumentError):
            service.search(
                account_id,
                TransactionFilter(from_date=_dt(2024, 2, 1), to_date=_dt(2024, 1, 1)),
            )
        with pytest.raises(NotFoundError):
            service.search(999)


def test_no_matches_is_not_an_error():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)

        assert service.search(account_id, TransactionFilter(description="nothing")) == []
        assert service.count(account_id, TransactionFilter(description="nothing")) == 0


def test_search_is_scoped_to_the_account():
    with _session() as session:
        main_id = _account(session, "Main")
        savings_id = _account(session, "Savings")
        service = TransactionService(session)
        mine = _txn(service, main_id, _dt(2024, 1, 1))
        _txn(service, savings_id, _dt(2024, 1, 1))

        assert [t.id for t in service.list_all(main_id)] == [mine.id]


def test_recent_future_and_past_views():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        created = [_txn(service, account_id, _dt(2024, 1, day)) for day in range(1, 16)]

        recent = service.recent(account_id)
        assert len(recent) == 10
        assert recent[0].id == created[-1].id
        assert len(service.recent(account_id, limit=3)) == 3

        future = service.list_future(account_id, _dt(2024, 1, 13))
        assert [t.id for t in future] == [created[13].id, created[14].id]

        past = service.list_past(account_id, _dt(2024, 1, 2))
        assert [t.id for t in past] == [created[1].id, created[0].id]


def test_manual_transaction_crud():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        txn = _txn(service, account_id, _dt(2024, 1, 1), description="Books")

        updated = service.update(
            txn.id,
            TransactionIn(
                value_date=_dt(2024, 1, 5),
                amount=Decimal("25.00"),
                direction=TransactionDirection.expense,
                description="Books and paper",
            ),
        )
        assert updated.amount == Decimal("25.00")
        assert service.get(txn.id).description == "Books and paper"

        service.delete(txn.id)
        with pytest.raises(NotFoundError):
            service.get(txn.id)
        with pytest.raises(NotFoundError):
            service.delete(txn.id)


def test_large_amounts_round_trip_exactly():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        txn = _txn(service, account_id, _dt(2024, 1, 1), "9999999999999999.99")
        session.expire_all()

        assert service.get(txn.id).amount == Decimal("9999999999999999.99")
        stored = session.execute(
            text("SELECT amount_cents FROM transactions WHERE id = :id"), {"id": txn.id}
        ).scalar_one()
        assert stored == 999999999999999999


def test_amounts_beyond_cents_are_rejected_on_input():
    with pytest.raises(ValidationError):
        TransactionIn(
            value_date=_dt(2024, 1, 1),
            amount=Decimal("1.005"),
            direction=TransactionDirection.expense,
        )


def test_description_match_folds_non_ascii_letters():
    with _session() as session:
        account_id = _account(session)
        service = TransactionService(session)
        rent = _txn(service, account_id, _dt(2024, 1, 1), description="Änderung Miete")
        _txn(service, account_id, _dt(2024, 1, 2), description="Anderung")
        cafe = _txn(service, account_id, _dt(2024, 1, 3), description="CAFÉ CRÈME")

        umlaut = service.search(account_id, TransactionFilter(description="änderung"))
        accent = service.search(account_id, TransactionFilter(description="café"))

        assert [t.id for t in umlaut] == [rent.id]
        assert [t.id for t in accent] == [cafe.id]


def test_transaction_lookups_can_be_scoped_to_an_account():
    with _session() as session:
        main_id = _account(session, "Main")
        savings_id = _account(session, "Savings")
        service = TransactionService(session)
        txn = _txn(service, main_id, _dt(2024, 1, 1))

        assert service.get(txn.id, account_id=main_id).id == txn.id
        with pytest.raises(NotFoundError):
            service.get(txn.id, account_id=savings_id)
        with pytest.raises(NotFoundError):
            service.delete(txn.id, account_id=savings_id)
        with pytest.raises(NotFoundError):
            service.update(
                txn.id,
                TransactionIn(
                    value_date=_dt(2024, 1, 2),
                    amount=Decimal("1.00"),
                    direction=TransactionDirection.expense,
                ),
                account_id=savings_id,
            )
        assert service.get(txn.id).account_id == main_id
