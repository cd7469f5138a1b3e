from decimal import Decimal
from typing import Iterable, Mapping

from models import Transaction, TransactionDirection


ZERO = Decimal("0")


def signed_amount(txn: Transaction) -> Decimal:
    if txn.direction == TransactionDirection.income:
        return txn.amount
    return -txn.amount


def signed_total(transactions: Iterable[Transaction]) -> Decimal:
    return sum((signed_amount(txn) for txn in transactions), ZERO)


def total_for_direction(
    transactions: Iterable[Transaction], direction: TransactionDirection
) -> Decimal:
    """Sum of the amounts moving in ``direction``, as a positive magnitude."""
    return sum(
        (txn.amount for txn in transactions if txn.direction == direction), ZERO
    )


def spending_by_tag(
    transactions: Iterable[Transaction], tag_names: Mapping[int, str]
) -> dict[str, Decimal]:
    """Total expense per tag name.

    A transaction carrying several tags adds its full amount to each of them.
    Tags missing from ``tag_names`` and untagged expenses are left out.
    """
    totals: dict[str, Decimal] = {}
    for txn in transactions:
        if txn.direction != TransactionDirection.expense:
            continue
        for tag_id in sorted(txn.tag_ids):
            name = tag_names.get(tag_id)
            if name is None:
                continue
            totals[name] = totals.get(name, ZERO) + txn.amount
    return dict(sorted(totals.items(), key=lambda item: item[1], reverse=True))
