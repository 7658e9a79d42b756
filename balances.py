from typing import Iterable

from models import Transaction, TransactionStatus, TransactionType


def balance_delta(
    txn_type: TransactionType,
    amount_cents: int,
    status: TransactionStatus = TransactionStatus.completed,
) -> int:
    # only completed transactions count towards the account balance
    if TransactionStatus(status) != TransactionStatus.completed:
        return 0
    if TransactionType(txn_type) == TransactionType.expense:
        return -amount_cents
    return amount_cents


def net_balance_delta(
    old_type: TransactionType,
    old_amount_cents: int,
    new_type: TransactionType,
    new_amount_cents: int,
    old_status: TransactionStatus = TransactionStatus.completed,
    new_status: TransactionStatus = TransactionStatus.completed,
) -> int:
    return balance_delta(new_type, new_amount_cents, new_status) - balance_delta(
        old_type, old_amount_cents, old_status
    )


def reversal_deltas(transactions: Iterable[Transaction]) -> dict[int, int]:
    """Per-account adjustment that undoes the given transactions."""
    deltas: dict[int, int] = {}
    for txn in transactions:
        deltas[txn.account_id] = deltas.get(txn.account_id, 0) - balance_delta(
            txn.type, txn.amount_cents, txn.status
        )
    return deltas
