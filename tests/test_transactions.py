import random
from datetime import date, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select

from database import Database
from errors import NotFound
from identity import IdentityResolver
from models import (
    Account,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from rate_limit import RateLimiter
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionFilters, TransactionService
from views import ViewInvalidator


ALICE = "user_alice"
BOB = "user_bob"


def make_session():
    database = Database("sqlite+pysqlite:///:memory:")
    database.create_all()
    return database.session()


def make_account(session, identity: str, balance: str = "1000.00", name: str = "Main"):
    IdentityResolver(session).register(identity)
    return AccountService(session, identity).create(
        AccountIn(name=name, balance=Decimal(balance))
    )


def txn_in(account_id: int, **overrides) -> TransactionIn:
    data = {
        "account_id": account_id,
        "type": TransactionType.expense,
        "amount": Decimal("100.00"),
        "date": date(2024, 1, 31),
        "category": "groceries",
        "description": "Weekly shop",
    }
    data.update(overrides)
    return TransactionIn(**data)


def balance_of(session, account_id: int) -> int:
    return session.scalar(
        select(Account.balance_cents).where(Account.id == account_id)
    )


def count_transactions(session) -> int:
    return session.scalar(select(func.count(Transaction.id)))


def test_create_expense_adjusts_balance_and_invalidates_views() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    views = ViewInvalidator()

    result = TransactionService(session, ALICE, invalidator=views).create(
        txn_in(account.id, amount=Decimal("25.50"))
    )

    assert result.success, result.error
    txn = result.data
    assert txn.amount_cents == 2550
    assert txn.type == TransactionType.expense
    assert txn.status == TransactionStatus.completed
    assert txn.category == "groceries"
    assert txn.next_recurring_date is None
    assert balance_of(session, account.id) == 100_000 - 2550
    assert views.stale_paths() == ["/account/%d" % account.id, "/dashboard"]


def test_create_income_adds_to_balance() -> None:
    session = make_session()
    account = make_account(session, ALICE)

    result = TransactionService(session, ALICE).create(
        txn_in(account.id, type=TransactionType.income, amount=Decimal("250"))
    )

    assert result.success
    assert balance_of(session, account.id) == 125_000


def test_create_recurring_sets_next_date() -> None:
    session = make_session()
    account = make_account(session, ALICE)

    result = TransactionService(session, ALICE).create(
        txn_in(
            account.id,
            is_recurring=True,
            recurring_interval=RecurringInterval.monthly,
        )
    )

    assert result.success
    assert result.data.next_recurring_date == date(2024, 2, 29)


def test_interval_without_recurring_flag_has_no_next_date() -> None:
    session = make_session()
    account = make_account(session, ALICE)

    result = TransactionService(session, ALICE).create(
        txn_in(account.id, recurring_interval=RecurringInterval.weekly)
    )

    assert result.success
    assert result.data.next_recurring_date is None


def test_create_is_atomic_when_balance_write_fails(monkeypatch) -> None:
    session = make_session()
    account = make_account(session, ALICE)
    views = ViewInvalidator()

    def boom(self, user_id, account_id, balance_cents):
        raise RuntimeError("connection dropped")

    monkeypatch.setattr(TransactionService, "_set_balance", boom)

    result = TransactionService(session, ALICE, invalidator=views).create(
        txn_in(account.id)
    )

    assert not result.success
    assert result.error == "Something went wrong"
    assert count_transactions(session) == 0
    assert balance_of(session, account.id) == 100_000
    assert views.stale_paths() == []


def test_create_requires_identity() -> None:
    session = make_session()
    account = make_account(session, ALICE)

    result = TransactionService(session, None).create(txn_in(account.id))
    assert not result.success
    assert result.error == "Unauthorized"

    result = TransactionService(session, "user_unknown").create(txn_in(account.id))
    assert not result.success
    assert result.error == "User not found"
    assert count_transactions(session) == 0


def test_create_on_foreign_account_is_not_found() -> None:
    session = make_session()
    alice_account = make_account(session, ALICE)
    make_account(session, BOB)

    result = TransactionService(session, BOB).create(txn_in(alice_account.id))

    assert not result.success
    assert result.error == "Account not found"
    assert balance_of(session, alice_account.id) == 100_000


def test_update_larger_expense_takes_difference() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    created = service.create(txn_in(account.id, amount=Decimal("100")))
    old_balance = balance_of(session, account.id)

    result = service.update(created.data.id, txn_in(account.id, amount=Decimal("150")))

    assert result.success, result.error
    assert result.data.amount_cents == 15_000
    assert balance_of(session, account.id) == old_balance - 5_000


def test_update_uses_increment_over_interleaved_writes() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    first = service.create(txn_in(account.id, amount=Decimal("100")))
    service.create(
        txn_in(account.id, type=TransactionType.income, amount=Decimal("200"))
    )

    result = service.update(first.data.id, txn_in(account.id, amount=Decimal("150")))

    assert result.success
    assert balance_of(session, account.id) == 100_000 - 15_000 + 20_000


def test_update_type_flip_swings_balance() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    created = service.create(txn_in(account.id, amount=Decimal("100")))

    service.update(
        created.data.id,
        txn_in(account.id, type=TransactionType.income, amount=Decimal("100")),
    )

    assert balance_of(session, account.id) == 110_000


def test_update_moving_account_reverses_old_and_applies_new() -> None:
    session = make_session()
    main = make_account(session, ALICE)
    savings = AccountService(session, ALICE).create(
        AccountIn(name="Savings", balance=Decimal("500"))
    )
    service = TransactionService(session, ALICE)
    created = service.create(txn_in(main.id, amount=Decimal("100")))

    result = service.update(created.data.id, txn_in(savings.id, amount=Decimal("40")))

    assert result.success
    assert result.data.account_id == savings.id
    assert balance_of(session, main.id) == 100_000
    assert balance_of(session, savings.id) == 50_000 - 4_000


def test_update_recomputes_next_date_from_new_values() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    created = service.create(
        txn_in(
            account.id,
            is_recurring=True,
            recurring_interval=RecurringInterval.monthly,
        )
    )

    weekly = service.update(
        created.data.id,
        txn_in(
            account.id,
            date=date(2024, 3, 1),
            is_recurring=True,
            recurring_interval=RecurringInterval.weekly,
        ),
    )
    assert weekly.data.next_recurring_date == date(2024, 3, 8)

    stopped = service.update(
        created.data.id,
        txn_in(account.id, is_recurring=False, recurring_interval=None),
    )
    assert stopped.data.next_recurring_date is None
    assert stopped.data.recurring_interval is None


def test_other_user_cannot_read_or_update_transaction() -> None:
    session = make_session()
    alice_account = make_account(session, ALICE)
    bob_account = make_account(session, BOB)
    created = TransactionService(session, ALICE).create(txn_in(alice_account.id))
    txn_id = created.data.id

    bob = TransactionService(session, BOB)
    with pytest.raises(NotFound):
        bob.get(txn_id)

    result = bob.update(txn_id, txn_in(bob_account.id, amount=Decimal("1")))
    assert not result.success
    assert result.error == "Transaction not found"

    assert bob.list() == []
    assert TransactionService(session, ALICE).get(txn_id).amount_cents == 10_000
    assert balance_of(session, bob_account.id) == 100_000


def test_get_missing_transaction_raises() -> None:
    session = make_session()
    make_account(session, ALICE)

    with pytest.raises(NotFound):
        TransactionService(session, ALICE).get(12345)


def test_list_orders_newest_first() -> None:
    session = make_session()
    account = make_account(session, ALICE, balance="100000")
    service = TransactionService(session, ALICE)
    start = date(2024, 1, 1)
    offsets = list(range(90))
    random.Random(3).shuffle(offsets)
    for offset in offsets:
        service.create(
            txn_in(account.id, date=start + timedelta(days=offset), amount=Decimal("1"))
        )

    txns = service.list(TransactionFilters(account_id=account.id), limit=500)

    dates = [t.date for t in txns]
    assert len(dates) == 90
    assert all(a > b for a, b in zip(dates, dates[1:]))
    assert dates[0] == start + timedelta(days=89)


def test_list_filters_and_paginates() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    other = AccountService(session, ALICE).create(AccountIn(name="Cash"))
    service = TransactionService(session, ALICE)
    service.create(txn_in(account.id, date=date(2024, 1, 1)))
    service.create(
        txn_in(
            account.id,
            date=date(2024, 1, 2),
            type=TransactionType.income,
            category="salary",
        )
    )
    service.create(txn_in(account.id, date=date(2024, 1, 3)))
    service.create(txn_in(other.id, date=date(2024, 1, 4)))

    expenses = service.list(
        TransactionFilters(account_id=account.id, type=TransactionType.expense)
    )
    assert [t.date for t in expenses] == [date(2024, 1, 3), date(2024, 1, 1)]

    ranged = service.list(
        TransactionFilters(start=date(2024, 1, 2), end=date(2024, 1, 3))
    )
    assert [t.date for t in ranged] == [date(2024, 1, 3), date(2024, 1, 2)]

    salary = service.list(TransactionFilters(category="salary"))
    assert len(salary) == 1

    page = service.list(limit=2, offset=1)
    assert [t.date for t in page] == [date(2024, 1, 3), date(2024, 1, 2)]


def test_list_limit_is_clamped() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    settings = SimpleNamespace(page_size=2, max_page_size=3)
    service = TransactionService(session, ALICE, settings=settings)
    for day in range(1, 6):
        service.create(txn_in(account.id, date=date(2024, 1, day)))

    assert len(service.list()) == 2
    assert len(service.list(limit=100)) == 3


def test_bulk_delete_reverses_balances() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    bob_account = make_account(session, BOB)
    service = TransactionService(session, ALICE)
    spent = service.create(txn_in(account.id, amount=Decimal("30")))
    earned = service.create(
        txn_in(account.id, type=TransactionType.income, amount=Decimal("80"))
    )
    kept = service.create(txn_in(account.id, amount=Decimal("5")))
    bob_txn = TransactionService(session, BOB).create(txn_in(bob_account.id))

    result = service.bulk_delete([spent.data.id, earned.data.id, bob_txn.data.id])

    assert result.success
    assert result.data == {"deleted": 2}
    assert balance_of(session, account.id) == 100_000 - 500
    assert [t.id for t in service.list()] == [kept.data.id]
    assert balance_of(session, bob_account.id) == 90_000
    assert TransactionService(session, BOB).get(bob_txn.data.id)


def test_bulk_delete_of_nothing_owned_fails() -> None:
    session = make_session()
    alice_account = make_account(session, ALICE)
    make_account(session, BOB)
    created = TransactionService(session, ALICE).create(txn_in(alice_account.id))

    result = TransactionService(session, BOB).bulk_delete([created.data.id])

    assert not result.success
    assert result.error == "Transaction not found"
    assert count_transactions(session) == 1


def test_pending_transaction_leaves_balance_alone() -> None:
    session = make_session()
    account = make_account(session, ALICE)

    result = TransactionService(session, ALICE).create(
        txn_in(account.id, status=TransactionStatus.pending)
    )

    assert result.success, result.error
    assert result.data.status == TransactionStatus.pending
    assert balance_of(session, account.id) == 100_000


def test_update_status_change_applies_or_reverses_delta() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    created = service.create(txn_in(account.id, amount=Decimal("100")))
    assert balance_of(session, account.id) == 90_000

    service.update(
        created.data.id, txn_in(account.id, status=TransactionStatus.pending)
    )
    assert balance_of(session, account.id) == 100_000

    service.update(
        created.data.id,
        txn_in(account.id, amount=Decimal("60"), status=TransactionStatus.completed),
    )
    assert balance_of(session, account.id) == 94_000


def test_moving_pending_transaction_leaves_both_balances() -> None:
    session = make_session()
    main = make_account(session, ALICE)
    savings = AccountService(session, ALICE).create(
        AccountIn(name="Savings", balance=Decimal("500"))
    )
    service = TransactionService(session, ALICE)
    created = service.create(txn_in(main.id, status=TransactionStatus.failed))

    result = service.update(
        created.data.id, txn_in(savings.id, status=TransactionStatus.failed)
    )

    assert result.success, result.error
    assert balance_of(session, main.id) == 100_000
    assert balance_of(session, savings.id) == 50_000


def test_bulk_delete_of_pending_row_leaves_balance() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    pending = service.create(
        txn_in(account.id, amount=Decimal("70"), status=TransactionStatus.pending)
    )
    spent = service.create(txn_in(account.id, amount=Decimal("30")))

    result = service.bulk_delete([pending.data.id, spent.data.id])

    assert result.success, result.error
    assert result.data == {"deleted": 2}
    assert balance_of(session, account.id) == 100_000


def test_balance_tracks_completed_transactions_only() -> None:
    session = make_session()
    account = make_account(session, ALICE, balance="0")
    service = TransactionService(session, ALICE)
    rng = random.Random(7)
    statuses = list(TransactionStatus)
    ids = []
    for _ in range(20):
        created = service.create(
            txn_in(
                account.id,
                type=rng.choice(list(TransactionType)),
                amount=Decimal(rng.randint(1, 50_000)) / 100,
                status=rng.choice(statuses),
            )
        )
        ids.append(created.data.id)
    for txn_id in ids[:5]:
        service.update(
            txn_id, txn_in(account.id, status=rng.choice(statuses))
        )
    service.bulk_delete(ids[5:8])

    expected = 0
    for txn in service.list(limit=100):
        if txn.status != TransactionStatus.completed:
            continue
        if txn.type == TransactionType.expense:
            expected -= txn.amount_cents
        else:
            expected += txn.amount_cents
    assert balance_of(session, account.id) == expected


def test_update_is_atomic_when_balance_write_fails(monkeypatch) -> None:
    session = make_session()
    main = make_account(session, ALICE)
    savings = AccountService(session, ALICE).create(
        AccountIn(name="Savings", balance=Decimal("500"))
    )
    created = TransactionService(session, ALICE).create(
        txn_in(main.id, amount=Decimal("100"))
    )
    views = ViewInvalidator()

    def boom(self, user_id, account_id, delta):
        raise RuntimeError("connection dropped")

    monkeypatch.setattr(TransactionService, "_increment_balance", boom)

    result = TransactionService(session, ALICE, invalidator=views).update(
        created.data.id,
        txn_in(savings.id, type=TransactionType.income, amount=Decimal("40")),
    )

    assert not result.success
    assert result.error == "Something went wrong"
    stored = TransactionService(session, ALICE).get(created.data.id)
    assert stored.account_id == main.id
    assert stored.type == TransactionType.expense
    assert stored.amount_cents == 10_000
    assert count_transactions(session) == 1
    assert balance_of(session, main.id) == 90_000
    assert balance_of(session, savings.id) == 50_000
    assert views.stale_paths() == []


def test_bulk_delete_is_atomic_when_balance_write_fails(monkeypatch) -> None:
    session = make_session()
    account = make_account(session, ALICE)
    service = TransactionService(session, ALICE)
    spent = service.create(txn_in(account.id, amount=Decimal("30")))
    earned = service.create(
        txn_in(account.id, type=TransactionType.income, amount=Decimal("80"))
    )
    views = ViewInvalidator()

    def boom(self, user_id, account_id, delta):
        raise RuntimeError("connection dropped")

    monkeypatch.setattr(TransactionService, "_increment_balance", boom)

    result = TransactionService(session, ALICE, invalidator=views).bulk_delete(
        [spent.data.id, earned.data.id]
    )

    assert not result.success
    assert result.error == "Something went wrong"
    assert count_transactions(session) == 2
    assert balance_of(session, account.id) == 105_000
    assert views.stale_paths() == []


def test_rate_limited_create() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    limiter = RateLimiter(capacity=1, refill_secs=3600, clock=lambda: 0.0)
    service = TransactionService(session, ALICE, rate_limiter=limiter)

    assert service.create(txn_in(account.id)).success
    second = service.create(txn_in(account.id))

    assert not second.success
    assert second.error == "Too many requests. Please try again later."
    assert count_transactions(session) == 1


def test_blocked_identity_cannot_create() -> None:
    session = make_session()
    account = make_account(session, ALICE)
    limiter = RateLimiter(capacity=5, refill_secs=60, blocked_keys=[ALICE])

    result = TransactionService(session, ALICE, rate_limiter=limiter).create(
        txn_in(account.id)
    )

    assert not result.success
    assert result.error == "Request blocked"


def test_input_rejects_unknown_interval_and_negative_amount() -> None:
    with pytest.raises(ValidationError):
        txn_in(1, is_recurring=True, recurring_interval="FORTNIGHTLY")
    with pytest.raises(ValidationError):
        txn_in(1, amount=Decimal("-1"))
    with pytest.raises(ValidationError):
        txn_in(1, amount=Decimal("1.005"))
