import logging
import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy import delete, insert, update
from sqlalchemy.orm import Session

from balances import balance_delta
from categories import DEFAULT_CATEGORIES
from models import Account, Transaction, TransactionStatus, TransactionType
from recurrence import local_today
from services import OwnedResourceService, failure_result
from views import DASHBOARD_PATH, ViewInvalidator, account_path


logger = logging.getLogger(__name__)

SEED_DAYS = 91
MAX_PER_DAY = 3
INCOME_PROBABILITY = 0.4


@dataclass
class SeedResult:
    success: bool
    transactions_created: int = 0
    balance_cents: Optional[int] = None
    error: Optional[str] = None


def generate_rows(
    user_id: int,
    account_id: int,
    today: date,
    rng: random.Random,
) -> tuple[list[dict[str, object]], int]:
    """Synthetic rows for the 91 days ending ``today`` and their net delta."""
    rows: list[dict[str, object]] = []
    net_delta = 0
    for days_ago in range(SEED_DAYS - 1, -1, -1):
        day = today - timedelta(days=days_ago)
        stamp = datetime.combine(day, time(12, 0))
        for _ in range(rng.randint(1, MAX_PER_DAY)):
            txn_type = (
                TransactionType.income
                if rng.random() < INCOME_PROBABILITY
                else TransactionType.expense
            )
            picked = rng.choice(DEFAULT_CATEGORIES[txn_type])
            amount_cents = rng.randint(picked.min_amount * 100, picked.max_amount * 100)
            verb = "Received" if txn_type == TransactionType.income else "Paid for"
            rows.append(
                {
                    "user_id": user_id,
                    "account_id": account_id,
                    "type": txn_type,
                    "amount_cents": amount_cents,
                    "description": f"{verb} {picked.name}",
                    "date": day,
                    "category": picked.name,
                    "status": TransactionStatus.completed,
                    "is_recurring": False,
                    "created_at": stamp,
                    "updated_at": stamp,
                }
            )
            net_delta += balance_delta(txn_type, amount_cents)
    return rows, net_delta


class DemoSeeder(OwnedResourceService):
    """Replaces an account's history with 91 days of generated activity.

    The balance is written as an absolute value, so this must not run
    against an account that is receiving other writes at the same time.
    """

    def __init__(
        self,
        session: Session,
        identity: Optional[str],
        invalidator: Optional[ViewInvalidator] = None,
    ) -> None:
        super().__init__(session, identity)
        self.invalidator = invalidator or ViewInvalidator()

    def _set_balance(self, user_id: int, account_id: int, balance_cents: int) -> None:
        self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == user_id)
            .values(balance_cents=balance_cents)
        )

    def seed(
        self,
        account_id: int,
        *,
        rng: Optional[random.Random] = None,
        today: Optional[date] = None,
    ) -> SeedResult:
        rng = rng or random.Random()
        today = today or local_today()
        try:
            user = self._user()
            account = self._owned_account(user.id, account_id, for_update=True)
            stored_balance = account.balance_cents
            rows, net_delta = generate_rows(user.id, account.id, today, rng)
            new_balance = stored_balance + net_delta

            self.session.execute(
                delete(Transaction).where(Transaction.account_id == account.id)
            )
            self.session.execute(insert(Transaction), rows)
            self._set_balance(user.id, account.id, new_balance)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            result = failure_result("seed_transactions", exc)
            return SeedResult(success=False, error=result.error)

        logger.info(
            f"seed_completed: account_id={account_id} rows={len(rows)} "
            f"net_delta={net_delta}"
        )
        self.invalidator.revalidate_path(DASHBOARD_PATH)
        self.invalidator.revalidate_path(account_path(account_id))
        return SeedResult(
            success=True,
            transactions_created=len(rows),
            balance_cents=new_balance,
        )
