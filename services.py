from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from balances import balance_delta, net_balance_delta, reversal_deltas
from config import Settings, get_settings
from errors import Blocked, FinanceError, NotFound, PersistenceFailure, RateLimited
from identity import IdentityResolver
from models import (
    Account,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from rate_limit import RateLimiter
from recurrence import next_recurring_date
from schemas import AccountIn, TransactionIn, to_cents
from views import DASHBOARD_PATH, ViewInvalidator, account_path


logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    success: bool
    data: Optional[object] = None
    error: Optional[str] = None


@dataclass
class TransactionFilters:
    account_id: Optional[int] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = None
    status: Optional[TransactionStatus] = None
    is_recurring: Optional[bool] = None
    start: Optional[date] = None
    end: Optional[date] = None


def failure_result(operation: str, exc: Exception) -> MutationResult:
    if isinstance(exc, SQLAlchemyError):
        logger.exception(f"{operation}_failed: kind=persistence_failure")
        exc = PersistenceFailure("Failed to save changes")
    elif isinstance(exc, FinanceError):
        logger.error(f"{operation}_failed: kind={exc.kind} error={exc}")
    elif isinstance(exc, ValueError):
        logger.error(f"{operation}_failed: kind=invalid_input error={exc}")
    else:
        logger.exception(f"{operation}_failed: kind=unexpected")
        return MutationResult(success=False, error="Something went wrong")
    return MutationResult(success=False, error=str(exc))


class OwnedResourceService:
    """Resolves the caller and scopes every lookup to the caller's rows."""

    def __init__(self, session: Session, identity: Optional[str]) -> None:
        self.session = session
        self.identity = identity

    def _user(self) -> User:
        return IdentityResolver(self.session).resolve(self.identity)

    def _owned_account(
        self, user_id: int, account_id: int, *, for_update: bool = False
    ) -> Account:
        stmt = select(Account).where(
            Account.id == account_id, Account.user_id == user_id
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        account = self.session.scalar(stmt)
        if not account:
            raise NotFound("Account not found")
        return account

    def _owned_transaction(self, user_id: int, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.id == transaction_id, Transaction.user_id == user_id)
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFound("Transaction not found")
        return txn


class AccountService(OwnedResourceService):
    def list(self) -> list[Account]:
        user = self._user()
        stmt = (
            select(Account)
            .where(Account.user_id == user.id)
            .order_by(Account.is_default.desc(), Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        user = self._user()
        return self._owned_account(user.id, account_id)

    def create(self, data: AccountIn) -> Account:
        user = self._user()
        has_accounts = self.session.scalar(
            select(Account.id).where(Account.user_id == user.id).limit(1)
        )
        is_default = data.is_default or not has_accounts
        try:
            if is_default:
                self.session.execute(
                    update(Account)
                    .where(Account.user_id == user.id, Account.is_default.is_(True))
                    .values(is_default=False)
                )
            account = Account(
                user_id=user.id,
                name=data.name.strip(),
                type=data.type,
                balance_cents=to_cents(data.balance),
                is_default=is_default,
            )
            self.session.add(account)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        self.session.refresh(account)
        logger.info(f"account_created: user_id={user.id} account_id={account.id}")
        return account


class TransactionService(OwnedResourceService):
    def __init__(
        self,
        session: Session,
        identity: Optional[str],
        *,
        rate_limiter: Optional[RateLimiter] = None,
        invalidator: Optional[ViewInvalidator] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        super().__init__(session, identity)
        self.rate_limiter = rate_limiter
        self.invalidator = invalidator or ViewInvalidator()
        self.settings = settings or get_settings()

    def _check_rate_limit(self) -> None:
        if self.rate_limiter is None:
            return
        decision = self.rate_limiter.protect(self.identity, requested=1)
        if decision.allowed:
            return
        if decision.is_rate_limit():
            logger.error(
                "rate_limit_exceeded: "
                f"remaining={decision.remaining} "
                f"reset_in_seconds={decision.reset_in_seconds:.0f}"
            )
            raise RateLimited(
                remaining=decision.remaining,
                reset_in_seconds=decision.reset_in_seconds,
            )
        raise Blocked("Request blocked")

    def _set_balance(self, user_id: int, account_id: int, balance_cents: int) -> None:
        self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == user_id)
            .values(balance_cents=balance_cents)
        )

    def _increment_balance(self, user_id: int, account_id: int, delta: int) -> None:
        if not delta:
            return
        self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == user_id)
            .values(balance_cents=Account.balance_cents + delta)
        )

    def _invalidate(self, *account_ids: int) -> None:
        self.invalidator.revalidate_path(DASHBOARD_PATH)
        for account_id in dict.fromkeys(account_ids):
            self.invalidator.revalidate_path(account_path(account_id))

    def create(self, data: TransactionIn) -> MutationResult:
        try:
            user = self._user()
            self._check_rate_limit()
            account = self._owned_account(user.id, data.account_id, for_update=True)

            amount_cents = data.amount_cents
            new_balance = account.balance_cents + balance_delta(
                data.type, amount_cents, data.status
            )

            txn = Transaction(
                user_id=user.id,
                account_id=account.id,
                type=data.type,
                amount_cents=amount_cents,
                description=data.description,
                date=data.date,
                category=data.category,
                receipt_url=data.receipt_url,
                status=data.status,
                is_recurring=data.is_recurring,
                recurring_interval=data.recurring_interval,
                next_recurring_date=next_recurring_date(
                    data.date, data.is_recurring, data.recurring_interval
                ),
            )
            self.session.add(txn)
            self.session.flush()
            self._set_balance(user.id, account.id, new_balance)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            return failure_result("create_transaction", exc)

        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={user.id} account_id={account.id} "
            f"transaction_id={txn.id}"
        )
        self._invalidate(account.id)
        return MutationResult(success=True, data=txn)

    def update(self, transaction_id: int, data: TransactionIn) -> MutationResult:
        try:
            user = self._user()
            txn = self._owned_transaction(user.id, transaction_id)
            target = self._owned_account(user.id, data.account_id)
            old_account_id = txn.account_id
            old_type = txn.type
            old_amount_cents = txn.amount_cents
            old_status = txn.status
            new_amount_cents = data.amount_cents

            txn.account_id = target.id
            txn.type = data.type
            txn.amount_cents = new_amount_cents
            txn.description = data.description
            txn.date = data.date
            txn.category = data.category
            txn.receipt_url = data.receipt_url
            txn.status = data.status
            txn.is_recurring = data.is_recurring
            txn.recurring_interval = data.recurring_interval
            txn.next_recurring_date = next_recurring_date(
                data.date, data.is_recurring, data.recurring_interval
            )
            self.session.flush()

            # relative increments, so other writes landing in between are kept
            if old_account_id == target.id:
                self._increment_balance(
                    user.id,
                    target.id,
                    net_balance_delta(
                        old_type,
                        old_amount_cents,
                        data.type,
                        new_amount_cents,
                        old_status,
                        data.status,
                    ),
                )
            else:
                self._increment_balance(
                    user.id,
                    old_account_id,
                    -balance_delta(old_type, old_amount_cents, old_status),
                )
                self._increment_balance(
                    user.id,
                    target.id,
                    balance_delta(data.type, new_amount_cents, data.status),
                )
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            return failure_result("update_transaction", exc)

        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user_id={user.id} transaction_id={txn.id}"
        )
        self._invalidate(old_account_id, target.id)
        return MutationResult(success=True, data=txn)

    def bulk_delete(self, transaction_ids: list[int]) -> MutationResult:
        try:
            user = self._user()
            ids = sorted(set(transaction_ids))
            txns = self.session.scalars(
                select(Transaction).where(
                    Transaction.user_id == user.id, Transaction.id.in_(ids)
                )
            ).all()
            if not txns:
                raise NotFound("Transaction not found")

            deltas = reversal_deltas(txns)
            self.session.execute(
                delete(Transaction).where(
                    Transaction.user_id == user.id,
                    Transaction.id.in_([txn.id for txn in txns]),
                )
            )
            for account_id, delta in deltas.items():
                self._increment_balance(user.id, account_id, delta)
            self.session.commit()
        except Exception as exc:
            self.session.rollback()
            return failure_result("bulk_delete_transactions", exc)

        logger.info(
            f"transactions_deleted: user_id={user.id} count={len(txns)}"
        )
        self._invalidate(*deltas.keys())
        return MutationResult(success=True, data={"deleted": len(txns)})

    def get(self, transaction_id: int) -> Transaction:
        try:
            user = self._user()
            return self._owned_transaction(user.id, transaction_id)
        except Exception as exc:
            logger.error(f"get_transaction_failed: error={exc}")
            raise

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Transaction]:
        filters = filters or TransactionFilters()
        if limit is None or limit <= 0:
            limit = self.settings.page_size
        limit = min(limit, self.settings.max_page_size)
        try:
            user = self._user()
            stmt = (
                select(Transaction)
                .options(joinedload(Transaction.account))
                .where(Transaction.user_id == user.id)
                .order_by(Transaction.date.desc(), Transaction.id.desc())
                .offset(max(offset, 0))
                .limit(limit)
            )
            if filters.account_id is not None:
                stmt = stmt.where(Transaction.account_id == filters.account_id)
            if filters.type:
                stmt = stmt.where(Transaction.type == filters.type)
            if filters.category:
                stmt = stmt.where(Transaction.category == filters.category)
            if filters.status:
                stmt = stmt.where(Transaction.status == filters.status)
            if filters.is_recurring is not None:
                stmt = stmt.where(Transaction.is_recurring.is_(filters.is_recurring))
            if filters.start:
                stmt = stmt.where(Transaction.date >= filters.start)
            if filters.end:
                stmt = stmt.where(Transaction.date <= filters.end)
            return self.session.scalars(stmt).all()
        except Exception as exc:
            logger.error(f"list_transactions_failed: error={exc}")
            raise
