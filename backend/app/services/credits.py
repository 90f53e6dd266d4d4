"""Atomic, auditable credits accounting.

Every balance change is one conditional ``UPDATE`` plus one appended
``credit_transactions`` row inside the same transaction, so the balance always
equals the sum of its log and concurrent spenders can never overdraw.
"""

from __future__ import annotations

import calendar
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from backend.app.core.database import Database, session_scope, upsert_insert
from backend.app.core.errors import InsufficientCreditsError, ValidationError
from backend.app.db.models import DbCreditTransaction, DbUserCredits

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


TRANSACTION_SUBSCRIPTION_GRANT = "subscription_grant"
TRANSACTION_PURCHASE = "purchase"
TRANSACTION_REFUND = "refund"
TRANSACTION_CONSUMPTION = "consumption"
TRANSACTION_ADJUSTMENT = "adjustment"

TRANSACTION_TYPES = (
    TRANSACTION_SUBSCRIPTION_GRANT,
    TRANSACTION_PURCHASE,
    TRANSACTION_REFUND,
    TRANSACTION_CONSUMPTION,
    TRANSACTION_ADJUSTMENT,
)
CREDIT_TYPES = frozenset(TRANSACTION_TYPES) - {TRANSACTION_CONSUMPTION}

MAX_DESCRIPTION_LENGTH = 255
MAX_PAGE_SIZE = 100


@dataclass(frozen=True, slots=True)
class UserCredits:
    user_id: str
    balance: int
    subscription_credits_per_month: int
    total_granted: int
    total_consumed: int
    total_purchased: int
    last_refresh_at: int | None
    next_refresh_at: int | None
    created_at: int
    updated_at: int


@dataclass(frozen=True, slots=True)
class CreditTransaction:
    id: str
    user_id: str
    type: str
    amount: int
    balance_before: int
    balance_after: int
    feature_id: str | None
    description: str
    reference_id: str | None
    created_at: int


@dataclass(frozen=True, slots=True)
class ConsumeResult:
    success: bool
    balance: int


def add_one_month(ts: int) -> int:
    """Same wall-clock time one calendar month later, clamping the day to month end."""
    current = datetime.fromtimestamp(ts, tz=timezone.utc)
    if current.month == 12:
        year, month = current.year + 1, 1
    else:
        year, month = current.year, current.month + 1
    day = min(current.day, calendar.monthrange(year, month)[1])
    return int(current.replace(year=year, month=month, day=day).timestamp())


class CreditsLedger:
    """Service layer that owns all credit balance mutations.

    Mutating methods accept ``session=`` to join a caller's transaction; without
    it each call commits on its own.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get_or_create(self, user_id: str, *, session: Session | None = None) -> UserCredits:
        now = _now()
        with session_scope(self.db, session) as s:
            self._ensure_account_in_session(s, user_id=user_id, now=now)
            return _credits_from_db(self._load(s, user_id))

    def get(self, user_id: str) -> UserCredits | None:
        with self.db.session() as session:
            row = session.get(DbUserCredits, user_id)
            return _credits_from_db(row) if row else None

    def get_balance(self, user_id: str) -> int:
        return self.get_or_create(user_id).balance

    def consume(
        self,
        user_id: str,
        amount: int,
        *,
        feature_id: str,
        description: str,
        session: Session | None = None,
    ) -> ConsumeResult:
        """Spend ``amount`` credits or raise ``InsufficientCreditsError`` without mutating."""
        _validate_amount(amount)
        description = _validate_description(description)

        now = _now()
        with session_scope(self.db, session) as s:
            result = s.execute(
                update(DbUserCredits)
                .where(DbUserCredits.user_id == user_id, DbUserCredits.balance >= amount)
                .values(
                    balance=DbUserCredits.balance - amount,
                    total_consumed=DbUserCredits.total_consumed + amount,
                    updated_at=now,
                )
            )
            if int(result.rowcount or 0) != 1:
                available = self._balance_in_session(s, user_id)
                raise InsufficientCreditsError(required=amount, available=available)

            balance_after = self._balance_in_session(s, user_id)
            s.add(
                DbCreditTransaction(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    type=TRANSACTION_CONSUMPTION,
                    amount=-amount,
                    balance_before=balance_after + amount,
                    balance_after=balance_after,
                    feature_id=feature_id,
                    description=description,
                    reference_id=None,
                    created_at=now,
                )
            )
            s.flush()

        logger.info(
            "Credits consumed",
            extra={"data": {"user_id": user_id, "feature_id": feature_id, "amount": amount, "balance": balance_after}},
        )
        return ConsumeResult(success=True, balance=balance_after)

    def add_credits(
        self,
        user_id: str,
        amount: int,
        transaction_type: str,
        description: str,
        reference_id: str | None = None,
        *,
        feature_id: str | None = None,
        session: Session | None = None,
    ) -> UserCredits:
        if transaction_type not in CREDIT_TYPES:
            raise ValidationError(f"Invalid transaction type: {transaction_type}")
        if transaction_type == TRANSACTION_SUBSCRIPTION_GRANT:
            _validate_amount(amount, allow_zero=True)
        else:
            _validate_amount(amount)
        description = _validate_description(description)

        now = _now()
        values: dict = {"balance": DbUserCredits.balance + amount, "updated_at": now}
        if transaction_type == TRANSACTION_SUBSCRIPTION_GRANT:
            values["total_granted"] = DbUserCredits.total_granted + amount
            values["last_refresh_at"] = now
            values["next_refresh_at"] = add_one_month(now)
        elif transaction_type == TRANSACTION_PURCHASE:
            values["total_purchased"] = DbUserCredits.total_purchased + amount

        with session_scope(self.db, session) as s:
            self._ensure_account_in_session(s, user_id=user_id, now=now)
            s.execute(update(DbUserCredits).where(DbUserCredits.user_id == user_id).values(**values))

            row = self._load(s, user_id)
            s.add(
                DbCreditTransaction(
                    id=uuid.uuid4().hex,
                    user_id=user_id,
                    type=transaction_type,
                    amount=amount,
                    balance_before=row.balance - amount,
                    balance_after=row.balance,
                    feature_id=feature_id,
                    description=description,
                    reference_id=reference_id,
                    created_at=now,
                )
            )
            s.flush()
            record = _credits_from_db(row)

        logger.info(
            "Credits added",
            extra={
                "data": {
                    "user_id": user_id,
                    "type": transaction_type,
                    "amount": amount,
                    "balance": record.balance,
                    "reference_id": reference_id,
                }
            },
        )
        return record

    def set_subscription_credits(
        self,
        user_id: str,
        credits_per_month: int,
        *,
        session: Session | None = None,
    ) -> UserCredits:
        if not isinstance(credits_per_month, int) or isinstance(credits_per_month, bool) or credits_per_month < 0:
            raise ValidationError("Invalid monthly credit allowance")
        now = _now()
        with session_scope(self.db, session) as s:
            self._ensure_account_in_session(s, user_id=user_id, now=now)
            s.execute(
                update(DbUserCredits)
                .where(DbUserCredits.user_id == user_id)
                .values(subscription_credits_per_month=credits_per_month, updated_at=now)
            )
            return _credits_from_db(self._load(s, user_id))

    def recent_transactions(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0,
        transaction_type: str | None = None,
    ) -> list[CreditTransaction]:
        if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
            raise ValidationError("Invalid pagination")
        if transaction_type is not None and transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction type: {transaction_type}")

        stmt = select(DbCreditTransaction).where(DbCreditTransaction.user_id == user_id)
        if transaction_type:
            stmt = stmt.where(DbCreditTransaction.type == transaction_type)
        stmt = (
            stmt.order_by(DbCreditTransaction.created_at.desc(), DbCreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        with self.db.session() as session:
            return [_transaction_from_db(row) for row in session.scalars(stmt)]

    def usage_by_feature(self, user_id: str, start_ts: int, end_ts: int) -> dict[str, int]:
        """Number of consumption transactions per feature within ``[start_ts, end_ts]``."""
        stmt = (
            select(DbCreditTransaction.feature_id, func.count())
            .where(
                DbCreditTransaction.user_id == user_id,
                DbCreditTransaction.type == TRANSACTION_CONSUMPTION,
                DbCreditTransaction.created_at >= start_ts,
                DbCreditTransaction.created_at <= end_ts,
            )
            .group_by(DbCreditTransaction.feature_id)
        )
        with self.db.session() as session:
            return {feature_id or "unknown": int(count) for feature_id, count in session.execute(stmt)}

    def users_due_for_refresh(self, now: int | None = None) -> list[UserCredits]:
        now = _now() if now is None else now
        stmt = (
            select(DbUserCredits)
            .where(
                DbUserCredits.subscription_credits_per_month > 0,
                DbUserCredits.next_refresh_at.is_not(None),
                DbUserCredits.next_refresh_at <= now,
            )
            .order_by(DbUserCredits.next_refresh_at)
        )
        with self.db.session() as session:
            return [_credits_from_db(row) for row in session.scalars(stmt)]

    def claim_refresh(self, user_id: str, now: int, *, session: Session) -> bool:
        """Take the row lock for a due refresh; ``False`` if another worker already did it."""
        result = session.execute(
            update(DbUserCredits)
            .where(
                DbUserCredits.user_id == user_id,
                DbUserCredits.subscription_credits_per_month > 0,
                DbUserCredits.next_refresh_at <= now,
            )
            .values(updated_at=_now())
        )
        return int(result.rowcount or 0) == 1

    def _ensure_account_in_session(self, session: Session, *, user_id: str, now: int) -> bool:
        insert_stmt = (
            upsert_insert(session, DbUserCredits)
            .values(
                user_id=user_id,
                balance=0,
                subscription_credits_per_month=0,
                total_granted=0,
                total_consumed=0,
                total_purchased=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=[DbUserCredits.user_id])
        )
        # RETURNING reports whether this call created the row
        return session.execute(insert_stmt.returning(DbUserCredits.user_id)).scalar_one_or_none() is not None

    @staticmethod
    def _load(session: Session, user_id: str) -> DbUserCredits:
        return session.scalars(
            select(DbUserCredits)
            .where(DbUserCredits.user_id == user_id)
            .execution_options(populate_existing=True)
        ).one()

    @staticmethod
    def _balance_in_session(session: Session, user_id: str) -> int:
        balance = session.scalar(select(DbUserCredits.balance).where(DbUserCredits.user_id == user_id).limit(1))
        return int(balance or 0)


def _validate_amount(amount: int, *, allow_zero: bool = False) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool):
        raise ValidationError("Invalid amount")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValidationError("Invalid amount")


def _validate_description(description: str) -> str:
    cleaned = (description or "").strip()
    if not cleaned or len(cleaned) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError("Invalid description")
    return cleaned


def _credits_from_db(row: DbUserCredits) -> UserCredits:
    return UserCredits(
        user_id=row.user_id,
        balance=int(row.balance),
        subscription_credits_per_month=int(row.subscription_credits_per_month),
        total_granted=int(row.total_granted),
        total_consumed=int(row.total_consumed),
        total_purchased=int(row.total_purchased),
        last_refresh_at=row.last_refresh_at,
        next_refresh_at=row.next_refresh_at,
        created_at=int(row.created_at),
        updated_at=int(row.updated_at),
    )


def _transaction_from_db(row: DbCreditTransaction) -> CreditTransaction:
    return CreditTransaction(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        amount=int(row.amount),
        balance_before=int(row.balance_before),
        balance_after=int(row.balance_after),
        feature_id=row.feature_id,
        description=row.description,
        reference_id=row.reference_id,
        created_at=int(row.created_at),
    )
