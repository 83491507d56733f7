from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select, update as sql_update
from sqlalchemy.orm import Session

from daggergm.db.models import CreditBalance, CreditTransaction
from daggergm.logging import get_logger
from daggergm.modules.adventures.repository import PersistenceGateway
from daggergm.modules.credits.errors import InsufficientCreditsError, InvalidCreditAmountError
from daggergm.modules.credits.schemas import CreditBalanceOut, CreditTransactionOut
from daggergm.utils.time import utc_now_naive

CREDIT_COSTS: dict[str, int] = {
    "adventure": 1,
    "expansion": 1,
    "export": 0,
}

logger = get_logger("daggergm.credits")


def credit_cost(credit_kind: str) -> int:
    try:
        return CREDIT_COSTS[credit_kind]
    except KeyError as exc:
        raise InvalidCreditAmountError(f"unknown credit kind: {credit_kind}", credit_kind=credit_kind) from exc


@dataclass(frozen=True)
class CreditChange:
    new_balance: int
    transaction_id: str


class CreditLedger:
    """Per-user credit balance with an append-only transaction log.

    Methods run inside the caller's transaction. Balance changes are single
    guarded UPDATE statements, so concurrent consumers of one balance cannot
    double-spend and the balance never goes below zero.
    """

    def __init__(self, store: PersistenceGateway | None = None):
        self._store = store or PersistenceGateway()

    def get_balance(self, db: Session, user_id: str) -> int:
        credits = db.execute(select(CreditBalance.credits).where(CreditBalance.user_id == user_id)).scalar_one_or_none()
        return int(credits or 0)

    def get_balance_summary(self, db: Session, user_id: str) -> CreditBalanceOut:
        row = db.get(CreditBalance, user_id, populate_existing=True)
        if row is None:
            return CreditBalanceOut(user_id=user_id, credits=0, total_purchased=0)
        return CreditBalanceOut(user_id=user_id, credits=row.credits, total_purchased=row.total_purchased)

    def check_sufficiency(self, db: Session, user_id: str, credit_kind: str) -> bool:
        return self.get_balance(db, user_id) >= credit_cost(credit_kind)

    def consume(self, db: Session, user_id: str, credit_kind: str, metadata: dict | None = None) -> CreditChange:
        cost = credit_cost(credit_kind)
        if cost > 0:
            balance = self._store.atomic_adjust_credit_balance(db, user_id, -cost)
            if balance is None:
                available = self.get_balance(db, user_id)
                logger.info("credit_consume_rejected", user_id=user_id, credit_kind=credit_kind, available=available)
                raise InsufficientCreditsError(required=cost, available=available)
        else:
            balance = self.get_balance(db, user_id)

        change = self._append(db, user_id, "consume", credit_kind, -cost, balance, metadata)
        logger.info(
            "credit_consumed", user_id=user_id, credit_kind=credit_kind, balance=balance, metadata=metadata or {}
        )
        return change

    def refund(self, db: Session, user_id: str, credit_kind: str, metadata: dict | None = None) -> CreditChange:
        amount = credit_cost(credit_kind)
        self._ensure_balance_row(db, user_id)
        balance = self._store.atomic_adjust_credit_balance(db, user_id, amount)
        change = self._append(db, user_id, "refund", credit_kind, amount, balance, metadata)
        logger.info(
            "credit_refunded", user_id=user_id, credit_kind=credit_kind, balance=balance, metadata=metadata or {}
        )
        return change

    def add_credits(
        self,
        db: Session,
        user_id: str,
        amount: int,
        source: str,
        metadata: dict | None = None,
    ) -> CreditChange:
        if amount <= 0:
            raise InvalidCreditAmountError("Credit amount must be positive", amount=amount)
        self._ensure_balance_row(db, user_id)
        db.execute(
            sql_update(CreditBalance)
            .where(CreditBalance.user_id == user_id)
            .values(
                credits=CreditBalance.credits + amount,
                total_purchased=CreditBalance.total_purchased + amount,
                updated_at=utc_now_naive(),
            )
        )
        balance = self.get_balance(db, user_id)
        details = {"source": source, **(metadata or {})}
        change = self._append(db, user_id, "purchase", "adventure", amount, balance, details)
        logger.info("credits_added", user_id=user_id, amount=amount, balance=balance, source=source)
        return change

    def list_transactions(
        self,
        db: Session,
        user_id: str,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CreditTransactionOut]:
        rows = db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(max(1, min(int(limit), 200)))
            .offset(max(0, int(offset)))
        ).scalars()
        return [
            CreditTransactionOut(
                id=row.id,
                type=row.type,
                credit_kind=row.credit_kind,
                amount=row.amount,
                balance_after=row.balance_after,
                metadata=dict(row.metadata_json or {}),
                created_at=row.created_at,
            )
            for row in rows
        ]

    @staticmethod
    def _ensure_balance_row(db: Session, user_id: str) -> None:
        if db.get(CreditBalance, user_id) is not None:
            return
        db.add(CreditBalance(user_id=user_id, credits=0, total_purchased=0, updated_at=utc_now_naive()))
        db.flush()

    @staticmethod
    def _append(
        db: Session,
        user_id: str,
        tx_type: str,
        credit_kind: str,
        amount: int,
        balance_after: int,
        metadata: dict | None,
    ) -> CreditChange:
        row = CreditTransaction(
            user_id=user_id,
            type=tx_type,
            credit_kind=credit_kind,
            amount=amount,
            balance_after=balance_after,
            metadata_json={"credit_kind": credit_kind, **(metadata or {})},
            created_at=utc_now_naive(),
        )
        db.add(row)
        db.flush()
        return CreditChange(new_balance=balance_after, transaction_id=row.id)
