"""
Crediting engine: the only writer of purchase credits to ledger balances.

A credit runs in two commits:

1. claim: insert the CreditRecord for the order. Its unique ``order_id``
   lets exactly one caller through, however many race.
2. apply: flip ``balance_applied`` with a conditional update, increment the
   balance in SQL and mark the order CREDITED, all in one commit.

A failure between the two leaves an unapplied record. That is a payment the
user is owed: it is logged, announced as ``CreditOrphaned`` and listed for
operators, who replay step 2 only. Nothing here ever inserts a second record.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import OrderStatus, PurchaseEvent
from purchase_service.models import CreditRecord, LedgerAccount, PaymentOrder, utcnow
from purchase_service.outbox_worker import enqueue_event

logger = logging.getLogger(__name__)

ORPHAN_GRACE_SECONDS = 30

class LedgerWriteError(Exception):
    pass

@dataclass
class CreditResult:
    applied: bool
    new_balance: int
    record_id: Optional[int] = None
    orphaned: bool = False

class CreditingEngine:
    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def balance(self, address: str) -> LedgerAccount:
        """Ledger view of ``address``; unknown addresses read as an empty account."""
        with self.session_factory() as db:
            account = db.get(LedgerAccount, address)
        if account is None:
            account = LedgerAccount(address=address, token_balance=0, secondary_balance=0,
                                    total_earned=0, total_spent=0)
        return account

    def credit(self, order_id: str) -> CreditResult:
        with self.session_factory() as db:
            order = db.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id)).scalar_one_or_none()
            if order is None:
                raise BusinessLogicError(ErrorCodes.ORDER_NOT_FOUND, f"Order {order_id} not found")
            if order.status != OrderStatus.VERIFIED:
                # Nothing to do before verification, and nothing left to do after crediting
                return CreditResult(False, self.balance(order.payer_address).token_balance)

            record = CreditRecord(
                order_id=order.order_id,
                user_address=order.payer_address,
                amount_credited=order.requested_token_amount,
                balance_applied=False,
                created_at=self.clock(),
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"Credit for {order_id} already claimed, not applying again")
                return CreditResult(False, self.balance(order.payer_address).token_balance)

        return self._complete(record)

    def replay_orphan(self, record_id: int) -> CreditResult:
        """Operator recovery: re-run only the balance increment of an unapplied record."""
        with self.session_factory() as db:
            record = db.get(CreditRecord, record_id)
        if record is None:
            raise BusinessLogicError(ErrorCodes.CREDIT_RECORD_NOT_FOUND, f"Credit record {record_id} not found")
        if record.balance_applied:
            logger.info(f"Credit record {record_id} already applied, replay is a no-op")
            return CreditResult(False, self.balance(record.user_address).token_balance, record.id)
        logger.info(f"Replaying balance increment for credit record {record_id} (order {record.order_id})")
        return self._complete(record)

    def list_orphans(self, grace_seconds: int = ORPHAN_GRACE_SECONDS) -> List[CreditRecord]:
        """Unapplied records older than ``grace_seconds``; younger ones may still be mid-credit."""
        cutoff = self.clock() - timedelta(seconds=grace_seconds)
        with self.session_factory() as db:
            return db.execute(
                select(CreditRecord)
                .where(CreditRecord.balance_applied.is_(False), CreditRecord.created_at <= cutoff)
                .order_by(CreditRecord.id)
            ).scalars().all()

    def _ensure_account(self, address: str):
        with self.session_factory() as db:
            if db.get(LedgerAccount, address) is not None:
                return
            db.add(LedgerAccount(address=address, token_balance=0, secondary_balance=0,
                                 total_earned=0, total_spent=0))
            try:
                db.commit()
            except IntegrityError:
                # Created concurrently
                db.rollback()

    def _increment_balance(self, db, address: str, amount: int):
        res = db.execute(
            update(LedgerAccount)
            .where(LedgerAccount.address == address)
            .values(
                token_balance=LedgerAccount.token_balance + amount,
                total_earned=LedgerAccount.total_earned + amount,
                updated_at=self.clock(),
            )
        )
        if res.rowcount != 1:
            raise LedgerWriteError(f"ledger account {address} missing")

    def _complete(self, record: CreditRecord) -> CreditResult:
        try:
            self._ensure_account(record.user_address)
            with self.session_factory() as db:
                claimed = db.execute(
                    update(CreditRecord)
                    .where(CreditRecord.id == record.id, CreditRecord.balance_applied.is_(False))
                    .values(balance_applied=True, applied_at=self.clock())
                )
                if claimed.rowcount != 1:
                    # A concurrent replay got here first
                    db.rollback()
                    return CreditResult(False, self.balance(record.user_address).token_balance, record.id)

                self._increment_balance(db, record.user_address, record.amount_credited)
                moved = db.execute(
                    update(PaymentOrder)
                    .where(PaymentOrder.order_id == record.order_id, PaymentOrder.status == OrderStatus.VERIFIED)
                    .values(status=OrderStatus.CREDITED, updated_at=self.clock())
                )
                if moved.rowcount != 1:
                    logger.warning(f"Order {record.order_id} was not VERIFIED while applying credit {record.id}")
                enqueue_event(db, PurchaseEvent(
                    type="OrderCredited", order_id=record.order_id,
                    user_address=record.user_address, amount=record.amount_credited,
                ))
                db.commit()
        except (SQLAlchemyError, LedgerWriteError) as e:
            logger.error(
                f"Split failure: credit record {record.id} for order {record.order_id} claimed "
                f"but balance not applied: {e}",
                extra={"order_id": record.order_id, "record_id": record.id},
            )
            self._announce_orphan(record, str(e))
            return CreditResult(False, self.balance(record.user_address).token_balance, record.id, orphaned=True)

        new_balance = self.balance(record.user_address).token_balance
        logger.info(f"Credited {record.amount_credited} to {record.user_address} for order {record.order_id}")
        return CreditResult(True, new_balance, record.id)

    def _announce_orphan(self, record: CreditRecord, reason: str):
        try:
            with self.session_factory() as db:
                enqueue_event(db, PurchaseEvent(
                    type="CreditOrphaned", order_id=record.order_id, user_address=record.user_address,
                    amount=record.amount_credited, reason=reason[:255],
                ))
                db.commit()
        except SQLAlchemyError as e:
            # The unapplied record itself still surfaces in the operator queue
            logger.error(f"Could not publish CreditOrphaned for record {record.id}: {e}")
