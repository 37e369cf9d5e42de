from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    Column, Integer, String, BigInteger, Boolean, DateTime, Enum, Float, ForeignKey,
    CheckConstraint, Index, func,
)
from sqlalchemy.orm import declarative_base
from common.schemas import OrderStatus, PayInCurrency

Base = declarative_base()

def utcnow() -> datetime:
    """Naive UTC, matching what the DATETIME columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def from_unix(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)

TERMINAL_STATUSES = frozenset({OrderStatus.CREDITED, OrderStatus.EXPIRED, OrderStatus.FAILED})

# Orders only ever move forward. VERIFYING/PENDING may fall back to
# AWAITING_PROOF while a memo payment is still propagating to the indexer.
ALLOWED_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.AWAITING_PROOF, OrderStatus.EXPIRED, OrderStatus.FAILED},
    OrderStatus.AWAITING_PROOF: {
        OrderStatus.VERIFYING, OrderStatus.PENDING, OrderStatus.VERIFIED,
        OrderStatus.EXPIRED, OrderStatus.FAILED,
    },
    OrderStatus.VERIFYING: {
        OrderStatus.AWAITING_PROOF, OrderStatus.PENDING, OrderStatus.VERIFIED,
        OrderStatus.EXPIRED, OrderStatus.FAILED,
    },
    OrderStatus.PENDING: {
        OrderStatus.AWAITING_PROOF, OrderStatus.VERIFYING, OrderStatus.VERIFIED,
        OrderStatus.EXPIRED, OrderStatus.FAILED,
    },
    OrderStatus.VERIFIED: {OrderStatus.CREDITED},
    OrderStatus.CREDITED: set(),
    OrderStatus.EXPIRED: set(),
    OrderStatus.FAILED: set(),
}

class InvalidTransition(Exception):
    def __init__(self, order_id: str, current: OrderStatus, target: OrderStatus):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"order {order_id}: {current.value} -> {target.value} not allowed")

def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]

def transition(order: "PaymentOrder", target: OrderStatus) -> bool:
    """Move ``order`` to ``target``. Returns False when it is already there."""
    if order.status == target:
        return False
    if target not in ALLOWED_TRANSITIONS[order.status]:
        raise InvalidTransition(order.order_id, order.status, target)
    order.status = target
    return True

class PaymentOrder(Base):
    __tablename__ = "payment_orders"
    __table_args__ = (
        Index("ix_payment_orders_status_expires", "status", "expires_at"),
    )
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id = Column(String(64), nullable=False, unique=True)
    payer_address = Column(String(128), nullable=False, index=True)
    pay_in_currency = Column(Enum(PayInCurrency, native_enum=False, length=32), nullable=False)
    requested_token_amount = Column(BigInteger, nullable=False)
    computed_pay_in_amount = Column(BigInteger, nullable=False)  # smallest unit
    price_rate = Column(Float, nullable=False)
    price_fetched_at = Column(DateTime, nullable=True)
    status = Column(Enum(OrderStatus, native_enum=False, length=32), nullable=False, default=OrderStatus.CREATED, index=True)
    # One transfer can only ever pay for one order
    proof = Column(String(256), nullable=True, unique=True)
    observed_amount = Column(BigInteger, nullable=True)
    failure_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    expires_at = Column(DateTime, nullable=False, index=True)
    verified_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        CheckConstraint("token_balance >= 0", name="ck_ledger_token_balance_non_negative"),
        CheckConstraint("secondary_balance >= 0", name="ck_ledger_secondary_balance_non_negative"),
    )
    address = Column(String(128), primary_key=True)
    token_balance = Column(BigInteger, nullable=False, default=0)
    secondary_balance = Column(BigInteger, nullable=False, default=0)
    total_earned = Column(BigInteger, nullable=False, default=0)
    total_spent = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class CreditRecord(Base):
    """Append-only. The unique order_id is the exactly-once guard."""
    __tablename__ = "credit_records"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    order_id = Column(String(64), ForeignKey("payment_orders.order_id"), nullable=False, unique=True)
    user_address = Column(String(128), nullable=False, index=True)
    amount_credited = Column(BigInteger, nullable=False)
    # False between the claim and the balance increment; a row stuck here is a split failure
    balance_applied = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    applied_at = Column(DateTime, nullable=True)

class WalletLink(Base):
    __tablename__ = "wallet_links"
    telegram_id = Column(BigInteger, primary_key=True, autoincrement=False)
    telegram_username = Column(String(64), nullable=True)
    wallet_address = Column(String(128), nullable=False, index=True)
    linked_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class SwapRecord(Base):
    __tablename__ = "swap_records"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    swap_id = Column(String(64), nullable=False, unique=True)
    address = Column(String(128), ForeignKey("ledger_accounts.address"), nullable=False, index=True)
    from_token = Column(String(8), nullable=False)
    to_token = Column(String(8), nullable=False)
    from_amount = Column(BigInteger, nullable=False)
    to_amount = Column(BigInteger, nullable=False)
    fee = Column(String(32), nullable=False)
    game_volume = Column(BigInteger, nullable=False)  # GAME-denominated size, for the daily cap
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    status = Column(String(16), default="new", index=True)  # new|sent|failed
