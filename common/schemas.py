from datetime import datetime
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Optional

class PayInCurrency(str, Enum):
    CHAIN_A_NATIVE = "CHAIN_A_NATIVE"    # SOL
    CHAIN_A_STABLE = "CHAIN_A_STABLE"    # USDC on Solana
    CHAIN_B_NATIVE = "CHAIN_B_NATIVE"    # TON
    STARRED_INVOICE = "STARRED_INVOICE"  # Telegram Stars

class OrderStatus(str, Enum):
    CREATED = "CREATED"
    AWAITING_PROOF = "AWAITING_PROOF"
    VERIFYING = "VERIFYING"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    CREDITED = "CREDITED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"

class VerificationStatus(str, Enum):
    VERIFIED = "VERIFIED"
    NOT_FOUND = "NOT_FOUND"
    MISMATCH = "MISMATCH"
    PENDING = "PENDING"

class LedgerAsset(str, Enum):
    CHESS = "CHESS"
    GAME = "GAME"

class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

# Orders

class CreateOrderRequest(ApiModel):
    payer: Optional[str] = Field(default=None, min_length=1, max_length=128)
    token_amount: int
    currency: PayInCurrency
    telegram_user_id: Optional[int] = None

class CreateOrderResponse(ApiModel):
    order_id: str
    status: OrderStatus
    pay_in_currency: PayInCurrency
    pay_in_amount: int
    pay_in_display: str
    rate_used: float
    pay_instructions: Dict[str, Any]
    expires_at: datetime

class SubmitProofRequest(ApiModel):
    order_id: str
    proof: str = Field(min_length=1, max_length=256)

class VerifyNowRequest(ApiModel):
    order_id: str

class OrderStatusResponse(ApiModel):
    order_id: str
    status: OrderStatus
    pay_in_currency: PayInCurrency
    pay_in_amount: int
    requested_token_amount: int
    expires_at: datetime
    proof: Optional[str] = None
    failure_reason: Optional[str] = None
    credited_amount: Optional[int] = None

class QuoteResponse(ApiModel):
    token_amount: int
    currency: PayInCurrency
    usd_amount: str
    pay_in_amount: int
    pay_in_display: str
    rate_used: float
    rate_age_seconds: int
    rate_stale: bool
    expires_at: datetime

# Ledger

class AccountResponse(ApiModel):
    address: str
    token_balance: int
    secondary_balance: int
    total_earned: int
    total_spent: int

class SwapRequest(ApiModel):
    address: str = Field(min_length=1, max_length=128)
    from_token: LedgerAsset
    amount: int = Field(gt=0)

class SwapResponse(ApiModel):
    swap_id: str
    from_token: LedgerAsset
    to_token: LedgerAsset
    from_amount: int
    to_amount: int
    fee: str
    token_balance: int
    secondary_balance: int

class WalletLinkRequest(ApiModel):
    telegram_id: int
    telegram_username: Optional[str] = None
    wallet_address: str = Field(min_length=32, max_length=66)

class WalletLinkResponse(ApiModel):
    telegram_id: int
    telegram_username: Optional[str] = None
    wallet_address: str
    linked_at: datetime

# Operator

class OrphanedCreditItem(ApiModel):
    record_id: int
    order_id: str
    user_address: str
    amount_credited: int
    created_at: datetime

class ReconciliationQueueResponse(ApiModel):
    count: int
    items: List[OrphanedCreditItem]

# Events published through the outbox

class PurchaseEvent(BaseModel):
    type: Literal[
        "OrderCreated", "OrderVerified", "OrderCredited", "OrderFailed",
        "OrderExpired", "CreditOrphaned", "TokensSwapped",
    ]
    order_id: Optional[str] = None
    user_address: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
