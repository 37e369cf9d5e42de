"""
Pay-in methods: one variant per external rail.

Each variant knows how to describe a payment for an order (what the client
has to send, and where) and how to decide whether the rail saw it. Adding a
chain means adding a variant and registering it in ``build_pay_in_methods``.
"""
import base64
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from solders.hash import Hash
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import PayInCurrency, VerificationStatus
from purchase_service.chain_clients import (
    ExternalServiceError, SolanaRpcClient, TelegramBotClient, TonCenterClient,
)
from purchase_service.models import from_unix
from purchase_service.pricing import UNIT_DECIMALS, to_display

logger = logging.getLogger(__name__)

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

BPS = 10_000

def meets_required(observed: int, required: int, tolerance_bps: int) -> bool:
    """True when ``observed`` is at least ``required`` less the tolerance, in integer arithmetic."""
    return observed * BPS >= required * (BPS - tolerance_bps)

@dataclass
class VerificationResult:
    status: VerificationStatus
    observed_amount: Optional[int] = None
    observed_at: Optional[datetime] = None
    proof: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def not_found(cls, reason: str) -> "VerificationResult":
        return cls(VerificationStatus.NOT_FOUND, reason=reason)

    @classmethod
    def mismatch(cls, reason: str, observed_amount: Optional[int] = None) -> "VerificationResult":
        return cls(VerificationStatus.MISMATCH, observed_amount=observed_amount, reason=reason)

    @classmethod
    def pending(cls, reason: str) -> "VerificationResult":
        return cls(VerificationStatus.PENDING, reason=reason)

class PayInMethod(ABC):
    currency: PayInCurrency
    family: str  # account | memo | invoice
    requires_client_proof = False

    def __init__(self, settings):
        self.settings = settings

    @property
    def decimals(self) -> int:
        return UNIT_DECIMALS[self.currency]

    @property
    def order_ttl(self) -> int:
        return self.settings.signed_order_ttl_seconds

    def display_amount(self, amount: int) -> str:
        return to_display(amount, self.currency)

    def validate_payer(self, payer: str) -> str:
        return payer

    def check_amount(self, observed: int, required: int) -> bool:
        return meets_required(observed, required, self.settings.amount_tolerance_bps)

    @abstractmethod
    def build_descriptor(self, order) -> Dict[str, Any]:
        """Pay instructions handed back to the client."""

    @abstractmethod
    def verify(self, order) -> VerificationResult:
        """Ask the rail whether ``order`` has been paid. May raise ExternalServiceError."""

class _SolanaMethod(PayInMethod):
    family = "account"
    requires_client_proof = True

    def __init__(self, settings, rpc: SolanaRpcClient):
        super().__init__(settings)
        self.rpc = rpc
        self.treasury = settings.treasury_sol_address

    def validate_payer(self, payer: str) -> str:
        try:
            Pubkey.from_string(payer)
        except ValueError:
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR, "payer is not a valid Solana address", field="payer"
            )
        return payer

    def _fetch(self, order):
        """Confirmed transaction for the order's signature, or a terminal result."""
        if not order.proof:
            return None, VerificationResult.not_found("no transaction signature submitted")
        tx = self.rpc.get_transaction(order.proof)
        if tx is None:
            return None, VerificationResult.not_found("transaction not found or not confirmed yet")
        meta = tx.get("meta") or {}
        if meta.get("err") is not None:
            return None, VerificationResult.mismatch("transaction failed on chain")
        return tx, None

    def _verified(self, order, tx, observed: int) -> VerificationResult:
        required = order.computed_pay_in_amount
        if not self.check_amount(observed, required):
            return VerificationResult.mismatch(
                f"received {self.display_amount(observed)}, expected {self.display_amount(required)}",
                observed_amount=observed,
            )
        return VerificationResult(
            VerificationStatus.VERIFIED,
            observed_amount=observed,
            observed_at=from_unix(tx.get("blockTime")),
            proof=order.proof,
        )

def _account_keys(tx: Dict[str, Any]) -> List[str]:
    """Static keys followed by lookup-table keys, in the order balances are reported."""
    message = tx.get("transaction", {}).get("message", {})
    meta = tx.get("meta") or {}
    keys = [k["pubkey"] if isinstance(k, dict) else k for k in message.get("accountKeys", [])]
    # jsonParsed merges them already; raw encodings list them separately
    if len(keys) < len(meta.get("postBalances", [])):
        loaded = meta.get("loadedAddresses") or {}
        keys += loaded.get("writable", []) + loaded.get("readonly", [])
    return keys

class SolanaNativeMethod(_SolanaMethod):
    currency = PayInCurrency.CHAIN_A_NATIVE

    def unsigned_transfer(self, payer: str, lamports: int) -> Optional[str]:
        """Base64 legacy transaction moving ``lamports`` from payer to treasury, fee paid by payer."""
        try:
            blockhash = self.rpc.get_latest_blockhash()
        except ExternalServiceError as e:
            logger.warning(f"No recent blockhash, returning descriptor without transaction: {e}")
            return None
        payer_key = Pubkey.from_string(payer)
        ix = transfer(TransferParams(
            from_pubkey=payer_key,
            to_pubkey=Pubkey.from_string(self.treasury),
            lamports=lamports,
        ))
        message = Message.new_with_blockhash([ix], payer_key, Hash.from_string(blockhash))
        return base64.b64encode(bytes(Transaction.new_unsigned(message))).decode("ascii")

    def build_descriptor(self, order) -> Dict[str, Any]:
        display = self.display_amount(order.computed_pay_in_amount)
        return {
            "type": "solana_transfer",
            "recipient": self.treasury,
            "amount": order.computed_pay_in_amount,
            "amountDisplay": display,
            "symbol": "SOL",
            "paymentUrl": f"solana:{self.treasury}?" + urlencode({"amount": display}),
            "transaction": self.unsigned_transfer(order.payer_address, order.computed_pay_in_amount),
        }

    def verify(self, order) -> VerificationResult:
        tx, terminal = self._fetch(order)
        if terminal:
            return terminal
        keys = _account_keys(tx)
        if self.treasury not in keys:
            return VerificationResult.mismatch("transaction did not include the treasury wallet")
        idx = keys.index(self.treasury)
        meta = tx["meta"]
        try:
            observed = int(meta["postBalances"][idx]) - int(meta["preBalances"][idx])
        except (KeyError, IndexError, TypeError, ValueError):
            return VerificationResult.mismatch("transaction carries no balance change for the treasury wallet")
        return self._verified(order, tx, observed)

class SolanaStableMethod(_SolanaMethod):
    currency = PayInCurrency.CHAIN_A_STABLE

    def __init__(self, settings, rpc: SolanaRpcClient):
        super().__init__(settings, rpc)
        self.mint = settings.usdc_mint_address

    def treasury_token_account(self) -> str:
        ata, _ = Pubkey.find_program_address(
            [bytes(Pubkey.from_string(self.treasury)), bytes(TOKEN_PROGRAM_ID), bytes(Pubkey.from_string(self.mint))],
            ASSOCIATED_TOKEN_PROGRAM_ID,
        )
        return str(ata)

    def build_descriptor(self, order) -> Dict[str, Any]:
        display = self.display_amount(order.computed_pay_in_amount)
        return {
            "type": "spl_transfer",
            "recipient": self.treasury,
            "recipientTokenAccount": self.treasury_token_account(),
            "mint": self.mint,
            "decimals": self.decimals,
            "amount": order.computed_pay_in_amount,
            "amountDisplay": display,
            "symbol": "USDC",
            "paymentUrl": f"solana:{self.treasury}?" + urlencode({"amount": display, "spl-token": self.mint}),
        }

    def _treasury_amount(self, balances: List[Dict[str, Any]]) -> int:
        total = 0
        for entry in balances or []:
            if entry.get("mint") == self.mint and entry.get("owner") == self.treasury:
                total += int(entry.get("uiTokenAmount", {}).get("amount", "0"))
        return total

    def verify(self, order) -> VerificationResult:
        tx, terminal = self._fetch(order)
        if terminal:
            return terminal
        meta = tx["meta"]
        post = meta.get("postTokenBalances") or []
        if not any(e.get("mint") == self.mint and e.get("owner") == self.treasury for e in post):
            return VerificationResult.mismatch("transaction did not credit the treasury token account")
        observed = self._treasury_amount(post) - self._treasury_amount(meta.get("preTokenBalances"))
        return self._verified(order, tx, observed)

# user-friendly base64url (48 chars) or raw workchain:hex
TON_ADDRESS_RE = re.compile(r"^([A-Za-z0-9_-]{48}|-?\d+:[0-9a-fA-F]{64})$")

class TonMemoMethod(PayInMethod):
    currency = PayInCurrency.CHAIN_B_NATIVE
    family = "memo"
    PAGE_SIZE = 50
    MAX_PAGES = 5

    def __init__(self, settings, toncenter: TonCenterClient):
        super().__init__(settings)
        self.toncenter = toncenter
        self.treasury = settings.treasury_ton_address

    @property
    def order_ttl(self) -> int:
        return self.settings.memo_order_ttl_seconds

    def validate_payer(self, payer: str) -> str:
        if not TON_ADDRESS_RE.match(payer):
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR, "payer is not a valid TON address", field="payer"
            )
        return payer

    def build_descriptor(self, order) -> Dict[str, Any]:
        query = urlencode({"amount": order.computed_pay_in_amount, "text": order.order_id})
        return {
            "type": "ton_transfer",
            "recipient": self.treasury,
            "amount": order.computed_pay_in_amount,
            "amountDisplay": self.display_amount(order.computed_pay_in_amount),
            "symbol": "TON",
            "memo": order.order_id,
            "deepLink": f"ton://transfer/{self.treasury}?{query}",
        }

    def _matching_transfers(self, order) -> List[Dict[str, Any]]:
        """Incoming treasury transfers whose comment is the order id, newest pages first."""
        since = order.created_at.replace(tzinfo=timezone.utc).timestamp() if order.created_at else 0
        matches = []
        lt = tx_hash = None
        for _ in range(self.MAX_PAGES):
            page = self.toncenter.get_transactions(self.treasury, limit=self.PAGE_SIZE, lt=lt, tx_hash=tx_hash)
            for tx in page:
                in_msg = tx.get("in_msg") or {}
                if (in_msg.get("message") or "").strip() == order.order_id:
                    matches.append(tx)
            if len(page) < self.PAGE_SIZE or page[-1].get("utime", 0) < since:
                break
            last_id = page[-1].get("transaction_id") or {}
            lt, tx_hash = last_id.get("lt"), last_id.get("hash")
        return matches

    def verify(self, order) -> VerificationResult:
        matches = self._matching_transfers(order)
        if not matches:
            return VerificationResult.not_found("no transfer with this order's memo yet")
        best = max(matches, key=lambda tx: int((tx.get("in_msg") or {}).get("value") or 0))
        observed = int(best["in_msg"].get("value") or 0)
        if not self.check_amount(observed, order.computed_pay_in_amount):
            return VerificationResult.mismatch(
                f"received {self.display_amount(observed)} TON, expected "
                f"{self.display_amount(order.computed_pay_in_amount)} TON",
                observed_amount=observed,
            )
        return VerificationResult(
            VerificationStatus.VERIFIED,
            observed_amount=observed,
            observed_at=from_unix(best.get("utime")),
            proof=(best.get("transaction_id") or {}).get("hash"),
        )

class StarsInvoiceMethod(PayInMethod):
    currency = PayInCurrency.STARRED_INVOICE
    family = "invoice"

    def __init__(self, settings, bot: TelegramBotClient):
        super().__init__(settings)
        self.bot = bot

    @property
    def order_ttl(self) -> int:
        return self.settings.invoice_order_ttl_seconds

    def build_descriptor(self, order) -> Dict[str, Any]:
        link = self.bot.create_invoice_link(
            title=f"{order.requested_token_amount} {self.settings.token_symbol}",
            description=f"Purchase {order.requested_token_amount} {self.settings.token_symbol} tokens",
            payload=order.order_id,
            stars=order.computed_pay_in_amount,
        )
        return {
            "type": "stars_invoice",
            "invoiceLink": link,
            "stars": order.computed_pay_in_amount,
            "payload": order.order_id,
        }

    def verify(self, order) -> VerificationResult:
        # Only the authenticated payment callback can settle an invoice
        return VerificationResult.not_found("awaiting payment callback")

    def verify_callback(self, order, payment: Dict[str, Any]) -> VerificationResult:
        """``payment`` is the Bot API ``successful_payment`` object, already channel-authenticated."""
        if payment.get("invoice_payload") != order.order_id:
            return VerificationResult.mismatch("payment payload does not reference this order")
        if payment.get("currency") != TelegramBotClient.STARS_CURRENCY:
            return VerificationResult.mismatch(f"unexpected payment currency {payment.get('currency')}")
        observed = int(payment.get("total_amount") or 0)
        if not self.check_amount(observed, order.computed_pay_in_amount):
            return VerificationResult.mismatch(
                f"received {observed} stars, expected {order.computed_pay_in_amount}",
                observed_amount=observed,
            )
        return VerificationResult(
            VerificationStatus.VERIFIED,
            observed_amount=observed,
            proof=payment.get("telegram_payment_charge_id"),
        )

def build_pay_in_methods(settings, solana: SolanaRpcClient, ton: TonCenterClient,
                         telegram: TelegramBotClient) -> Dict[PayInCurrency, PayInMethod]:
    methods = [
        SolanaNativeMethod(settings, solana),
        SolanaStableMethod(settings, solana),
        TonMemoMethod(settings, ton),
        StarsInvoiceMethod(settings, telegram),
    ]
    return {m.currency: m for m in methods}
