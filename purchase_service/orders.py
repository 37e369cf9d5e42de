"""
Order creation and the purchase service facade the HTTP layer talks to.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, ServiceError, ErrorCodes
from common.schemas import (
    CreateOrderRequest, CreateOrderResponse, OrderStatus, OrderStatusResponse, OrphanedCreditItem,
    PayInCurrency, PurchaseEvent, QuoteResponse, ReconciliationQueueResponse, AccountResponse,
)
from common.security import verify_webhook_token
from purchase_service.chain_clients import ExternalServiceError, ExternalTimeout, TelegramBotClient
from purchase_service.crediting import CreditingEngine
from purchase_service.models import CreditRecord, PaymentOrder, can_transition, from_unix, transition, utcnow
from purchase_service.outbox_worker import enqueue_event
from purchase_service.pay_methods import PayInMethod, VerificationResult
from purchase_service.poller import ReconciliationPoller
from purchase_service.pricing import QuoteCalculator
from purchase_service.swap import SwapService
from purchase_service.verifier import PROOF_CONSUMED, ChainVerifier
from purchase_service.wallet_links import WalletLinkStore

logger = logging.getLogger(__name__)

def new_order_id() -> str:
    return f"ord_{uuid.uuid4().hex}"

def external_error_code(error: ExternalServiceError) -> str:
    return ErrorCodes.TIMEOUT_ERROR if isinstance(error, ExternalTimeout) else ErrorCodes.EXTERNAL_SERVICE_ERROR

class PaymentRequestBuilder:
    def __init__(self, session_factory, quotes: QuoteCalculator, methods: Dict[PayInCurrency, PayInMethod],
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.quotes = quotes
        self.methods = methods
        self.clock = clock

    def method_for(self, currency: PayInCurrency) -> PayInMethod:
        method = self.methods.get(currency)
        if method is None:
            raise BusinessLogicError(
                ErrorCodes.UNSUPPORTED_CURRENCY, f"Currency {currency} is not accepted", field="currency"
            )
        return method

    def create_order(self, payer: str, token_amount: int, currency: PayInCurrency) -> Tuple[PaymentOrder, Dict[str, Any]]:
        """Persist a quoted order and return it with its pay instructions.

        Everything that can reject the request runs before anything is written.
        """
        method = self.method_for(currency)
        payer = method.validate_payer(payer)
        quote = self.quotes.quote(token_amount, currency)

        now = self.clock()
        order = PaymentOrder(
            order_id=new_order_id(),
            payer_address=payer,
            pay_in_currency=currency,
            requested_token_amount=token_amount,
            computed_pay_in_amount=quote.pay_in_amount,
            price_rate=quote.rate_used,
            price_fetched_at=from_unix(quote.rate.fetched_at),
            status=OrderStatus.CREATED,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(seconds=method.order_ttl),
        )
        with self.session_factory() as db:
            db.add(order)
            enqueue_event(db, PurchaseEvent(
                type="OrderCreated", order_id=order.order_id, user_address=payer,
                amount=token_amount, currency=currency.value,
            ))
            db.commit()

            try:
                descriptor = method.build_descriptor(order)
            except ExternalServiceError as e:
                transition(order, OrderStatus.FAILED)
                order.failure_reason = "payment instructions unavailable"
                db.commit()
                raise ServiceError(
                    external_error_code(e),
                    "Could not prepare payment instructions, try again shortly",
                    original_error=e,
                )
            transition(order, OrderStatus.AWAITING_PROOF)
            order.updated_at = self.clock()
            db.commit()

        logger.info(
            f"Order {order.order_id} created: {token_amount} tokens for "
            f"{quote.pay_in_amount} {currency.value} (rate {quote.rate_used}, stale={quote.rate.stale})"
        )
        return order, descriptor

class PurchaseService:
    """Every operation the HTTP surface exposes, over one set of collaborators."""

    def __init__(self, settings, session_factory, quotes: QuoteCalculator,
                 methods: Dict[PayInCurrency, PayInMethod], bot: Optional[TelegramBotClient] = None,
                 rate_limiter=None, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.session_factory = session_factory
        self.quotes = quotes
        self.methods = methods
        self.bot = bot
        self.rate_limiter = rate_limiter
        self.clock = clock
        self.builder = PaymentRequestBuilder(session_factory, quotes, methods, clock)
        self.verifier = ChainVerifier(session_factory, methods, clock)
        self.crediting = CreditingEngine(session_factory, clock)
        self.poller = ReconciliationPoller(session_factory, self.verifier, self.crediting, settings, clock)
        self.wallet_links = WalletLinkStore(session_factory, clock)
        self.swaps = SwapService(session_factory, settings, clock)

    # Orders

    def create_order(self, request: CreateOrderRequest) -> CreateOrderResponse:
        payer = request.payer
        if not payer:
            if request.currency == PayInCurrency.STARRED_INVOICE and request.telegram_user_id:
                payer = self.wallet_links.resolve_address(request.telegram_user_id)
            else:
                raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "payer is required", field="payer")

        order, descriptor = self.builder.create_order(payer, request.token_amount, request.currency)
        method = self.methods[order.pay_in_currency]
        return CreateOrderResponse(
            order_id=order.order_id,
            status=order.status,
            pay_in_currency=order.pay_in_currency,
            pay_in_amount=order.computed_pay_in_amount,
            pay_in_display=method.display_amount(order.computed_pay_in_amount),
            rate_used=order.price_rate,
            pay_instructions=descriptor,
            expires_at=order.expires_at,
        )

    def quote(self, token_amount: int, currency: PayInCurrency) -> QuoteResponse:
        method = self.builder.method_for(currency)
        quote = self.quotes.quote(token_amount, currency)
        return QuoteResponse(
            token_amount=token_amount,
            currency=currency,
            usd_amount=str(quote.usd_amount),
            pay_in_amount=quote.pay_in_amount,
            pay_in_display=method.display_amount(quote.pay_in_amount),
            rate_used=quote.rate_used,
            rate_age_seconds=quote.rate.age_seconds,
            rate_stale=quote.rate.stale,
            expires_at=quote.expires_at,
        )

    def submit_proof(self, order_id: str, proof: str) -> OrderStatusResponse:
        """Attach the client's transaction signature, then verify once right away."""
        proof = proof.strip()
        order = self.verifier.load(order_id)
        method = self.methods[order.pay_in_currency]
        if not method.requires_client_proof:
            raise BusinessLogicError(
                ErrorCodes.INVALID_PROOF,
                f"{order.pay_in_currency.value} orders are matched automatically, no proof is submitted",
                field="proof",
            )
        if order.proof == proof:
            # Resubmission of the same signature behaves like "verify now"
            return self._status(self.poller.process_order(order_id))
        if order.proof:
            raise BusinessLogicError(
                ErrorCodes.ORDER_NOT_ACTIONABLE, "A different proof was already submitted for this order",
                context={"status": order.status.value},
            )
        self._ensure_actionable(order)

        if not can_transition(order.status, OrderStatus.VERIFYING):
            raise BusinessLogicError(
                ErrorCodes.ORDER_NOT_ACTIONABLE, f"Order is {order.status.value}, proof not accepted",
                context={"orderId": order_id, "status": order.status.value},
            )
        with self.session_factory() as db:
            try:
                # Only the first proof for an order wins, and only one order per proof
                res = db.execute(
                    update(PaymentOrder)
                    .where(PaymentOrder.order_id == order_id, PaymentOrder.status == order.status,
                           PaymentOrder.proof.is_(None))
                    .values(proof=proof, status=OrderStatus.VERIFYING, updated_at=self.clock())
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                consumed = True
            else:
                consumed = False
                if res.rowcount != 1:
                    raise BusinessLogicError(
                        ErrorCodes.ORDER_NOT_ACTIONABLE, "Order changed while the proof was submitted, check its status",
                        context={"orderId": order_id},
                    )

        if consumed:
            order = self.verifier.apply_result(order_id, VerificationResult.mismatch(PROOF_CONSUMED))
            raise BusinessLogicError(
                ErrorCodes.PROOF_ALREADY_CONSUMED,
                "This transaction was already used to pay for another order",
                field="proof",
                context={"orderId": order_id, "status": order.status.value},
            )
        return self._status(self.poller.process_order(order_id))

    def order_status(self, order_id: str) -> OrderStatusResponse:
        return self._status(self.verifier.load(order_id))

    def verify_now(self, order_id: str) -> OrderStatusResponse:
        """Manual trigger: exactly one poller tick for this order."""
        self.verifier.load(order_id)
        if self.rate_limiter:
            limit = self.rate_limiter.check_rate_limit(
                order_id, "verify", self.settings.verify_rate_limit_per_minute, 60
            )
            if not limit["allowed"]:
                raise BusinessLogicError(
                    ErrorCodes.RATE_LIMIT_EXCEEDED, "Too many verification attempts, retry shortly",
                    context={"retryAfter": limit["retry_after"]},
                )
        return self._status(self.poller.process_order(order_id))

    def handle_invoice_callback(self, update: Dict[str, Any], auth_token: Optional[str]) -> Dict[str, Any]:
        """Bot platform webhook. Only authenticated updates are ever treated as proof."""
        if not verify_webhook_token(auth_token, self.settings.telegram_webhook_secret):
            raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, "Invalid webhook secret token")

        if "pre_checkout_query" in update:
            return self._answer_pre_checkout(update["pre_checkout_query"])

        payment = (update.get("message") or {}).get("successful_payment")
        if not payment:
            return {"ok": True, "handled": False}

        order_id = payment.get("invoice_payload")
        try:
            order = self.verifier.apply_callback(order_id, payment)
        except BusinessLogicError as e:
            # Acknowledge anyway so the platform stops redelivering; operators see the log
            logger.error(f"Payment callback for unknown or unsupported order {order_id}: {e.message}",
                         extra={"charge_id": payment.get("telegram_payment_charge_id")})
            return {"ok": True, "handled": False}
        if order.status == OrderStatus.VERIFIED:
            order = self.poller.process_order(order_id)
        return {"ok": True, "handled": True, "orderId": order_id, "status": order.status.value}

    # Ledger

    def account(self, address: str) -> AccountResponse:
        acc = self.crediting.balance(address)
        return AccountResponse(
            address=acc.address,
            token_balance=acc.token_balance,
            secondary_balance=acc.secondary_balance,
            total_earned=acc.total_earned,
            total_spent=acc.total_spent,
        )

    # Operator

    def reconciliation_queue(self) -> ReconciliationQueueResponse:
        items = [
            OrphanedCreditItem(
                record_id=r.id, order_id=r.order_id, user_address=r.user_address,
                amount_credited=r.amount_credited, created_at=r.created_at,
            )
            for r in self.crediting.list_orphans()
        ]
        return ReconciliationQueueResponse(count=len(items), items=items)

    def replay_orphan(self, record_id: int) -> Dict[str, Any]:
        result = self.crediting.replay_orphan(record_id)
        return {
            "recordId": record_id,
            "applied": result.applied,
            "orphaned": result.orphaned,
            "newBalance": result.new_balance,
        }

    # helpers

    def _ensure_actionable(self, order: PaymentOrder):
        if order.status == OrderStatus.EXPIRED or (not order.is_terminal and self.clock() >= order.expires_at):
            if order.status != OrderStatus.EXPIRED:
                self.verifier.expire(order)
            raise BusinessLogicError(
                ErrorCodes.ORDER_EXPIRED, "Order has expired, create a new one", context={"orderId": order.order_id}
            )
        if order.is_terminal or order.status == OrderStatus.VERIFIED:
            raise BusinessLogicError(
                ErrorCodes.ORDER_NOT_ACTIONABLE, f"Order is already {order.status.value}",
                context={"orderId": order.order_id, "status": order.status.value},
            )

    def _answer_pre_checkout(self, query: Dict[str, Any]) -> Dict[str, Any]:
        order_id = query.get("invoice_payload")
        reason = None
        try:
            order = self.verifier.load(order_id)
            self._ensure_actionable(order)
            if int(query.get("total_amount") or 0) != order.computed_pay_in_amount:
                reason = "Invoice amount does not match the order."
        except BusinessLogicError as e:
            reason = e.message
        ok = reason is None
        if self.bot is None:
            raise ServiceError(ErrorCodes.SERVICE_UNAVAILABLE, "Bot API client not configured")
        try:
            self.bot.answer_pre_checkout_query(query.get("id"), ok, reason)
        except ExternalServiceError as e:
            raise ServiceError(external_error_code(e), "Could not answer pre-checkout query", original_error=e)
        logger.info(f"Pre-checkout for {order_id}: ok={ok} {reason or ''}")
        return {"ok": True, "handled": True, "orderId": order_id, "preCheckoutOk": ok}

    def _status(self, order: PaymentOrder) -> OrderStatusResponse:
        credited = None
        if order.status == OrderStatus.CREDITED:
            with self.session_factory() as db:
                record = db.execute(
                    select(CreditRecord).where(CreditRecord.order_id == order.order_id)
                ).scalar_one_or_none()
            credited = record.amount_credited if record else None
        return OrderStatusResponse(
            order_id=order.order_id,
            status=order.status,
            pay_in_currency=order.pay_in_currency,
            pay_in_amount=order.computed_pay_in_amount,
            requested_token_amount=order.requested_token_amount,
            expires_at=order.expires_at,
            proof=order.proof,
            failure_reason=order.failure_reason,
            credited_amount=credited,
        )
