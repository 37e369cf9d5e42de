"""
Chain verifier: turns a pay-in method's answer into an order state change.

State changes are compare-and-set updates on ``status`` so a client
"verify now" and the poller racing on one order cannot both move it.
Already VERIFIED or terminal orders are returned untouched, without
querying the chain again.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import OrderStatus, PayInCurrency, PurchaseEvent, VerificationStatus
from purchase_service.chain_clients import ExternalServiceError, InvalidProofError
from purchase_service.models import PaymentOrder, InvalidTransition, can_transition, utcnow
from purchase_service.outbox_worker import enqueue_event
from purchase_service.pay_methods import PayInMethod, VerificationResult

logger = logging.getLogger(__name__)

PROOF_CONSUMED = "proof already consumed"

class ChainVerifier:
    def __init__(self, session_factory, methods: Dict[PayInCurrency, PayInMethod],
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.methods = methods
        self.clock = clock

    def load(self, order_id: str) -> PaymentOrder:
        with self.session_factory() as db:
            order = db.execute(select(PaymentOrder).where(PaymentOrder.order_id == order_id)).scalar_one_or_none()
        if order is None:
            raise BusinessLogicError(ErrorCodes.ORDER_NOT_FOUND, f"Order {order_id} not found", field="orderId")
        return order

    def verify(self, order_id: str) -> PaymentOrder:
        """One verification attempt. Transient chain errors leave the order open."""
        order = self.load(order_id)
        if order.is_terminal or order.status == OrderStatus.VERIFIED:
            return order
        if self.clock() >= order.expires_at:
            return self.expire(order)

        method = self.methods[order.pay_in_currency]
        try:
            result = method.verify(order)
        except InvalidProofError as e:
            result = VerificationResult.mismatch(f"invalid transaction signature: {e}")
        except ExternalServiceError as e:
            logger.info(f"Verification of {order_id} deferred: {e}")
            result = VerificationResult.pending(str(e))
        return self.apply_result(order_id, result)

    def apply_callback(self, order_id: str, payment: Dict) -> PaymentOrder:
        """Settle an invoice order from an authenticated platform payment callback."""
        order = self.load(order_id)
        method = self.methods[order.pay_in_currency]
        if not hasattr(method, "verify_callback"):
            raise BusinessLogicError(
                ErrorCodes.INVALID_PROOF, f"{order.pay_in_currency.value} orders are not settled by callback"
            )
        if order.is_terminal or order.status == OrderStatus.VERIFIED:
            return order
        return self.apply_result(order_id, method.verify_callback(order, payment))

    def apply_result(self, order_id: str, result: VerificationResult) -> PaymentOrder:
        order = self.load(order_id)
        if order.is_terminal or order.status == OrderStatus.VERIFIED:
            return order
        # Checked again here: a proof landing after expiry never verifies
        if self.clock() >= order.expires_at:
            return self.expire(order)

        if result.status == VerificationStatus.VERIFIED:
            return self._mark_verified(order, result)
        if result.status == VerificationStatus.MISMATCH:
            return self.fail(order, result.reason or "payment does not match order", result.observed_amount)

        # NOT_FOUND and PENDING keep the order open for the poller
        target = OrderStatus.PENDING if order.proof else OrderStatus.AWAITING_PROOF
        if order.status != target and can_transition(order.status, target):
            self._advance(order, target)
        return self.load(order_id)

    def expire(self, order: PaymentOrder) -> PaymentOrder:
        event = PurchaseEvent(type="OrderExpired", order_id=order.order_id, user_address=order.payer_address)
        if self._advance(order, OrderStatus.EXPIRED, event=event):
            logger.info(f"Order {order.order_id} expired")
        return self.load(order.order_id)

    def fail(self, order: PaymentOrder, reason: str, observed_amount: Optional[int] = None) -> PaymentOrder:
        event = PurchaseEvent(type="OrderFailed", order_id=order.order_id,
                              user_address=order.payer_address, reason=reason)
        if self._advance(order, OrderStatus.FAILED, event=event,
                         failure_reason=reason[:255], observed_amount=observed_amount):
            logger.warning(f"Order {order.order_id} failed: {reason}")
        return self.load(order.order_id)

    def _mark_verified(self, order: PaymentOrder, result: VerificationResult) -> PaymentOrder:
        values = {
            "observed_amount": result.observed_amount,
            "verified_at": result.observed_at or self.clock(),
        }
        # Memo and invoice rails learn their proof here, account rails already carry it
        if result.proof and result.proof != order.proof:
            values["proof"] = result.proof
        event = PurchaseEvent(
            type="OrderVerified", order_id=order.order_id, user_address=order.payer_address,
            amount=result.observed_amount, currency=order.pay_in_currency.value,
        )
        try:
            if self._advance(order, OrderStatus.VERIFIED, event=event, **values):
                logger.info(f"Order {order.order_id} verified, observed {result.observed_amount}")
        except IntegrityError:
            logger.warning(f"Order {order.order_id}: proof {result.proof} already bound to another order")
            return self.fail(order, PROOF_CONSUMED)
        return self.load(order.order_id)

    def _advance(self, order: PaymentOrder, target: OrderStatus,
                 event: Optional[PurchaseEvent] = None, **values) -> bool:
        """Compare-and-set ``order`` from its loaded status to ``target``. False if it moved meanwhile."""
        if not can_transition(order.status, target):
            raise InvalidTransition(order.order_id, order.status, target)
        with self.session_factory() as db:
            res = db.execute(
                update(PaymentOrder)
                .where(PaymentOrder.order_id == order.order_id, PaymentOrder.status == order.status)
                .values(status=target, updated_at=self.clock(), **values)
            )
            if res.rowcount != 1:
                db.rollback()
                return False
            if event is not None:
                enqueue_event(db, event)
            db.commit()
        return True
