"""
Reconciliation poller: re-drives verify -> credit for every open order.

Safe to run next to client-triggered verification, and safe to double-poll,
because both the verifier's state changes and the credit are idempotent.
"""
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, List

from sqlalchemy import exists, or_, select
from sqlalchemy.exc import SQLAlchemyError

from common.error_handling import BusinessLogicError
from common.schemas import OrderStatus
from common.tracing import purchase_tracer
from purchase_service.crediting import CreditingEngine
from purchase_service.models import CreditRecord, PaymentOrder, utcnow
from purchase_service.verifier import ChainVerifier

logger = logging.getLogger(__name__)

# VERIFIED is included so a credit interrupted before its claim is finished.
# Once a credit record exists the order belongs to the operator queue.
OPEN_STATUSES = (
    OrderStatus.AWAITING_PROOF, OrderStatus.VERIFYING, OrderStatus.PENDING, OrderStatus.VERIFIED,
)

class ReconciliationPoller:
    def __init__(self, session_factory, verifier: ChainVerifier, crediting: CreditingEngine, settings,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.verifier = verifier
        self.crediting = crediting
        self.settings = settings
        self.clock = clock

    def process_order(self, order_id: str) -> PaymentOrder:
        """One poller tick for a single order. Also what a manual "verify now" runs."""
        order = self.verifier.verify(order_id)
        if order.status == OrderStatus.VERIFIED:
            result = self.crediting.credit(order_id)
            if result.orphaned:
                logger.error(f"Order {order_id} verified but credit record {result.record_id} is orphaned")
            order = self.verifier.load(order_id)
        return order

    def open_orders(self, active_only: bool = False) -> List[str]:
        query = (
            select(PaymentOrder.order_id)
            .where(PaymentOrder.status.in_(OPEN_STATUSES))
            .where(or_(
                PaymentOrder.status != OrderStatus.VERIFIED,
                ~exists().where(CreditRecord.order_id == PaymentOrder.order_id),
            ))
            .order_by(PaymentOrder.expires_at)
            .limit(self.settings.poller_batch_size)
        )
        if active_only:
            since = self.clock() - timedelta(seconds=self.settings.poller_active_window_seconds)
            query = query.where(PaymentOrder.created_at >= since)
        with self.session_factory() as db:
            return list(db.execute(query).scalars().all())

    def tick(self, active_only: bool = False) -> int:
        """Process one batch of open orders. Returns how many reached a final state."""
        settled = 0
        with purchase_tracer.start_span("poller.sweep" if not active_only else "poller.tick") as span:
            order_ids = self.open_orders(active_only)
            for order_id in order_ids:
                try:
                    order = self.process_order(order_id)
                except (SQLAlchemyError, BusinessLogicError) as e:
                    logger.warning(f"Poller could not process {order_id}: {e}")
                    continue
                except Exception:
                    logger.exception(f"Poller failed on {order_id}")
                    continue
                if order.is_terminal:
                    settled += 1
            span.add_tag("orders.open", len(order_ids))
            span.add_tag("orders.settled", settled)
        if settled:
            logger.info(f"Poller tick settled {settled} order(s)")
        return settled

    def run(self, stop_event: threading.Event):
        """Fast ticks over recently created orders, plus a periodic sweep over everything open."""
        last_sweep = 0.0
        while not stop_event.is_set():
            sweep = time.monotonic() - last_sweep >= self.settings.poller_sweep_interval_seconds
            try:
                self.tick(active_only=not sweep)
            except Exception:
                logger.exception("Poller pass failed")
            if sweep:
                last_sweep = time.monotonic()
            stop_event.wait(self.settings.poller_interval_seconds)
