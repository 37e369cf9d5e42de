"""
Internal swap between the purchased token and the secondary in-game balance.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Dict

from sqlalchemy import func, select, update

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import LedgerAsset, PurchaseEvent, SwapRequest, SwapResponse
from purchase_service.models import LedgerAccount, SwapRecord, utcnow
from purchase_service.outbox_worker import enqueue_event

logger = logging.getLogger(__name__)

BALANCE_COLUMNS = {
    LedgerAsset.CHESS: LedgerAccount.token_balance,
    LedgerAsset.GAME: LedgerAccount.secondary_balance,
}

class SwapService:
    def __init__(self, session_factory, settings, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.settings = settings
        self.clock = clock

    def rates(self) -> Dict:
        return {
            "chessToGame": self.settings.chess_to_game_rate,
            "gameToChess": str(Decimal(1) / Decimal(self.settings.chess_to_game_rate)),
            "feePercent": self.settings.swap_fee_percent,
            "minSwapGame": self.settings.min_swap_game,
            "minSwapChess": self.settings.min_swap_chess,
            "maxDailySwapGame": self.settings.max_daily_swap_game,
        }

    def convert(self, from_token: LedgerAsset, amount: int):
        """(net amount received, fee, GAME-denominated volume). Net rounds down."""
        rate = Decimal(self.settings.chess_to_game_rate)
        if from_token == LedgerAsset.CHESS:
            gross = Decimal(amount) * rate
            volume = int(gross)
        else:
            gross = Decimal(amount) / rate
            volume = amount
        fee = gross * Decimal(str(self.settings.swap_fee_percent)) / Decimal(100)
        net = int((gross - fee).to_integral_value(rounding=ROUND_FLOOR))
        return net, format(fee.normalize(), "f"), volume

    def _validate(self, request: SwapRequest):
        minimum = self.settings.min_swap_chess if request.from_token == LedgerAsset.CHESS else self.settings.min_swap_game
        if request.amount < minimum:
            raise BusinessLogicError(
                ErrorCodes.VALIDATION_ERROR,
                f"Minimum swap is {minimum} {request.from_token.value}",
                field="amount", context={"minimum": minimum},
            )

    def swap(self, request: SwapRequest) -> SwapResponse:
        self._validate(request)
        from_token = request.from_token
        to_token = LedgerAsset.GAME if from_token == LedgerAsset.CHESS else LedgerAsset.CHESS
        net, fee, volume = self.convert(from_token, request.amount)
        if net <= 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "Amount too small to swap after fees", field="amount")

        now = self.clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self.session_factory() as db:
            swapped_today = db.execute(
                select(func.coalesce(func.sum(SwapRecord.game_volume), 0))
                .where(SwapRecord.address == request.address, SwapRecord.created_at >= day_start)
            ).scalar_one()
            if swapped_today + volume > self.settings.max_daily_swap_game:
                raise BusinessLogicError(
                    ErrorCodes.SWAP_LIMIT_EXCEEDED,
                    f"Daily swap limit of {self.settings.max_daily_swap_game} {LedgerAsset.GAME.value} reached",
                    context={"swappedToday": swapped_today, "limit": self.settings.max_daily_swap_game},
                )

            source = BALANCE_COLUMNS[from_token]
            debit = {source.key: source - request.amount, "updated_at": now}
            if from_token == LedgerAsset.CHESS:
                debit["total_spent"] = LedgerAccount.total_spent + request.amount
            # Conditional debit: the balance never goes below zero
            res = db.execute(
                update(LedgerAccount)
                .where(LedgerAccount.address == request.address, source >= request.amount)
                .values(**debit)
            )
            if res.rowcount != 1:
                db.rollback()
                raise BusinessLogicError(
                    ErrorCodes.INSUFFICIENT_FUNDS,
                    f"Insufficient {from_token.value} balance",
                    field="amount",
                )
            target = BALANCE_COLUMNS[to_token]
            db.execute(
                update(LedgerAccount)
                .where(LedgerAccount.address == request.address)
                .values({target.key: target + net})
            )

            swap_id = f"swap_{uuid.uuid4().hex}"
            db.add(SwapRecord(
                swap_id=swap_id, address=request.address,
                from_token=from_token.value, to_token=to_token.value,
                from_amount=request.amount, to_amount=net, fee=fee,
                game_volume=volume, created_at=now,
            ))
            enqueue_event(db, PurchaseEvent(
                type="TokensSwapped", user_address=request.address, amount=request.amount,
                currency=from_token.value, reason=f"{request.amount} {from_token.value} -> {net} {to_token.value}",
            ))
            db.commit()
            account = db.get(LedgerAccount, request.address)
            db.refresh(account)

        logger.info(f"Swap {swap_id}: {request.address} {request.amount} {from_token.value} -> {net} {to_token.value}")
        return SwapResponse(
            swap_id=swap_id, from_token=from_token, to_token=to_token,
            from_amount=request.amount, to_amount=net, fee=fee,
            token_balance=account.token_balance, secondary_balance=account.secondary_balance,
        )
