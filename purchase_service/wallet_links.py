import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, ErrorCodes
from purchase_service.models import WalletLink, utcnow

logger = logging.getLogger(__name__)

class WalletLinkStore:
    """Persisted messaging-user -> wallet address lookup. Survives restarts."""

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def link(self, telegram_id: int, wallet_address: str, telegram_username: Optional[str] = None) -> WalletLink:
        """Create or replace the link for ``telegram_id``."""
        now = self.clock()
        with self.session_factory() as db:
            link = db.get(WalletLink, telegram_id)
            if link is None:
                link = WalletLink(telegram_id=telegram_id, linked_at=now)
                db.add(link)
            link.wallet_address = wallet_address
            link.telegram_username = telegram_username
            link.updated_at = now
            try:
                db.commit()
            except IntegrityError:
                # Two first-time links for the same user; the other one won
                db.rollback()
                link = db.get(WalletLink, telegram_id)
                link.wallet_address = wallet_address
                link.telegram_username = telegram_username
                link.updated_at = now
                db.commit()
        logger.info(f"Linked telegram user {telegram_id} to {wallet_address}")
        return link

    def get(self, telegram_id: int) -> WalletLink:
        with self.session_factory() as db:
            link = db.get(WalletLink, telegram_id)
        if link is None:
            raise BusinessLogicError(
                ErrorCodes.ACCOUNT_NOT_FOUND, f"No wallet linked for telegram user {telegram_id}",
                field="telegramId",
            )
        return link

    def unlink(self, telegram_id: int) -> bool:
        with self.session_factory() as db:
            link = db.get(WalletLink, telegram_id)
            if link is None:
                return False
            db.delete(link)
            db.commit()
        return True

    def resolve_address(self, telegram_id: int) -> str:
        """Ledger address for a messaging user: the linked wallet, else a synthetic ``tg_<id>`` account."""
        with self.session_factory() as db:
            link = db.get(WalletLink, telegram_id)
        return link.wallet_address if link else f"tg_{telegram_id}"
