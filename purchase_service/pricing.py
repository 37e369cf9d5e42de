"""
Price oracle and quote calculator.

The oracle never raises: a failed fetch serves the last cached rate (or a
conservative fallback) and reports how old it is. Reads never wait on a
refresh; a single refresher at a time updates the cache.
"""
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_CEILING
from typing import Callable, Dict, Optional, Tuple

from common.error_handling import BusinessLogicError, ErrorCodes
from common.schemas import PayInCurrency
from purchase_service.chain_clients import ExternalServiceError, PriceFeedClient
from purchase_service.models import utcnow

logger = logging.getLogger(__name__)

FEED_IDS = {
    PayInCurrency.CHAIN_A_NATIVE: "solana",
    PayInCurrency.CHAIN_B_NATIVE: "the-open-network",
}

# Smallest-unit exponent of each pay-in currency
UNIT_DECIMALS = {
    PayInCurrency.CHAIN_A_NATIVE: 9,   # lamports
    PayInCurrency.CHAIN_A_STABLE: 6,   # micro-USDC
    PayInCurrency.CHAIN_B_NATIVE: 9,   # nanotons
    PayInCurrency.STARRED_INVOICE: 0,  # whole stars
}

# Marks a rate that never came from the feed
NEVER_FETCHED = -1

# Amounts are stored in signed 64-bit columns
MAX_STORED_AMOUNT = 2 ** 63 - 1

@dataclass(frozen=True)
class RateQuote:
    currency: PayInCurrency
    rate: float
    age_seconds: int
    stale: bool
    source: str  # feed | fallback | fixed
    fetched_at: Optional[float] = None

@dataclass(frozen=True)
class Quote:
    token_amount: int
    currency: PayInCurrency
    usd_amount: Decimal
    pay_in_amount: int
    rate: RateQuote
    expires_at: datetime

    @property
    def rate_used(self) -> float:
        return self.rate.rate

def to_display(amount: int, currency: PayInCurrency) -> str:
    decimals = UNIT_DECIMALS[currency]
    return f"{Decimal(amount).scaleb(-decimals):.{decimals}f}"

class PriceOracle:
    def __init__(self, feed: PriceFeedClient, settings, shared_cache=None,
                 clock: Callable[[], float] = time.time, refresh_in_background: bool = True):
        self.feed = feed
        self.settings = settings
        self.shared_cache = shared_cache
        self.clock = clock
        self.refresh_in_background = refresh_in_background
        self._cache: Dict[PayInCurrency, Tuple[float, float]] = {}
        self._refresh_lock = threading.Lock()
        self.fallbacks = {
            PayInCurrency.CHAIN_A_NATIVE: settings.fallback_sol_usd,
            PayInCurrency.CHAIN_B_NATIVE: settings.fallback_ton_usd,
        }

    def get_rate(self, currency: PayInCurrency) -> RateQuote:
        """USD price of one whole unit of ``currency``."""
        if currency == PayInCurrency.STARRED_INVOICE:
            return RateQuote(currency, self.settings.stars_usd_rate, 0, False, "fixed")
        if currency == PayInCurrency.CHAIN_A_STABLE:
            return RateQuote(currency, 1.0, 0, False, "fixed")

        entry = self._cache.get(currency) or self._from_shared_cache(currency)
        if entry is None:
            # Cold start: fall back until the scheduled refresh lands
            self._schedule_refresh()
            entry = self._cache.get(currency)
        elif self.clock() - entry[1] > self.settings.price_cache_ttl_seconds:
            self._schedule_refresh()

        if entry is None:
            logger.warning(f"No price for {currency.value}, serving fallback rate")
            return RateQuote(currency, self.fallbacks[currency], NEVER_FETCHED, True, "fallback")

        rate, fetched_at = entry
        age = max(0, int(self.clock() - fetched_at))
        return RateQuote(currency, rate, age, age > self.settings.price_max_staleness_seconds, "feed", fetched_at)

    def refresh(self) -> bool:
        """Fetch every feed rate once. Returns False if another refresh is running or the fetch failed."""
        if not self._refresh_lock.acquire(blocking=False):
            return False
        try:
            prices = self.feed.fetch_usd_prices(list(FEED_IDS.values()))
        except ExternalServiceError as e:
            logger.warning(f"Price refresh failed, serving cached rates: {e}")
            return False
        else:
            now = self.clock()
            for currency, feed_id in FEED_IDS.items():
                if feed_id in prices:
                    self._cache[currency] = (prices[feed_id], now)
                    if self.shared_cache:
                        self.shared_cache.cache_price(currency.value, prices[feed_id], now,
                                                      self.settings.price_max_staleness_seconds)
            return True
        finally:
            self._refresh_lock.release()

    def run(self, stop_event: threading.Event):
        """Periodic writer; readers only ever see whole (rate, fetched_at) pairs."""
        while not stop_event.is_set():
            self.refresh()
            stop_event.wait(self.settings.price_cache_ttl_seconds)

    def _schedule_refresh(self):
        if self._refresh_lock.locked():
            return
        if self.refresh_in_background:
            threading.Thread(target=self.refresh, name="price-refresh", daemon=True).start()
        else:
            self.refresh()

    def _from_shared_cache(self, currency: PayInCurrency) -> Optional[Tuple[float, float]]:
        if not self.shared_cache:
            return None
        cached = self.shared_cache.get_cached_price(currency.value)
        if not cached:
            return None
        entry = (float(cached["rate"]), float(cached["fetched_at"]))
        self._cache[currency] = entry
        return entry

class QuoteCalculator:
    def __init__(self, oracle: PriceOracle, settings, clock: Callable[[], datetime] = utcnow):
        self.oracle = oracle
        self.settings = settings
        self.clock = clock

    def quote(self, token_amount: int, currency: PayInCurrency) -> Quote:
        if token_amount < self.settings.min_purchase_tokens:
            raise BusinessLogicError(
                ErrorCodes.BELOW_MINIMUM_PURCHASE,
                f"Minimum purchase is {self.settings.min_purchase_tokens} {self.settings.token_symbol}",
                field="tokenAmount",
                context={"minimum": self.settings.min_purchase_tokens},
            )
        if token_amount > self.settings.max_purchase_tokens:
            raise self._above_maximum()

        rate = self.oracle.get_rate(currency)
        if rate.stale and self.settings.reject_stale_quotes:
            raise BusinessLogicError(
                ErrorCodes.PRICE_UNAVAILABLE,
                f"No fresh {currency.value} price available, try again shortly",
                context={"ageSeconds": rate.age_seconds, "source": rate.source},
            )

        usd = Decimal(token_amount) * Decimal(str(self.settings.token_price_usd))
        unit = Decimal(10) ** UNIT_DECIMALS[currency]
        if currency == PayInCurrency.CHAIN_A_STABLE:
            whole_units = usd
        else:
            whole_units = usd / Decimal(str(rate.rate))
        # Round up so rounding can never under-charge
        pay_in = int((whole_units * unit).to_integral_value(rounding=ROUND_CEILING))
        if pay_in > MAX_STORED_AMOUNT:
            raise self._above_maximum()

        return Quote(
            token_amount=token_amount,
            currency=currency,
            usd_amount=usd,
            pay_in_amount=max(pay_in, 1),
            rate=rate,
            expires_at=self.clock() + timedelta(seconds=self.settings.price_cache_ttl_seconds),
        )

    def _above_maximum(self) -> BusinessLogicError:
        return BusinessLogicError(
            ErrorCodes.ABOVE_MAXIMUM_PURCHASE,
            f"Maximum purchase is {self.settings.max_purchase_tokens} {self.settings.token_symbol}",
            field="tokenAmount",
            context={"maximum": self.settings.max_purchase_tokens},
        )
