"""
In-process stand-ins for the chain, price feed and bot clients, plus a
temp-file SQLite database, shared by the purchase service tests.
"""
import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import OperationalError

from common.settings import Settings
from purchase_service.chain_clients import ExternalServiceError, ExternalTimeout, InvalidProofError
from purchase_service.crediting import CreditingEngine
from purchase_service.db import build_engine, build_session_factory
from purchase_service.models import Base
from purchase_service.orders import PurchaseService
from purchase_service.pay_methods import build_pay_in_methods
from purchase_service.pricing import PriceOracle, QuoteCalculator

# Well-known valid base58 public keys
TREASURY = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
PAYER = "Vote111111111111111111111111111111111111111"
OTHER_PAYER = "SysvarRent111111111111111111111111111111111"
SYSTEM_PROGRAM = "11111111111111111111111111111111"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

TON_TREASURY = "EQ" + "T" * 46
TON_PAYER = "UQ" + "P" * 46

WEBHOOK_SECRET = "hook-secret"

def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        redis_url="",
        treasury_sol_address=TREASURY,
        treasury_ton_address=TON_TREASURY,
        usdc_mint_address=USDC_MINT,
        telegram_bot_token="123:abc",
        telegram_webhook_secret=WEBHOOK_SECRET,
        token_price_usd=0.01,
        min_purchase_tokens=100,
        max_purchase_tokens=10_000_000,
        price_cache_ttl_seconds=60,
        price_max_staleness_seconds=3600,
        reject_stale_quotes=False,
        fallback_sol_usd=150.0,
        fallback_ton_usd=5.0,
        stars_usd_rate=0.02,
        signed_order_ttl_seconds=600,
        memo_order_ttl_seconds=86400,
        invoice_order_ttl_seconds=3600,
        amount_tolerance_bps=50,
        poller_enabled=False,
        poller_batch_size=100,
        poller_active_window_seconds=1800,
    )
    values.update(overrides)
    return Settings(**values)

class TempDatabase:
    """A file-backed SQLite database so several threads can share it."""

    def __init__(self):
        self.dir = tempfile.mkdtemp(prefix="purchase-test-")
        self.engine = build_engine(f"sqlite:///{os.path.join(self.dir, 'purchases.db')}")
        Base.metadata.create_all(bind=self.engine)
        self.session_factory = build_session_factory(self.engine)

    def close(self):
        self.engine.dispose()
        shutil.rmtree(self.dir, ignore_errors=True)

class FakeClock:
    """Naive-UTC wall clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.replace(tzinfo=timezone.utc).timestamp()

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)

class FakePriceFeed:
    def __init__(self, prices=None):
        self.prices = {"solana": 150.0, "the-open-network": 5.0} if prices is None else prices
        self.fail = False
        self.calls = 0

    def fetch_usd_prices(self, ids):
        self.calls += 1
        if self.fail:
            raise ExternalServiceError("price feed down")
        return {i: self.prices[i] for i in ids if i in self.prices}

class FakeSolanaRpc:
    def __init__(self):
        self.transactions = {}
        self.unavailable = False
        self.invalid = set()
        self.blockhash = SYSTEM_PROGRAM
        self.lookups = 0

    def get_transaction(self, signature):
        self.lookups += 1
        if self.unavailable:
            raise ExternalServiceError("solana_rpc timed out")
        if signature in self.invalid:
            raise InvalidProofError("Invalid param: WrongSize")
        return self.transactions.get(signature)

    def get_latest_blockhash(self):
        if self.unavailable:
            raise ExternalServiceError("solana_rpc timed out")
        return self.blockhash

def sol_transfer_tx(lamports, payer=PAYER, treasury=TREASURY, err=None, block_time=1714564800):
    """jsonParsed getTransaction result for a plain system transfer."""
    fee = 5000
    return {
        "blockTime": block_time,
        "slot": 1,
        "meta": {
            "err": err,
            "fee": fee,
            "preBalances": [5_000_000_000, 1_000_000_000, 1],
            "postBalances": [5_000_000_000 - lamports - fee, 1_000_000_000 + lamports, 1],
            "preTokenBalances": [],
            "postTokenBalances": [],
        },
        "transaction": {
            "signatures": ["sig"],
            "message": {
                "accountKeys": [
                    {"pubkey": payer, "signer": True, "writable": True},
                    {"pubkey": treasury, "signer": False, "writable": True},
                    {"pubkey": SYSTEM_PROGRAM, "signer": False, "writable": False},
                ],
            },
        },
    }

def usdc_transfer_tx(amount, treasury=TREASURY, mint=USDC_MINT, pre=0):
    def balance(index, owner, value):
        return {"accountIndex": index, "mint": mint, "owner": owner,
                "uiTokenAmount": {"amount": str(value), "decimals": 6}}

    return {
        "blockTime": 1714564800,
        "meta": {
            "err": None,
            "preBalances": [1, 1, 1, 1],
            "postBalances": [1, 1, 1, 1],
            "preTokenBalances": [balance(1, PAYER, 50_000_000), balance(2, treasury, pre)],
            "postTokenBalances": [balance(1, PAYER, 50_000_000 - amount), balance(2, treasury, pre + amount)],
        },
        "transaction": {"message": {"accountKeys": [
            {"pubkey": PAYER}, {"pubkey": "PayerTokenAccount"}, {"pubkey": "TreasuryTokenAccount"},
            {"pubkey": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"},
        ]}},
    }

class FakeTonCenter:
    def __init__(self):
        self.transactions = []  # newest first
        self.unavailable = False
        self.pages_served = 0

    def add(self, memo, nanotons, utime, lt=None, tx_hash=None):
        lt = lt or str(1000 + len(self.transactions))
        self.transactions.insert(0, {
            "utime": utime,
            "transaction_id": {"lt": lt, "hash": tx_hash or f"hash{lt}"},
            "in_msg": {"source": TON_PAYER, "destination": TON_TREASURY, "value": str(nanotons), "message": memo},
            "out_msgs": [],
        })

    def get_transactions(self, address, limit=50, lt=None, tx_hash=None):
        if self.unavailable:
            raise ExternalServiceError("toncenter request failed")
        self.pages_served += 1
        start = 0
        if lt:
            ids = [t["transaction_id"]["lt"] for t in self.transactions]
            start = ids.index(lt) + 1
        return self.transactions[start:start + limit]

class FakeTelegramBot:
    STARS_CURRENCY = "XTR"

    def __init__(self):
        self.invoices = []
        self.pre_checkout_answers = []
        self.fail = False
        self.timeout = False

    def create_invoice_link(self, title, description, payload, stars):
        if self.timeout:
            raise ExternalTimeout("telegram timed out")
        if self.fail:
            raise ExternalServiceError("telegram createInvoiceLink failed")
        self.invoices.append({"title": title, "payload": payload, "stars": stars})
        return f"https://t.me/$invoice-{payload}"

    def answer_pre_checkout_query(self, query_id, ok, error_message=None):
        if self.timeout:
            raise ExternalTimeout("telegram timed out")
        self.pre_checkout_answers.append((query_id, ok, error_message))
        return True

class FlakyLedgerEngine(CreditingEngine):
    """Crashes between claiming a credit and applying it to the balance."""

    def _increment_balance(self, db, address, amount):
        raise OperationalError("UPDATE ledger_accounts", {}, Exception("disk I/O error"))

class FakeRateLimiter:
    def __init__(self, max_allowed):
        self.max_allowed = max_allowed
        self.counts = {}

    def check_rate_limit(self, subject, endpoint, max_requests, window_seconds):
        key = (subject, endpoint)
        self.counts[key] = self.counts.get(key, 0) + 1
        allowed = self.counts[key] <= self.max_allowed
        return {"allowed": allowed, "count": self.counts[key], "retry_after": 0 if allowed else window_seconds}

    def ping(self):
        return True

class ServiceHarness:
    """A fully wired PurchaseService over fakes and a temp database."""

    def __init__(self, **setting_overrides):
        self.db = TempDatabase()
        self.settings = make_settings(**setting_overrides)
        self.clock = FakeClock()
        self.feed = FakePriceFeed()
        self.solana = FakeSolanaRpc()
        self.ton = FakeTonCenter()
        self.bot = FakeTelegramBot()
        self.rate_limiter = None
        self.oracle = PriceOracle(self.feed, self.settings, clock=self.clock.epoch, refresh_in_background=False)
        self.methods = build_pay_in_methods(self.settings, self.solana, self.ton, self.bot)
        self.service = self.build_service()

    def build_service(self, rate_limiter=None) -> PurchaseService:
        self.rate_limiter = rate_limiter
        return PurchaseService(
            self.settings, self.db.session_factory,
            quotes=QuoteCalculator(self.oracle, self.settings, clock=self.clock),
            methods=self.methods,
            bot=self.bot,
            rate_limiter=rate_limiter,
            clock=self.clock,
        )

    @property
    def session_factory(self):
        return self.db.session_factory

    def close(self):
        self.db.close()

def create_order(harness, currency, tokens=1000, payer=PAYER, telegram_user_id=None):
    from common.schemas import CreateOrderRequest
    return harness.service.create_order(CreateOrderRequest(
        payer=payer, token_amount=tokens, currency=currency, telegram_user_id=telegram_user_id,
    ))

def attach_proof(harness, order_id, proof):
    """Bind a proof the way submit_proof does, without running verification."""
    from sqlalchemy import update
    from common.schemas import OrderStatus
    from purchase_service.models import PaymentOrder
    with harness.session_factory() as db:
        db.execute(
            update(PaymentOrder).where(PaymentOrder.order_id == order_id)
            .values(proof=proof, status=OrderStatus.VERIFYING)
        )
        db.commit()

def verified_sol_order(harness, signature, tokens=1000, payer=PAYER):
    """A CHAIN_A_NATIVE order paid in full and VERIFIED, not yet credited."""
    from common.schemas import PayInCurrency
    order = create_order(harness, PayInCurrency.CHAIN_A_NATIVE, tokens=tokens, payer=payer)
    harness.solana.transactions[signature] = sol_transfer_tx(order.pay_in_amount, payer=payer)
    attach_proof(harness, order.order_id, signature)
    harness.service.verifier.verify(order.order_id)
    return order.order_id
