#!/usr/bin/env python3
"""
Token Purchase Service
Sells the in-game token for SOL, USDC, TON or Telegram Stars and credits it exactly once
"""
import logging
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import jwt
from fastapi import Body, Depends, FastAPI, Header, Query, Request

from common.circuit_breaker import get_all_circuit_breakers
from common.documentation import PAYMENTS_DOCS, create_custom_openapi
from common.error_handling import BusinessLogicError, ErrorCodes, add_error_handlers
from common.redis_client import build_redis_client
from common.schemas import (
    AccountResponse, CreateOrderRequest, CreateOrderResponse, OrderStatusResponse, PayInCurrency,
    QuoteResponse, ReconciliationQueueResponse, SubmitProofRequest, SwapRequest, SwapResponse,
    VerifyNowRequest, WalletLinkRequest, WalletLinkResponse,
)
from common.security import OPERATOR_AUDIENCE, verify_token
from common.settings import settings
from common.tracing import purchase_tracer, tracing_middleware
from purchase_service import outbox_worker
from purchase_service.chain_clients import PriceFeedClient, SolanaRpcClient, TelegramBotClient, TonCenterClient
from purchase_service.db import SessionLocal, engine
from purchase_service.models import Base
from purchase_service.orders import PurchaseService
from purchase_service.pay_methods import build_pay_in_methods
from purchase_service.pricing import PriceOracle, QuoteCalculator

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def build_service(cfg, session_factory) -> PurchaseService:
    if not (cfg.treasury_sol_address and cfg.treasury_ton_address):
        logger.warning("Treasury addresses not fully configured, orders on those rails will fail")
    timeout = cfg.chain_timeout_seconds
    solana = SolanaRpcClient(cfg.solana_rpc_url, timeout)
    ton = TonCenterClient(cfg.toncenter_api_url, cfg.toncenter_api_key, timeout)
    bot = TelegramBotClient(cfg.telegram_api_url, cfg.telegram_bot_token, timeout)
    redis_client = build_redis_client(cfg.redis_url)
    oracle = PriceOracle(PriceFeedClient(cfg.price_feed_url, timeout), cfg, shared_cache=redis_client)
    return PurchaseService(
        cfg, session_factory,
        quotes=QuoteCalculator(oracle, cfg),
        methods=build_pay_in_methods(cfg, solana, ton, bot),
        bot=bot,
        rate_limiter=redis_client,
    )

_service: Optional[PurchaseService] = None
_service_lock = threading.Lock()
_stop = threading.Event()

def get_service() -> PurchaseService:
    global _service
    with _service_lock:
        if _service is None:
            _service = build_service(settings, SessionLocal)
        return _service

def _start_background_workers(service: PurchaseService):
    workers = [("price-oracle", service.quotes.oracle.run)]
    if settings.poller_enabled:
        workers.append(("reconciliation-poller", service.poller.run))
    if settings.kafka_bootstrap:
        workers.append(("outbox-worker", lambda stop: outbox_worker.run(SessionLocal, stop)))
    for name, target in workers:
        threading.Thread(target=target, args=(_stop,), name=name, daemon=True).start()
        logger.info(f"Started {name}")

@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    _stop.clear()
    _start_background_workers(get_service())
    logger.info("🚀 Purchase service started")
    yield
    _stop.set()

app = FastAPI(title="Token Purchase Service", version="1.0.0", description=PAYMENTS_DOCS, lifespan=lifespan)
add_error_handlers(app)
app.openapi = lambda: create_custom_openapi(app, "Token Purchase Service", "1.0.0", PAYMENTS_DOCS)

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, purchase_tracer)

def operator_auth(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Operator endpoints take a short-lived JWT with audience `operator`"""
    if not authorization or not authorization.startswith("Bearer "):
        raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, "missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        return verify_token(token, audience=OPERATOR_AUDIENCE)
    except jwt.PyJWTError as e:
        raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, f"invalid operator token: {e}")

# Payments

@app.get("/payments/quote", response_model=QuoteResponse, tags=["Payments"])
def quote(token_amount: int = Query(..., alias="tokenAmount"), currency: PayInCurrency = Query(...),
          service: PurchaseService = Depends(get_service)):
    return service.quote(token_amount, currency)

@app.post("/payments/orders", response_model=CreateOrderResponse, status_code=201, tags=["Payments"])
def create_order(request: CreateOrderRequest, service: PurchaseService = Depends(get_service)):
    return service.create_order(request)

@app.post("/payments/proof", response_model=OrderStatusResponse, tags=["Payments"])
def submit_proof(request: SubmitProofRequest, service: PurchaseService = Depends(get_service)):
    return service.submit_proof(request.order_id, request.proof)

@app.get("/payments/orders/{order_id}", response_model=OrderStatusResponse, tags=["Payments"])
def order_status(order_id: str, service: PurchaseService = Depends(get_service)):
    return service.order_status(order_id)

@app.post("/payments/verify", response_model=OrderStatusResponse, tags=["Payments"])
def verify_now(request: VerifyNowRequest, service: PurchaseService = Depends(get_service)):
    return service.verify_now(request.order_id)

@app.post("/payments/invoice/callback", tags=["Payments"])
def invoice_callback(
    update: Dict[str, Any] = Body(...),
    secret_token: Optional[str] = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
    service: PurchaseService = Depends(get_service),
):
    return service.handle_invoice_callback(update, secret_token)

# Ledger

@app.get("/accounts/{address}", response_model=AccountResponse, tags=["Ledger"])
def account(address: str, service: PurchaseService = Depends(get_service)):
    return service.account(address)

@app.get("/swap/rates", tags=["Ledger"])
def swap_rates(service: PurchaseService = Depends(get_service)):
    return service.swaps.rates()

@app.post("/swap", response_model=SwapResponse, tags=["Ledger"])
def swap(request: SwapRequest, service: PurchaseService = Depends(get_service)):
    return service.swaps.swap(request)

def _link_response(link) -> WalletLinkResponse:
    return WalletLinkResponse(
        telegram_id=link.telegram_id,
        telegram_username=link.telegram_username,
        wallet_address=link.wallet_address,
        linked_at=link.linked_at,
    )

@app.post("/wallet-links", response_model=WalletLinkResponse, tags=["Ledger"])
def link_wallet(request: WalletLinkRequest, service: PurchaseService = Depends(get_service)):
    link = service.wallet_links.link(request.telegram_id, request.wallet_address, request.telegram_username)
    return _link_response(link)

@app.get("/wallet-links/{telegram_id}", response_model=WalletLinkResponse, tags=["Ledger"])
def get_wallet_link(telegram_id: int, service: PurchaseService = Depends(get_service)):
    return _link_response(service.wallet_links.get(telegram_id))

@app.delete("/wallet-links/{telegram_id}", tags=["Ledger"])
def unlink_wallet(telegram_id: int, service: PurchaseService = Depends(get_service)):
    return {"ok": True, "removed": service.wallet_links.unlink(telegram_id)}

# Reconciliation

@app.get("/admin/reconciliation", response_model=ReconciliationQueueResponse, tags=["Reconciliation"],
         dependencies=[Depends(operator_auth)])
def reconciliation_queue(service: PurchaseService = Depends(get_service)):
    return service.reconciliation_queue()

@app.post("/admin/reconciliation/{record_id}/replay", tags=["Reconciliation"])
def replay_orphan(record_id: int, claims: Dict[str, Any] = Depends(operator_auth),
                  service: PurchaseService = Depends(get_service)):
    logger.warning(f"Operator {claims.get('sub')} replaying credit record {record_id}")
    return service.replay_orphan(record_id)

@app.get("/health", tags=["Health"])
def health(service: PurchaseService = Depends(get_service)):
    breakers = get_all_circuit_breakers()
    redis_ok = service.rate_limiter.ping() if service.rate_limiter else None
    return {
        "ok": all(b["state"] != "OPEN" for b in breakers.values()),
        "service": "purchase",
        "redis": redis_ok,
        "circuitBreakers": breakers,
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8010)
