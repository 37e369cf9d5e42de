"""
HTTP clients for the external systems a purchase touches: Solana JSON-RPC,
the TonCenter indexer, the Telegram Bot API and the USD price feed.

Every call carries a timeout, goes through a named circuit breaker and a
short retry. Transport problems surface as ``ExternalServiceError`` so
callers never see a raw ``requests`` exception.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import requests

from common.circuit_breaker import (
    CircuitBreaker, CircuitBreakerException,
    solana_circuit_breaker, toncenter_circuit_breaker,
    telegram_circuit_breaker, price_feed_circuit_breaker,
)
from common.retry import (
    RetryConfig, retry_call,
    CHAIN_RETRY_CONFIG, PRICE_FEED_RETRY_CONFIG, BOT_API_RETRY_CONFIG,
)

logger = logging.getLogger(__name__)

class ExternalServiceError(Exception):
    """An external system could not give an answer right now."""

class ExternalTimeout(ExternalServiceError):
    pass

class InvalidProofError(Exception):
    """The external system rejected the proof itself (malformed signature etc.)."""

def _guarded(breaker: CircuitBreaker, retry_config: RetryConfig, func, *args, **kwargs):
    try:
        return breaker.call(retry_call, func, retry_config, *args, **kwargs)
    except CircuitBreakerException as e:
        raise ExternalServiceError(str(e)) from e
    except requests.exceptions.Timeout as e:
        raise ExternalTimeout(f"{breaker.name} timed out") from e
    except (requests.exceptions.RequestException, ValueError) as e:
        # ValueError covers undecodable JSON bodies
        raise ExternalServiceError(f"{breaker.name} request failed: {e}") from e

class SolanaRpcClient:
    # JSON-RPC "invalid params": the signature itself is malformed
    INVALID_PARAMS = -32602

    def __init__(self, rpc_url: str, timeout: float, session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.http.post(self.rpc_url, json=payload, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        data = _guarded(solana_circuit_breaker, CHAIN_RETRY_CONFIG, self._post, payload)
        if "error" in data:
            error = data["error"] or {}
            if error.get("code") == self.INVALID_PARAMS:
                raise InvalidProofError(error.get("message", "invalid params"))
            raise ExternalServiceError(f"solana rpc {method} error: {error.get('message')}")
        return data.get("result")

    def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        """Confirmed transaction by signature, or None when the node has not seen it."""
        return self._rpc("getTransaction", [
            signature,
            {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0, "commitment": "confirmed"},
        ])

    def get_latest_blockhash(self) -> str:
        result = self._rpc("getLatestBlockhash", [{"commitment": "confirmed"}])
        return result["value"]["blockhash"]

class TonCenterClient:
    def __init__(self, api_url: str, api_key: str, timeout: float, session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.http = session or requests.Session()

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if self.api_key:
            params = {**params, "api_key": self.api_key}
        resp = self.http.get(f"{self.api_url}/{path}", params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def get_transactions(self, address: str, limit: int = 50,
                         lt: Optional[str] = None, tx_hash: Optional[str] = None) -> List[Dict[str, Any]]:
        """Newest-first transactions of ``address``; ``lt``/``tx_hash`` page further back."""
        params: Dict[str, Any] = {"address": address, "limit": limit, "archival": "true"}
        if lt and tx_hash:
            params.update(lt=lt, hash=tx_hash)
        data = _guarded(toncenter_circuit_breaker, CHAIN_RETRY_CONFIG, self._get, "getTransactions", params)
        if not data.get("ok"):
            raise ExternalServiceError(f"toncenter error: {data.get('error')}")
        return data.get("result") or []

class TelegramBotClient:
    STARS_CURRENCY = "XTR"

    def __init__(self, api_url: str, bot_token: str, timeout: float, session: Optional[requests.Session] = None):
        self.api_url = api_url.rstrip("/")
        self.bot_token = bot_token
        self.timeout = timeout
        self.http = session or requests.Session()

    def _post(self, method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.http.post(f"{self.api_url}/bot{self.bot_token}/{method}", json=body, timeout=self.timeout)
        # Bot API reports most failures as 4xx with ok=false in the body
        if resp.status_code >= 500:
            resp.raise_for_status()
        return resp.json()

    def _call(self, method: str, body: Dict[str, Any]) -> Any:
        if not self.bot_token:
            raise ExternalServiceError("telegram bot token not configured")
        data = _guarded(telegram_circuit_breaker, BOT_API_RETRY_CONFIG, self._post, method, body)
        if not data.get("ok"):
            raise ExternalServiceError(f"telegram {method} failed: {data.get('description')}")
        return data.get("result")

    def create_invoice_link(self, title: str, description: str, payload: str, stars: int) -> str:
        return self._call("createInvoiceLink", {
            "title": title,
            "description": description,
            "payload": payload,
            "provider_token": "",  # empty for Stars
            "currency": self.STARS_CURRENCY,
            "prices": [{"label": title, "amount": stars}],
        })

    def answer_pre_checkout_query(self, query_id: str, ok: bool, error_message: Optional[str] = None) -> bool:
        body: Dict[str, Any] = {"pre_checkout_query_id": query_id, "ok": ok}
        if not ok:
            body["error_message"] = error_message or "This order can no longer be paid."
        return bool(self._call("answerPreCheckoutQuery", body))

class PriceFeedClient:
    """CoinGecko-compatible ``simple/price`` endpoint."""

    def __init__(self, feed_url: str, timeout: float, session: Optional[requests.Session] = None):
        self.feed_url = feed_url
        self.timeout = timeout
        self.http = session or requests.Session()

    def _get(self, params: Dict[str, str]) -> Dict[str, Any]:
        resp = self.http.get(self.feed_url, params=params, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def fetch_usd_prices(self, ids: List[str]) -> Dict[str, float]:
        params = {"ids": ",".join(ids), "vs_currencies": "usd"}
        data = _guarded(price_feed_circuit_breaker, PRICE_FEED_RETRY_CONFIG, self._get, params)
        prices = {}
        for feed_id in ids:
            try:
                value = float(data[feed_id]["usd"])
            except (KeyError, TypeError, ValueError):
                logger.warning(f"Price feed returned no usable usd price for {feed_id}: {json.dumps(data.get(feed_id))}")
                continue
            if value > 0:
                prices[feed_id] = value
        return prices
