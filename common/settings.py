import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./purchases.db")
    redis_url: str = os.getenv("REDIS_URL", "")
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "token-purchase")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    operator_jwt_ttl_seconds: int = int(os.getenv("OPERATOR_JWT_TTL_SECONDS", "900"))

    # Internal token
    token_symbol: str = os.getenv("TOKEN_SYMBOL", "CHESS")
    secondary_symbol: str = os.getenv("SECONDARY_SYMBOL", "GAME")
    token_price_usd: float = float(os.getenv("TOKEN_PRICE_USD", "0.01"))
    min_purchase_tokens: int = int(os.getenv("MIN_PURCHASE_TOKENS", "100"))
    max_purchase_tokens: int = int(os.getenv("MAX_PURCHASE_TOKENS", "10000000"))

    # Treasuries
    treasury_sol_address: str = os.getenv("TREASURY_SOL_ADDRESS", "")
    treasury_ton_address: str = os.getenv("TREASURY_TON_ADDRESS", "")
    usdc_mint_address: str = os.getenv("USDC_MINT_ADDRESS", "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v")

    # External endpoints
    solana_rpc_url: str = os.getenv("SOLANA_RPC_URL", "https://api.devnet.solana.com")
    toncenter_api_url: str = os.getenv("TONCENTER_API_URL", "https://testnet.toncenter.com/api/v2")
    toncenter_api_key: str = os.getenv("TONCENTER_API_KEY", "")
    telegram_api_url: str = os.getenv("TELEGRAM_API_URL", "https://api.telegram.org")
    telegram_bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    telegram_webhook_secret: str = os.getenv("TELEGRAM_WEBHOOK_SECRET", "")
    price_feed_url: str = os.getenv("PRICE_FEED_URL", "https://api.coingecko.com/api/v3/simple/price")
    chain_timeout_seconds: float = float(os.getenv("CHAIN_TIMEOUT_SECONDS", "5"))

    # Price oracle
    price_cache_ttl_seconds: int = int(os.getenv("PRICE_CACHE_TTL_SECONDS", "60"))
    price_max_staleness_seconds: int = int(os.getenv("PRICE_MAX_STALENESS_SECONDS", "3600"))
    reject_stale_quotes: bool = os.getenv("REJECT_STALE_QUOTES", "false").lower() == "true"
    fallback_sol_usd: float = float(os.getenv("FALLBACK_SOL_USD", "150"))
    fallback_ton_usd: float = float(os.getenv("FALLBACK_TON_USD", "5"))
    stars_usd_rate: float = float(os.getenv("STARS_USD_RATE", "0.02"))

    # Orders
    signed_order_ttl_seconds: int = int(os.getenv("SIGNED_ORDER_TTL_SECONDS", "600"))
    memo_order_ttl_seconds: int = int(os.getenv("MEMO_ORDER_TTL_SECONDS", "86400"))
    invoice_order_ttl_seconds: int = int(os.getenv("INVOICE_ORDER_TTL_SECONDS", "3600"))
    amount_tolerance_bps: int = int(os.getenv("AMOUNT_TOLERANCE_BPS", "50"))

    # Reconciliation poller
    poller_enabled: bool = os.getenv("POLLER_ENABLED", "true").lower() == "true"
    poller_interval_seconds: float = float(os.getenv("POLLER_INTERVAL_SECONDS", "5"))
    poller_sweep_interval_seconds: float = float(os.getenv("POLLER_SWEEP_INTERVAL_SECONDS", "60"))
    poller_active_window_seconds: int = int(os.getenv("POLLER_ACTIVE_WINDOW_SECONDS", "1800"))
    poller_batch_size: int = int(os.getenv("POLLER_BATCH_SIZE", "100"))
    verify_rate_limit_per_minute: int = int(os.getenv("VERIFY_RATE_LIMIT_PER_MINUTE", "12"))

    # Swap between token and secondary balance
    chess_to_game_rate: int = int(os.getenv("CHESS_TO_GAME_RATE", "10"))
    swap_fee_percent: float = float(os.getenv("SWAP_FEE_PERCENT", "1"))
    min_swap_game: int = int(os.getenv("MIN_SWAP_GAME", "10"))
    min_swap_chess: int = int(os.getenv("MIN_SWAP_CHESS", "1"))
    max_daily_swap_game: int = int(os.getenv("MAX_DAILY_SWAP_GAME", "100000"))

settings = Settings()
