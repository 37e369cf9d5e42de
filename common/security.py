import hmac
import time, jwt
from typing import Dict, Optional
from common.settings import settings

ALGO = "HS256"
OPERATOR_AUDIENCE = "operator"

def mint_operator_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "aud": OPERATOR_AUDIENCE,
        "iat": now,
        "exp": now + settings.operator_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def verify_webhook_token(token: Optional[str], expected: Optional[str] = None) -> bool:
    """Constant-time check of the secret the bot platform echoes on every webhook call."""
    expected = settings.telegram_webhook_secret if expected is None else expected
    if not expected or not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
