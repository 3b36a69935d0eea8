from jose import JWTError, jwt

from config.env import JWT_SECRET, JWT_ALGORITHM
from utils.errors import LedgerError


class Unauthorized(LedgerError):
    status_code = 401
    default_detail = "Invalid or expired token"


def _require_jwt_secret() -> str:
    secret = (JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def decode_token(token: str) -> dict:
    """
    Tokens are issued by the auth service; this side only verifies them.
    """
    try:
        return jwt.decode(token, _require_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized()
