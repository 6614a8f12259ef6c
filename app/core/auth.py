"""Session resolution: currentAccountId() for billing endpoints.

Tokens are issued by the account service and signed with the shared
AUTH_SECRET: ``<b64url(json payload)>.<b64url(hmac-sha256)>``.
"""

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fastapi import Cookie, Header, HTTPException

from config.settings import get_settings


@dataclass
class AuthContext:
    account_id: int
    email: str | None = None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _b64url_decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _sign(payload_part: str) -> str:
    settings = get_settings()
    sig = hmac.new(settings.auth_secret.encode("utf-8"), payload_part.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(sig)


def create_access_token(*, account_id: int, email: str | None = None, ttl_seconds: int | None = None) -> str:
    settings = get_settings()
    if ttl_seconds is None:
        exp_at = datetime.now(timezone.utc) + timedelta(hours=max(1, settings.auth_token_ttl_hours))
    else:
        exp_at = datetime.now(timezone.utc) + timedelta(seconds=max(60, int(ttl_seconds)))
    payload = {
        "sub": str(account_id),
        "email": email,
        "exp": int(exp_at.timestamp()),
        "jti": str(uuid4()),
    }
    payload_raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    payload_part = _b64url_encode(payload_raw)
    return f"{payload_part}.{_sign(payload_part)}"


def decode_access_token(token: str) -> dict:
    try:
        payload_part, sig_part = token.split(".", 1)
        if not hmac.compare_digest(_sign(payload_part), sig_part):
            raise HTTPException(status_code=401, detail="Invalid token signature")
        payload = json.loads(_b64url_decode(payload_part))
        exp = int(payload.get("exp", 0))
        if exp < int(datetime.now(timezone.utc).timestamp()):
            raise HTTPException(status_code=401, detail="Token expired")
        int(payload["sub"])
        return payload
    except HTTPException:
        raise
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_account(
    authorization: str | None = Header(default=None),
    handfull_access_token: str | None = Cookie(default=None),
) -> AuthContext:
    if authorization and authorization.startswith("Bearer "):
        payload = decode_access_token(authorization.removeprefix("Bearer ").strip())
    elif handfull_access_token:
        payload = decode_access_token(handfull_access_token)
    else:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return AuthContext(account_id=int(payload["sub"]), email=payload.get("email"))
