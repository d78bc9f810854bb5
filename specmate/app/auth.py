"""
Bearer token check for the SpecMate API.
Tokens are HS256 JWTs signed with the shared JWT_SECRET; issuing them for
real users happens in the account service, create_jwt exists for ops and tests.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import time
from typing import Any, Dict, Optional

from fastapi import Header, HTTPException

JWT_SECRET = os.getenv("JWT_SECRET", "specmate-dev-secret-change-in-prod-" + secrets.token_hex(16))
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 24


def _base64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b'=').decode('utf-8')


def _base64url_decode(data: str) -> bytes:
    padding = 4 - len(data) % 4
    if padding != 4:
        data += '=' * padding
    return base64.urlsafe_b64decode(data)


def _sign(signature_input: str) -> bytes:
    return hmac.new(JWT_SECRET.encode(), signature_input.encode(), hashlib.sha256).digest()


def create_jwt(payload: Dict[str, Any], expires_in: int = JWT_EXPIRY_HOURS * 3600) -> str:
    """Create a signed token carrying *payload* plus iat/exp."""
    now = int(time.time())
    header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
    body = {**payload, "iat": now, "exp": now + expires_in}

    header_b64 = _base64url_encode(json.dumps(header).encode())
    payload_b64 = _base64url_encode(json.dumps(body).encode())
    signature_b64 = _base64url_encode(_sign(f"{header_b64}.{payload_b64}"))
    return f"{header_b64}.{payload_b64}.{signature_b64}"


def verify_jwt(token: str) -> Optional[Dict[str, Any]]:
    """Decoded claims of a valid, unexpired token, else None."""
    parts = (token or "").split('.')
    if len(parts) != 3:
        return None
    header_b64, payload_b64, signature_b64 = parts
    try:
        actual_sig = _base64url_decode(signature_b64)
        if not hmac.compare_digest(_sign(f"{header_b64}.{payload_b64}"), actual_sig):
            return None
        header = json.loads(_base64url_decode(header_b64))
        payload = json.loads(_base64url_decode(payload_b64))
    except (ValueError, TypeError):
        return None
    if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
        return None
    if not isinstance(payload, dict) or payload.get("exp", 0) < time.time():
        return None
    return payload


def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Dependency returning the token claims; rejects the request before any service call."""
    if not authorization:
        raise HTTPException(status_code=401, detail="인증이 필요합니다.")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="잘못된 토큰 형식입니다.")

    claims = verify_jwt(parts[1])
    if not claims:
        raise HTTPException(status_code=401, detail="토큰이 유효하지 않거나 만료되었습니다.")
    if not claims.get("sub") and not claims.get("user_id"):
        raise HTTPException(status_code=401, detail="잘못된 토큰입니다.")
    return claims
