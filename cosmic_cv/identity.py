from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Request
from pydantic import BaseModel, field_validator

from .errors import AuthenticationError


def safe_text(value: str | None) -> str:
    return (value or "").strip()


def normalize_email(value: str | None) -> str:
    return safe_text(value).lower()


def b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - (len(value) % 4)) % 4)
    return base64.urlsafe_b64decode(value + padding)


class Identity(BaseModel):
    user_id: str | None = None
    email: str = ""

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> str:
        return normalize_email(value if isinstance(value, str) else None)

    @field_validator("user_id", mode="before")
    @classmethod
    def _normalize_user_id(cls, value: Any) -> str | None:
        if value is None:
            return None
        return safe_text(str(value)) or None


def decode_session_token(token: str, secret: str) -> Identity:
    """Verify an HS256 access token issued by the identity provider.

    Only the signature, the expiry and the ``sub``/``email`` claims are used.
    Sign-in, refresh and sign-out stay with the provider.
    """
    if not secret:
        raise AuthenticationError("Session verification is not configured.")

    parts = safe_text(token).split(".")
    if len(parts) != 3:
        raise AuthenticationError("Invalid session token.")

    header_b64, payload_b64, signature_b64 = parts
    try:
        header = json.loads(b64url_decode(header_b64).decode("utf-8"))
        provided = b64url_decode(signature_b64)
    except Exception as exc:
        raise AuthenticationError("Invalid session token encoding.") from exc
    if not isinstance(header, dict) or safe_text(str(header.get("alg"))) != "HS256":
        raise AuthenticationError("Unsupported session token algorithm.")

    signing_input = f"{header_b64}.{payload_b64}".encode("utf-8")
    expected = hmac.new(secret.encode("utf-8"), signing_input, hashlib.sha256).digest()
    if not hmac.compare_digest(expected, provided):
        raise AuthenticationError("Invalid session token signature.")

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:
        raise AuthenticationError("Invalid session token payload.") from exc

    if not isinstance(payload, dict):
        raise AuthenticationError("Invalid session token payload.")
    try:
        expires_at = int(payload.get("exp", 0))
    except (TypeError, ValueError, OverflowError) as exc:
        raise AuthenticationError("Invalid session token expiry.") from exc
    if expires_at < int(time.time()):
        raise AuthenticationError("Session expired. Please sign in again.")

    user_id = safe_text(str(payload.get("sub") or ""))
    if not user_id:
        raise AuthenticationError("Session token has no subject.")
    return Identity(user_id=user_id, email=payload.get("email") or "")


def encode_session_token(claims: dict[str, Any], secret: str) -> str:
    header_b64 = b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode("utf-8"))
    payload_b64 = b64url_encode(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    signature = hmac.new(secret.encode("utf-8"), f"{header_b64}.{payload_b64}".encode("utf-8"), hashlib.sha256).digest()
    return f"{header_b64}.{payload_b64}.{b64url_encode(signature)}"


def extract_bearer_token(request: Request) -> str | None:
    auth_header = safe_text(request.headers.get("authorization"))
    if auth_header.lower().startswith("bearer "):
        return safe_text(auth_header[7:])
    return None


def identity_from_request(request: Request, secret: str) -> Identity:
    token = extract_bearer_token(request)
    if not token:
        raise AuthenticationError("Sign in required to check premium access.")
    return decode_session_token(token, secret)
