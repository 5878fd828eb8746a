from __future__ import annotations

from typing import Mapping, Optional

from pydantic import BaseModel

from core.errors import Unauthorized


class Identity(BaseModel):
    user_id: Optional[str] = None
    client_ip: str = "unknown"


def client_ip_from_headers(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return fallback or "unknown"


def identity_from_headers(headers: Mapping[str, str], fallback_ip: Optional[str] = None) -> Identity:
    # The identity provider sits in front of us and forwards the verified uid.
    raw = (headers.get("x-user-id") or "").strip()
    return Identity(user_id=raw or None, client_ip=client_ip_from_headers(headers, fallback_ip))


def require_user(identity: Identity) -> str:
    if not identity.user_id:
        raise Unauthorized()
    return identity.user_id
