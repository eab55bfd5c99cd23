"""Identifier extraction from inbound requests."""

from typing import Optional

from fastapi import Request

# Proxy headers checked in order before the socket peer
CLIENT_IP_HEADERS = ("X-Real-IP", "CF-Connecting-IP", "X-Client-IP")


def get_client_ip(request: Request) -> str:
    """Resolve the client address.

    Uses the first hop of X-Forwarded-For, then the single-address proxy
    headers, then the socket peer.

    Args:
        request: Inbound request

    Returns:
        Client IP, or "unknown" when nothing identifies the caller
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        client_ip = forwarded.split(",")[0].strip()
        if client_ip:
            return client_ip

    for header in CLIENT_IP_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()

    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("User-Agent") or "unknown"


def get_composite_id(request: Request, user_id: Optional[str] = None) -> str:
    """Identity plus a user-agent prefix, for per-device limits."""
    user_part = f"user:{user_id}" if user_id else f"ip:{get_client_ip(request)}"
    return f"{user_part}:{get_user_agent(request)[:50]}"


def get_user_id(request: Request) -> Optional[str]:
    """User id set on request.state by the authentication layer, if any."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None or user_id == "":
        return None
    return str(user_id)
