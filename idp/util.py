"""
Request helpers shared by the protocol routers.
"""

import base64
import binascii
import ipaddress
from typing import Optional
from urllib.parse import unquote

from fastapi import Request


def get_client_ip(request: Request) -> Optional[str]:
    """
    First X-Forwarded-For hop when it is a valid address, otherwise the peer.
    """
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        try:
            ipaddress.ip_address(forwarded)
            return forwarded
        except ValueError:
            pass
    return request.client.host if request.client else None


def get_user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def parse_basic_auth(request: Request) -> tuple[Optional[str], Optional[str]]:
    """
    Client credentials from an HTTP Basic Authorization header (RFC 6749
    section 2.3.1, form-urlencoded id and secret). (None, None) if absent
    or malformed.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Basic "):
        return None, None
    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode()
    except (binascii.Error, UnicodeDecodeError):
        return None, None
    if ":" not in decoded:
        return None, None
    client_id, client_secret = decoded.split(":", 1)
    return unquote(client_id), unquote(client_secret)


def get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None
