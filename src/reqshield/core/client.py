"""
Client identification for rate limiting and audit records.
"""

import zlib
from typing import Mapping, Optional

UNKNOWN_CLIENT = "unknown"


def client_address(
    forwarded_for: Optional[str],
    real_ip: Optional[str],
    peer: Optional[str],
) -> str:
    """
    Resolve the client address.

    Prefers the first hop of ``X-Forwarded-For``, then ``X-Real-IP``, then the
    direct peer address.
    """
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    if real_ip and real_ip.strip():
        return real_ip.strip()
    if peer:
        return peer
    return UNKNOWN_CLIENT


def user_agent_hash(user_agent: Optional[str]) -> str:
    """Short non-cryptographic digest of the user-agent string."""
    value = user_agent or UNKNOWN_CLIENT
    return format(zlib.crc32(value.encode("utf-8")), "x")


def client_key(
    forwarded_for: Optional[str],
    real_ip: Optional[str],
    peer: Optional[str],
    user_agent: Optional[str],
) -> str:
    """
    Build the per-client key ``<address>:<ua-hash>``.

    The user-agent digest keeps the key bounded while separating clients that
    share an address behind NAT.
    """
    return f"{client_address(forwarded_for, real_ip, peer)}:{user_agent_hash(user_agent)}"


def client_key_from_headers(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """Convenience wrapper over lower-cased request headers."""
    return client_key(
        headers.get("x-forwarded-for"),
        headers.get("x-real-ip"),
        peer,
        headers.get("user-agent"),
    )
