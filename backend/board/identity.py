"""
Caller identity.

There are no accounts: a caller is identified by the network address the
request came from. Shared proxies and NAT make different people collide on
one identity; that is accepted.
"""

from typing import Optional

from .models import UNKNOWN_IDENTITY


def _clean(value: Optional[str]) -> str:
    return (value or '').strip()


def resolve_identity(
    remote_addr: Optional[str] = None,
    forwarded_for: Optional[str] = None,
    real_ip: Optional[str] = None,
) -> str:
    """
    Pick an identity token from connection metadata.

    Preference: observed peer address, first X-Forwarded-For entry,
    X-Real-IP, then "unknown". Never fails.
    """
    peer = _clean(remote_addr)
    if peer:
        return peer

    first_hop = _clean(_clean(forwarded_for).split(',')[0])
    if first_hop:
        return first_hop

    real = _clean(real_ip)
    if real:
        return real

    return UNKNOWN_IDENTITY


def get_request_identity(request) -> str:
    """Identity of the caller of a Django/DRF request."""
    meta = request.META
    return resolve_identity(
        remote_addr=meta.get('REMOTE_ADDR'),
        forwarded_for=meta.get('HTTP_X_FORWARDED_FOR'),
        real_ip=meta.get('HTTP_X_REAL_IP'),
    )
