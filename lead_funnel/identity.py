"""
IDENTITY - Client identity derivation and log masking

A ClientIdentity is the key used by rate limiting, abuse monitoring and
bans. It lives only as long as the process.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import List, Mapping, Optional

from .config import IP_HASH_SALT

_BROWSER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{8,64}$")


@dataclass(frozen=True)
class ClientIdentity:
    address: str
    browser_id: Optional[str] = None

    @property
    def key(self) -> str:
        """Rate-limit and abuse key: the hashed network address."""
        return f"ip:{hash_address(self.address)}"

    @property
    def browser_key(self) -> Optional[str]:
        return f"browser:{self.browser_id}" if self.browser_id else None

    def ban_keys(self, session_id: Optional[str] = None) -> List[str]:
        """Every key a ban for this client (and its session) may be stored under."""
        keys = [self.key]
        if self.browser_key:
            keys.append(self.browser_key)
        if session_id:
            keys.append(f"session:{session_id}")
        return keys

    @property
    def masked(self) -> str:
        return mask_id(self.key)


def hash_address(address: str) -> str:
    return hashlib.sha256((address + IP_HASH_SALT).encode("utf-8")).hexdigest()[:16]


def mask_id(value: Optional[str]) -> str:
    """Mask an identifier for logs: first and last 4 characters only."""
    if not value:
        return "***unknown***"
    if len(value) <= 8:
        return "***masked***"
    return f"{value[:4]}***{value[-4:]}"


def derive_identity(peer_address: Optional[str], headers: Mapping[str, str],
                    browser_id: Optional[str] = None) -> ClientIdentity:
    """
    Derive the client identity from the network origin.

    x-forwarded-for (first hop) and x-real-ip win over the socket peer;
    a browser id is only kept when it matches the opaque-id pattern.
    """
    address = None
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        address = forwarded.split(",")[0].strip()
    if not address:
        address = (headers.get("x-real-ip") or "").strip() or None
    if not address:
        address = peer_address or "unknown"

    if browser_id and not _BROWSER_ID_PATTERN.match(browser_id):
        browser_id = None

    return ClientIdentity(address=address, browser_id=browser_id)
