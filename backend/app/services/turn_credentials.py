"""
SilentLine - TURN Credential Issuance

Time-limited credentials for the peer-media relay, following the TURN REST
API convention understood by coturn's `use-auth-secret` mode:

    username   = "<unix expiry>:<user>"
    credential = base64(HMAC-SHA1(shared_secret, username))

Stateless: nothing is stored, the TURN server re-derives the credential.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import time
from typing import List, Optional

from app.core.exceptions import ConfigurationError


def issue_turn_credentials(
    secret: Optional[str],
    user: str,
    ttl_seconds: int,
    uris: List[str],
    now: Optional[float] = None,
) -> dict:
    """
    Mint a TURN username/credential pair valid for `ttl_seconds`.

    Raises:
        ConfigurationError: If no shared secret is configured
    """
    if not secret:
        raise ConfigurationError("TURN shared secret is not configured")
    if ttl_seconds <= 0:
        raise ConfigurationError(f"TURN ttl must be positive, got {ttl_seconds}")

    issued_at = int(now if now is not None else time.time())
    expires_at = issued_at + ttl_seconds
    username = f"{expires_at}:{user}"
    digest = hmac.new(secret.encode("utf-8"), username.encode("utf-8"), hashlib.sha1).digest()

    return {
        "username": username,
        "credential": base64.b64encode(digest).decode("ascii"),
        "ttl": ttl_seconds,
        "expires_at": expires_at,
        "uris": list(uris),
    }
