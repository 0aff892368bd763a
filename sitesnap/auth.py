"""API key lookup against the static key table."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Dict, Iterable, Optional

from fastapi import Header, HTTPException, Request, status

from sitesnap.settings import ApiKey

LOGGER = logging.getLogger(__name__)


def hash_api_key(api_key: str) -> str:
    """Hash an API key so lookups never keep the plain value around."""
    return hashlib.sha256(api_key.encode()).hexdigest()


class ApiKeyTable:
    """Immutable key table loaded from ``API_KEYS`` or ``api-keys.json``."""

    def __init__(self, keys: Iterable[ApiKey] = ()) -> None:
        self._by_hash: Dict[str, ApiKey] = {hash_api_key(entry.key): entry for entry in keys}
        if self._by_hash:
            LOGGER.info("API keys loaded", extra={"key_count": len(self._by_hash)})

    @property
    def configured(self) -> bool:
        return bool(self._by_hash)

    def __len__(self) -> int:
        return len(self._by_hash)

    def verify(self, api_key: str | None) -> Optional[ApiKey]:
        """Return the enabled entry matching ``api_key``, else ``None``."""

        if not api_key:
            return None
        digest = hash_api_key(api_key)
        for stored, entry in self._by_hash.items():
            if hmac.compare_digest(stored, digest):
                return entry if entry.enabled else None
        return None


async def authenticate(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Optional[ApiKey]:
    """FastAPI dependency resolving the caller's key.

    With an empty key table every request is let through anonymously.
    """

    table: ApiKeyTable = request.app.state.service.api_keys
    if not table.configured:
        return None
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-API-Key header",
        )
    entry = table.verify(x_api_key)
    if entry is None:
        LOGGER.warning("Invalid API key attempt", extra={"key_prefix": x_api_key[:8]})
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    request.state.api_key = entry
    return entry


__all__ = ["ApiKeyTable", "authenticate", "hash_api_key"]
