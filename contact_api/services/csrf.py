# contact_api/services/csrf.py
from __future__ import annotations

import hashlib
import secrets
import time
from typing import Any, Mapping, Optional

from contact_api.core.exceptions import CSRFInvalid
from contact_api.core.logging import get_structlog_logger
from contact_api.services.store import Clock, KeyValueStore

logger = get_structlog_logger(__name__)

CSRF_HEADER = "x-csrf-token"
CSRF_BODY_FIELD = "_csrf"


class CSRFProtector:
    """Issues single-use CSRF tokens and consumes them on validation."""

    def __init__(
        self,
        store: KeyValueStore,
        secret: str,
        ttl_seconds: float = 3600,
        clock: Clock = time.time,
    ):
        self.store = store
        self.secret = secret
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @staticmethod
    def _key(token: str) -> str:
        return f"csrf:{token}"

    async def issue(self) -> str:
        random_part = secrets.token_hex(32)
        token = hashlib.sha256((random_part + self.secret).encode("utf-8")).hexdigest()
        expires_at = self.clock() + self.ttl_seconds

        await self.store.set(self._key(token), expires_at, ttl=self.ttl_seconds)

        purged = await self.store.purge_expired()
        if purged:
            logger.debug("csrf.expired_purged", count=purged)

        return token

    async def validate(self, token: Optional[str]) -> bool:
        """True once per issued token; unknown, expired and reused tokens all fail."""
        if not token or not isinstance(token, str):
            return False

        expires_at = await self.store.pop(self._key(token))
        if expires_at is None:
            return False

        return self.clock() < float(expires_at)

    async def verify(self, headers: Mapping[str, str], body: Any) -> None:
        """Consume the token from the header, falling back to the body field."""
        token = headers.get(CSRF_HEADER)
        if not token and isinstance(body, Mapping):
            token = body.get(CSRF_BODY_FIELD)

        if not await self.validate(token):
            raise CSRFInvalid()
