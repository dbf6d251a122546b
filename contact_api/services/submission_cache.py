# contact_api/services/submission_cache.py
from __future__ import annotations

import hashlib
import json
import time

from contact_api.schemas.contact import SanitizedSubmission
from contact_api.services.store import Clock, KeyValueStore

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_LOCK_SECONDS = 30.0


class SubmissionCache:
    """Short-lived memory of successful submissions, used to absorb double submits."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Clock = time.time,
        lock_seconds: float = DEFAULT_LOCK_SECONDS,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.lock_seconds = lock_seconds

    @staticmethod
    def fingerprint(submission: SanitizedSubmission) -> str:
        """
        Stable hash over name, email, phone and interest.
        Company and locale are deliberately left out.
        """
        important_fields = {
            "name": submission.name,
            "email": submission.email,
            "phone": submission.phone,
            "interest": submission.interest.value,
        }
        canonical = json.dumps(important_fields, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @staticmethod
    def _key(fingerprint: str) -> str:
        return f"submission:{fingerprint}"

    def lock(self, fingerprint: str):
        """Serializes check, CRM sync and record for one fingerprint."""
        return self.store.lock(self._key(fingerprint), timeout=self.lock_seconds)

    async def is_duplicate(self, fingerprint: str) -> bool:
        key = self._key(fingerprint)
        entry = await self.store.get(key)
        if entry is None:
            return False

        if self.clock() - entry["created_at"] > self.ttl_seconds:
            await self.store.delete(key)
            return False

        return True

    async def record(self, fingerprint: str, submission: SanitizedSubmission) -> None:
        await self.store.set(
            self._key(fingerprint),
            {"created_at": self.clock(), "interest": submission.interest.value},
            ttl=self.ttl_seconds,
        )
