"""Bypass accounts: identities exempt from credit metering (internal/admin testing)."""
import logging
import os
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def _split_env(value: Optional[str]) -> list:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


class BypassAllowlist:
    """Allowlist matched by user id (exact) or email (case-insensitive)."""

    def __init__(self, user_ids: Iterable[str] = (), emails: Iterable[str] = ()):
        self._user_ids = frozenset(u.strip() for u in user_ids if u and u.strip())
        self._emails = frozenset(e.strip().lower() for e in emails if e and e.strip())

    @classmethod
    def from_env(cls) -> "BypassAllowlist":
        user_ids = _split_env(os.getenv("BYPASS_USER_IDS"))
        internal_admin_uid = (os.getenv("INTERNAL_ADMIN_UID") or "").strip()
        if internal_admin_uid:
            user_ids.append(internal_admin_uid)
        allowlist = cls(user_ids=user_ids, emails=_split_env(os.getenv("BYPASS_EMAILS")))
        if allowlist:
            logger.info(
                "Bypass allowlist configured: %d user id(s), %d email(s)",
                len(allowlist._user_ids), len(allowlist._emails),
            )
        return allowlist

    def __bool__(self) -> bool:
        return bool(self._user_ids or self._emails)

    def contains(self, value: Optional[str]) -> bool:
        if not value or not value.strip():
            return False
        value = value.strip()
        return value in self._user_ids or value.lower() in self._emails

    def is_bypass(self, user_id: Optional[str], email: Optional[str] = None) -> bool:
        return self.contains(user_id) or self.contains(email)
