"""
Identity Service - Keyed PII hashing for cross-channel customer identity
"""
from typing import Optional
import hashlib
import hmac


class IdentityResolver:
    """
    Derives a stable pseudonymous customer key from email or phone.
    Uses HMAC with a server secret so hashes cannot be reversed with a dictionary of known emails.
    """
    HASH_LENGTH = 32

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("PII hash secret is required")
        self._secret = secret.encode("utf-8")

    @staticmethod
    def normalize_pii(value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        normalized = str(value).strip().lower()
        return normalized or None

    def hash_pii(self, value: Optional[str]) -> Optional[str]:
        """Lowercase + trim, then HMAC-SHA256. Empty input yields None, never a hash of ''."""
        normalized = self.normalize_pii(value)
        if normalized is None:
            return None
        digest = hmac.new(self._secret, normalized.encode("utf-8"), hashlib.sha256).hexdigest()
        return digest[: self.HASH_LENGTH]

    def resolve_customer(self, email: Optional[str] = None, phone: Optional[str] = None) -> Optional[str]:
        """Prefer email, fall back to phone. Anonymous records resolve to None."""
        return self.hash_pii(email) or self.hash_pii(phone)
