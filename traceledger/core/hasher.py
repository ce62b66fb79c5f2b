"""
Event Hashing

SHA-256 over canonical bytes, rendered as 64 lowercase hex characters.
No salt, no key: anyone holding the logical fields can recompute it.
"""

import hashlib
import hmac
import re

from ..schemas.events import EventFields
from .canonical import CanonicalEncoder


_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


class Hasher:
    """Digest computation and comparison."""

    @staticmethod
    def hash_bytes(data: bytes) -> str:
        """
        Hash raw bytes using SHA-256.

        Returns:
            Hex-encoded SHA-256 hash (64 characters, lowercase)
        """
        return hashlib.sha256(data).hexdigest()

    @classmethod
    def hash_fields(cls, fields: EventFields) -> str:
        """Canonically encode the fields, then hash them."""
        return cls.hash_bytes(CanonicalEncoder.encode(fields))

    @staticmethod
    def is_valid_digest(value: object) -> bool:
        """True for a 64-char lowercase hex string."""
        return isinstance(value, str) and _DIGEST_RE.fullmatch(value) is not None

    @staticmethod
    def matches(computed: str, stored: str) -> bool:
        """
        Compare two digests in constant time.

        Prevents timing attacks where an attacker could learn
        about the hash by measuring comparison time.
        """
        if not isinstance(stored, str) or not _DIGEST_RE.fullmatch(stored.lower()):
            return False
        return hmac.compare_digest(computed, stored.lower())
