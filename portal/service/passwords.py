"""Password hashing with a modern argon2id scheme and a legacy SHA-256 scheme.

Stored hashes are self-describing. The scheme is resolved from the shape
of the stored value:

* ``$argon2...`` prefix: :class:`Modern`, argon2id over ``password + pepper``
* 64 hex characters: :class:`Legacy`, unsalted SHA-256 of the password
* anything else: no scheme, verification fails closed

New hashes are always produced with the modern scheme.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from typing import Optional, Union

from argon2 import PasswordHasher, Type, extract_parameters
from argon2.exceptions import InvalidHash, VerificationError

from portal.config import Settings
from portal.logging import get_logger

logger = get_logger(__name__)

_MODERN_PREFIX = "$argon2"
_LEGACY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class Modern:
    cost: int


@dataclass(frozen=True)
class Legacy:
    pass


HashScheme = Union[Modern, Legacy]


def scheme_for(stored_hash: Optional[str]) -> Optional[HashScheme]:
    """Resolve the hash scheme from the stored value, or None if unrecognised."""
    if not stored_hash:
        return None
    if stored_hash.startswith(_MODERN_PREFIX):
        try:
            params = extract_parameters(stored_hash)
        except InvalidHash:
            return None
        return Modern(cost=params.time_cost)
    if _LEGACY_PATTERN.match(stored_hash):
        return Legacy()
    return None


def legacy_digest(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


class PasswordService:
    """Hashes and verifies passwords with a process-wide pepper."""

    def __init__(self, settings: Settings) -> None:
        self._pepper = settings.password_pepper
        self._hasher = PasswordHasher(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            type=Type.ID,
        )

    def _peppered(self, password: str) -> str:
        return password + self._pepper

    def hash(self, password: str) -> str:
        return self._hasher.hash(self._peppered(password))

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        scheme = scheme_for(stored_hash)
        if isinstance(scheme, Modern):
            try:
                return self._hasher.verify(stored_hash, self._peppered(password))
            except (InvalidHash, VerificationError):
                return False
        if isinstance(scheme, Legacy):
            return hmac.compare_digest(legacy_digest(password), stored_hash.lower())
        logger.warning("password_hash_unrecognized")
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        """True when the stored hash is legacy or uses outdated argon2 parameters."""
        scheme = scheme_for(stored_hash)
        if isinstance(scheme, Modern):
            return self._hasher.check_needs_rehash(stored_hash)
        return True
