"""Explicit access-control list for decrypt capabilities.

A grant is a ``(handle, principal)`` pair. Every ciphertext that some
principal must read later needs its grants recorded when it is created;
a ciphertext without grants can never be decrypted by anyone.
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import DefaultDict, FrozenSet, Iterable, Set

from confidential_feedback.exceptions import NotAuthorizedError
from confidential_feedback.fhe.types import Ciphertext

logger = logging.getLogger(__name__)

# Principal under which the feedback system itself holds capabilities
SYSTEM_PRINCIPAL = "feedback-system"


class AccessControlList:
    """Thread-safe table of decrypt grants keyed by ciphertext handle."""

    def __init__(self) -> None:
        self._grants: DefaultDict[str, Set[str]] = defaultdict(set)
        self._lock = threading.Lock()

    def grant(self, ciphertext: Ciphertext, principal: str) -> None:
        """Allow *principal* to decrypt *ciphertext*."""
        if not principal:
            raise ValueError("principal must be a non-empty string")
        with self._lock:
            self._grants[ciphertext.handle].add(principal)
        logger.debug(
            "decrypt_granted",
            extra={"handle": ciphertext.handle, "principal": principal},
        )

    def grant_all(self, ciphertext: Ciphertext, principals: Iterable[str]) -> None:
        for principal in principals:
            self.grant(ciphertext, principal)

    def is_allowed(self, ciphertext: Ciphertext, principal: str) -> bool:
        with self._lock:
            return principal in self._grants.get(ciphertext.handle, ())

    def require(self, ciphertext: Ciphertext, principal: str) -> None:
        """Raise :class:`NotAuthorizedError` unless *principal* holds a grant."""
        if not self.is_allowed(ciphertext, principal):
            raise NotAuthorizedError(
                f"{principal} may not decrypt {ciphertext.type_name} {ciphertext.handle[:10]}"
            )

    def grants_for(self, ciphertext: Ciphertext) -> FrozenSet[str]:
        """Return the principals allowed to decrypt *ciphertext*."""
        with self._lock:
            return frozenset(self._grants.get(ciphertext.handle, ()))

    def __len__(self) -> int:
        with self._lock:
            return sum(len(p) for p in self._grants.values())
