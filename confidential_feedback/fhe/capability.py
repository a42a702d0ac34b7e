"""Abstract capability set of an encrypted-integer coprocessor.

The feedback system only ever talks to this interface. Every operation
returns a fresh :class:`Ciphertext`; existing handles are immutable.
Arithmetic is unsigned and wraps at the operand width.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Union

from confidential_feedback.fhe.acl import AccessControlList
from confidential_feedback.fhe.types import Ciphertext


class Coprocessor(ABC):
    """Operations available on encrypted unsigned integers."""

    def __init__(self, acl: Optional[AccessControlList] = None) -> None:
        self.acl = acl if acl is not None else AccessControlList()

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------
    @abstractmethod
    def encrypt(self, value: int, bits: int) -> Ciphertext:
        """Encrypt plaintext *value* as an unsigned integer of *bits* width."""

    @abstractmethod
    def encrypt_bool(self, value: bool) -> Ciphertext:
        """Encrypt a plaintext boolean."""

    # ------------------------------------------------------------------
    # Homomorphic operations
    # ------------------------------------------------------------------
    @abstractmethod
    def add(self, lhs: Ciphertext, rhs: Ciphertext) -> Ciphertext:
        """Return ``lhs + rhs`` (same width, wrapping)."""

    @abstractmethod
    def gt(self, lhs: Ciphertext, rhs: Ciphertext) -> Ciphertext:
        """Return the encrypted boolean ``lhs > rhs``."""

    @abstractmethod
    def select(self, condition: Ciphertext, if_true: Ciphertext, if_false: Ciphertext) -> Ciphertext:
        """Return *if_true* when *condition* holds, else *if_false*, without branching."""

    @abstractmethod
    def div(self, dividend: Ciphertext, divisor: int) -> Ciphertext:
        """Return the truncating quotient of *dividend* by a plaintext *divisor*."""

    @abstractmethod
    def cast(self, value: Ciphertext, bits: int) -> Ciphertext:
        """Widen or narrow *value* to *bits* (narrowing keeps the low bits)."""

    # ------------------------------------------------------------------
    # Decryption (ACL-gated)
    # ------------------------------------------------------------------
    @abstractmethod
    def decrypt(self, value: Ciphertext, principal: str) -> Union[int, bool]:
        """Decrypt *value* for *principal*; requires a grant in :attr:`acl`."""

    def grant(self, value: Ciphertext, *principals: str) -> Ciphertext:
        """Record decrypt grants for *value* and return it for chaining."""
        self.acl.grant_all(value, principals)
        return value

    def grant_many(self, values: Iterable[Ciphertext], *principals: str) -> None:
        for value in values:
            self.grant(value, *principals)
