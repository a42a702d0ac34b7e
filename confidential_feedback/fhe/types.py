"""Handle types for encrypted values."""
from __future__ import annotations

from dataclasses import dataclass

SUPPORTED_WIDTHS = (8, 16, 32, 64)

# Widths used throughout the system
RATING_BITS = 8
COUNTER_BITS = 32
TIMESTAMP_BITS = 64


@dataclass(frozen=True)
class Ciphertext:
    """Opaque reference to a value held by a :class:`Coprocessor`.

    The handle carries no information about the plaintext. ``bits`` is the
    unsigned integer width the value lives in; ``is_bool`` marks the result
    of an encrypted comparison.
    """

    handle: str
    bits: int
    is_bool: bool = False

    @property
    def type_name(self) -> str:
        return "ebool" if self.is_bool else f"euint{self.bits}"

    def __repr__(self) -> str:
        return f"Ciphertext({self.type_name}, handle='{self.handle[:10]}…')"
