"""In-process coprocessor used for development and tests.

Plaintexts are kept sealed with AES-256-GCM under a key that never leaves
the instance; handles are random tokens. The associated data binds each
blob to its handle and type, so a forged :class:`Ciphertext` with a
different width fails to open. This is NOT homomorphic encryption: it
reproduces the semantics of the capability set, not its security.
"""
from __future__ import annotations

import logging
import os
import secrets
import threading
from typing import Dict, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from confidential_feedback.exceptions import CiphertextError
from confidential_feedback.fhe.acl import AccessControlList
from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import SUPPORTED_WIDTHS, Ciphertext

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12
_VALUE_BYTES = 8


def _aad(ct: Ciphertext) -> bytes:
    return f"{ct.handle}:{ct.type_name}".encode()


class MockCoprocessor(Coprocessor):
    """Evaluates the capability set over AES-GCM sealed plaintexts."""

    def __init__(self, acl: AccessControlList | None = None) -> None:
        super().__init__(acl)
        self._aead = AESGCM(AESGCM.generate_key(bit_length=256))
        self._sealed: Dict[str, Tuple[bytes, bytes]] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sealing helpers
    # ------------------------------------------------------------------
    def _seal(self, value: int, bits: int, is_bool: bool = False) -> Ciphertext:
        ct = Ciphertext(handle=secrets.token_hex(16), bits=bits, is_bool=is_bool)
        nonce = os.urandom(_NONCE_BYTES)
        blob = self._aead.encrypt(nonce, value.to_bytes(_VALUE_BYTES, "big"), _aad(ct))
        with self._lock:
            self._sealed[ct.handle] = (nonce, blob)
        return ct

    def _open(self, ct: Ciphertext) -> int:
        with self._lock:
            entry = self._sealed.get(ct.handle)
        if entry is None:
            raise CiphertextError(f"Unknown ciphertext handle {ct.handle[:10]}")
        nonce, blob = entry
        try:
            raw = self._aead.decrypt(nonce, blob, _aad(ct))
        except InvalidTag as exc:
            raise CiphertextError(
                f"Ciphertext {ct.handle[:10]} does not match its declared type {ct.type_name}"
            ) from exc
        return int.from_bytes(raw, "big")

    @staticmethod
    def _check_width(bits: int) -> None:
        if bits not in SUPPORTED_WIDTHS:
            raise CiphertextError(f"Unsupported width {bits}; expected one of {SUPPORTED_WIDTHS}")

    @staticmethod
    def _check_uint_pair(lhs: Ciphertext, rhs: Ciphertext) -> None:
        if lhs.is_bool or rhs.is_bool:
            raise CiphertextError("Arithmetic requires integer ciphertexts")
        if lhs.bits != rhs.bits:
            raise CiphertextError(f"Width mismatch: {lhs.type_name} vs {rhs.type_name}")

    # ------------------------------------------------------------------
    # Capability set
    # ------------------------------------------------------------------
    def encrypt(self, value: int, bits: int) -> Ciphertext:
        self._check_width(bits)
        if isinstance(value, bool) or not isinstance(value, int):
            raise CiphertextError(f"Cannot encrypt non-integer {value!r}")
        if not 0 <= value < 2**bits:
            raise CiphertextError(f"Value out of range for euint{bits}")
        return self._seal(value, bits)

    def encrypt_bool(self, value: bool) -> Ciphertext:
        return self._seal(int(bool(value)), 8, is_bool=True)

    def add(self, lhs: Ciphertext, rhs: Ciphertext) -> Ciphertext:
        self._check_uint_pair(lhs, rhs)
        return self._seal((self._open(lhs) + self._open(rhs)) % 2**lhs.bits, lhs.bits)

    def gt(self, lhs: Ciphertext, rhs: Ciphertext) -> Ciphertext:
        self._check_uint_pair(lhs, rhs)
        return self._seal(int(self._open(lhs) > self._open(rhs)), 8, is_bool=True)

    def select(self, condition: Ciphertext, if_true: Ciphertext, if_false: Ciphertext) -> Ciphertext:
        if not condition.is_bool:
            raise CiphertextError("select condition must be an ebool")
        self._check_uint_pair(if_true, if_false)
        # Arithmetic multiplexer: both operands are always opened and combined.
        c = self._open(condition)
        value = c * self._open(if_true) + (1 - c) * self._open(if_false)
        return self._seal(value, if_true.bits)

    def div(self, dividend: Ciphertext, divisor: int) -> Ciphertext:
        if dividend.is_bool:
            raise CiphertextError("div requires an integer ciphertext")
        if isinstance(divisor, bool) or not isinstance(divisor, int) or divisor <= 0:
            raise CiphertextError(f"Plaintext divisor must be a positive integer, got {divisor!r}")
        return self._seal(self._open(dividend) // divisor, dividend.bits)

    def cast(self, value: Ciphertext, bits: int) -> Ciphertext:
        self._check_width(bits)
        return self._seal(self._open(value) % 2**bits, bits)

    def decrypt(self, value: Ciphertext, principal: str) -> Union[int, bool]:
        self.acl.require(value, principal)
        plain = self._open(value)
        logger.debug("ciphertext_decrypted", extra={"principal": principal})
        return bool(plain) if value.is_bool else plain

    def __len__(self) -> int:
        with self._lock:
            return len(self._sealed)
