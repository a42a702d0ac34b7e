"""Shared fixtures: a mock coprocessor, a hand-driven oracle and a system."""
from __future__ import annotations

import datetime
from typing import Callable, Dict, List, Sequence, Tuple

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from confidential_feedback.config import Settings
from confidential_feedback.fhe.acl import SYSTEM_PRINCIPAL
from confidential_feedback.fhe.mock import MockCoprocessor
from confidential_feedback.fhe.types import Ciphertext
from confidential_feedback.reveal.proof import sign_values
from confidential_feedback.reveal.relayer import DecryptionOracle
from confidential_feedback.system import FeedbackSystem

OPERATOR = "operator"
ORACLE = "decryption-oracle"
FIXED_NOW = datetime.datetime(2024, 1, 1, 12, 34, 56, tzinfo=datetime.timezone.utc)


class ManualOracle(DecryptionOracle):
    """Oracle that only answers when a test calls :meth:`deliver`."""

    def __init__(self, coprocessor: MockCoprocessor, principal: str = ORACLE) -> None:
        self.principal = principal
        self._fhe = coprocessor
        self.key = Ed25519PrivateKey.generate()
        self.requests: Dict[int, Tuple[Tuple[Ciphertext, ...], str, Callable]] = {}
        self.cancelled: List[int] = []

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self.key.public_key()

    def submit(self, request_id, handles: Sequence[Ciphertext], *, requester, callback) -> None:
        self.requests[request_id] = (tuple(handles), requester, callback)

    def cancel(self, request_id: int) -> bool:
        # requests stay deliverable so tests can replay a late callback
        self.cancelled.append(request_id)
        return True

    def decrypt_request(self, request_id: int) -> List[int]:
        handles, requester, _ = self.requests[request_id]
        return [int(self._fhe.decrypt(h, requester)) for h in handles]

    def deliver(self, request_id: int):
        values = self.decrypt_request(request_id)
        _, _, callback = self.requests[request_id]
        proof = sign_values(self.key, request_id, values)
        return callback(self.principal, request_id, *values, proof)


@pytest.fixture()
def fhe() -> MockCoprocessor:
    return MockCoprocessor()


@pytest.fixture()
def reveal_as_system(fhe: MockCoprocessor) -> Callable[[Ciphertext], int]:
    """Decrypt a ciphertext with the system's own grant (test-only check)."""

    def _decrypt(ct: Ciphertext) -> int:
        return int(fhe.decrypt(ct, SYSTEM_PRINCIPAL))

    return _decrypt


@pytest.fixture()
def oracle(fhe: MockCoprocessor) -> ManualOracle:
    return ManualOracle(fhe)


@pytest.fixture()
def settings() -> Settings:
    return Settings(operator=OPERATOR, oracle_principal=ORACLE)


@pytest.fixture()
def system(fhe: MockCoprocessor, oracle: ManualOracle, settings: Settings) -> FeedbackSystem:
    return FeedbackSystem(fhe, oracle, settings=settings, clock=lambda: FIXED_NOW)
