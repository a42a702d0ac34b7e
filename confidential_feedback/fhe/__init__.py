"""Encrypted-integer capability layer consumed by the feedback system."""

from confidential_feedback.fhe.acl import SYSTEM_PRINCIPAL, AccessControlList
from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.mock import MockCoprocessor
from confidential_feedback.fhe.types import Ciphertext

__all__ = [
    "SYSTEM_PRINCIPAL",
    "AccessControlList",
    "Ciphertext",
    "Coprocessor",
    "MockCoprocessor",
]
