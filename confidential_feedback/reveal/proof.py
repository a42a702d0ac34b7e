"""Authenticity proofs attached to oracle callbacks.

A proof is an Ed25519 signature by the oracle over a canonical encoding of
the request id and the revealed values. The system verifies it against the
oracle public key it was configured with.
"""
from __future__ import annotations

import json
from typing import Optional, Sequence

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from confidential_feedback.exceptions import InvalidProofError, MissingProofError

_DOMAIN = "confidential-feedback/reveal/v1"


def canonical_message(request_id: int, values: Sequence[int]) -> bytes:
    """Byte string signed by the oracle for *request_id* and *values*."""
    payload = {"domain": _DOMAIN, "request_id": request_id, "values": [int(v) for v in values]}
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


def sign_values(private_key: Ed25519PrivateKey, request_id: int, values: Sequence[int]) -> bytes:
    return private_key.sign(canonical_message(request_id, values))


def verify_proof(
    public_key: Ed25519PublicKey,
    request_id: int,
    values: Sequence[int],
    proof: Optional[bytes],
) -> None:
    """Raise unless *proof* is the oracle's signature over the callback data.

    Raises
    ------
    MissingProofError
        If *proof* is empty or ``None``.
    InvalidProofError
        If the signature does not verify.
    """
    if not proof:
        raise MissingProofError(f"Callback for request {request_id} carried no proof.")
    try:
        public_key.verify(bytes(proof), canonical_message(request_id, values))
    except InvalidSignature as exc:
        raise InvalidProofError(
            f"Proof for request {request_id} does not match the oracle key."
        ) from exc
