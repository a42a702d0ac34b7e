"""Decryption oracle interface and an in-process relayer implementation."""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Sequence

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from confidential_feedback.config import DEFAULT_ORACLE_PRINCIPAL
from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import Ciphertext
from confidential_feedback.reveal.proof import sign_values
from confidential_feedback.reveal.scheduler import CallbackScheduler

logger = logging.getLogger(__name__)

# callback(caller, request_id, *decrypted_values, proof)
RevealCallback = Callable[..., Any]


class DecryptionOracle(ABC):
    """External service that decrypts authorized handles off the caller's path."""

    principal: str

    @property
    @abstractmethod
    def public_key(self) -> Ed25519PublicKey:
        """Key the system uses to verify callback proofs."""

    @abstractmethod
    def submit(
        self,
        request_id: int,
        handles: Sequence[Ciphertext],
        *,
        requester: str,
        callback: RevealCallback,
    ) -> None:
        """Accept a request; must return without waiting for decryption."""

    def cancel(self, request_id: int) -> bool:
        """Withdraw a request that has not been answered yet.

        Returns *False* when the oracle cannot withdraw it; the system then
        rejects the late callback as an unknown request.
        """
        return False


class Relayer(DecryptionOracle):
    """Oracle that decrypts through the coprocessor ACL and calls back later.

    Decryption runs on the :class:`CallbackScheduler`'s executor after
    ``delay_seconds``. Values are signed with the relayer's Ed25519 key.
    """

    def __init__(
        self,
        coprocessor: Coprocessor,
        scheduler: CallbackScheduler,
        *,
        principal: str = DEFAULT_ORACLE_PRINCIPAL,
        delay_seconds: float = 0.05,
        private_key: Optional[Ed25519PrivateKey] = None,
    ) -> None:
        self.principal = principal
        self._fhe = coprocessor
        self._scheduler = scheduler
        self._delay = delay_seconds
        self._key = private_key or Ed25519PrivateKey.generate()
        # request id -> scheduler task id, until the task starts
        self._tasks: Dict[int, int] = {}
        self._delivered: Dict[int, threading.Event] = {}
        self._lock = threading.Lock()

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self._key.public_key()

    def submit(
        self,
        request_id: int,
        handles: Sequence[Ciphertext],
        *,
        requester: str,
        callback: RevealCallback,
    ) -> None:
        with self._lock:
            self._delivered.setdefault(request_id, threading.Event())
            self._tasks[request_id] = self._scheduler.schedule(
                self._delay, self._fulfil, request_id, tuple(handles), requester, callback
            )
        logger.debug("relayer_request_queued", extra={"request_id": request_id})

    def cancel(self, request_id: int) -> bool:
        with self._lock:
            task_id = self._tasks.pop(request_id, None)
            cancelled = task_id is not None and self._scheduler.cancel(task_id)
            if cancelled:
                # wake anyone blocked in wait_for
                self._delivered.setdefault(request_id, threading.Event()).set()
        if cancelled:
            logger.info("relayer_request_cancelled", extra={"request_id": request_id})
        return cancelled

    def pending_count(self) -> int:
        """Requests scheduled but not yet started."""
        with self._lock:
            return len(self._tasks)

    def wait_for(self, request_id: int, timeout: Optional[float] = None) -> bool:
        """Block until the callback for *request_id* has returned or was cancelled.

        The bookkeeping for *request_id* is dropped once this returns *True*.
        """
        with self._lock:
            event = self._delivered.setdefault(request_id, threading.Event())
        done = event.wait(timeout)
        if done:
            with self._lock:
                if self._delivered.get(request_id) is event:
                    del self._delivered[request_id]
        return done

    def _fulfil(
        self,
        request_id: int,
        handles: Sequence[Ciphertext],
        requester: str,
        callback: RevealCallback,
    ) -> None:
        with self._lock:
            self._tasks.pop(request_id, None)
        try:
            values = [int(self._fhe.decrypt(handle, requester)) for handle in handles]
            proof = sign_values(self._key, request_id, values)
            callback(self.principal, request_id, *values, proof)
            logger.info("relayer_callback_delivered", extra={"request_id": request_id})
        except Exception:  # pragma: no cover – ensure executor thread survives
            logger.exception("Relayer failed to fulfil request %s", request_id)
        finally:
            with self._lock:
                self._delivered.setdefault(request_id, threading.Event()).set()
