"""Oblivious helpers over encrypted counters.

Both functions issue the same sequence of coprocessor calls for every input,
so nothing about the encrypted values leaks through control flow. Arg-max
updates the best count and the best id through ``select`` on every step.
"""
from __future__ import annotations

from typing import Dict, Mapping, Sequence, Tuple

from confidential_feedback.fhe.capability import Coprocessor
from confidential_feedback.fhe.types import COUNTER_BITS, RATING_BITS, Ciphertext


def oblivious_argmax(
    fhe: Coprocessor,
    counters: Mapping[int, Ciphertext],
    *,
    id_bits: int = RATING_BITS,
) -> Tuple[Ciphertext, Ciphertext]:
    """Return encrypted ``(best_id, best_count)`` over *counters*.

    Candidates are visited in ascending id order and only a strictly greater
    count replaces the best so far, so ties resolve to the lowest id. The
    scan starts from encrypted ``(0, 0)``; an all-zero input yields id 0.
    """
    if not counters:
        raise ValueError("counters must not be empty")
    widths = {ct.bits for ct in counters.values()}
    if len(widths) != 1:
        raise ValueError(f"counters must share one width, got {sorted(widths)}")

    best_count = fhe.encrypt(0, widths.pop())
    best_id = fhe.encrypt(0, id_bits)
    for candidate_id in sorted(counters):
        count = counters[candidate_id]
        is_greater = fhe.gt(count, best_count)
        best_count = fhe.select(is_greater, count, best_count)
        best_id = fhe.select(is_greater, fhe.encrypt(candidate_id, id_bits), best_id)
    return best_id, best_count


def oblivious_one_hot(
    fhe: Coprocessor,
    value: Ciphertext,
    choices: Sequence[int],
    *,
    bits: int = COUNTER_BITS,
) -> Dict[int, Ciphertext]:
    """Return ``{choice: Enc(value == choice)}`` as *bits*-wide counters.

    Equality is built from two comparisons per choice,
    ``value > choice - 1`` and ``not value > choice``, so every choice costs
    the same coprocessor calls whatever *value* holds.
    """
    if not choices:
        raise ValueError("choices must not be empty")
    if min(choices) < 1:
        raise ValueError("choices must be positive integers")
    one = fhe.encrypt(1, bits)
    zero = fhe.encrypt(0, bits)
    indicators: Dict[int, Ciphertext] = {}
    for choice in sorted(choices):
        at_least = fhe.gt(value, fhe.encrypt(choice - 1, value.bits))
        above = fhe.gt(value, fhe.encrypt(choice, value.bits))
        indicators[choice] = fhe.select(at_least, fhe.select(above, zero, one), zero)
    return indicators
