"""
Secret Santa Derangement Module - Pairing Algorithm

RESPONSIBILITIES:
- Random permutation with no fixed points (nobody draws themselves)
- Pairing integrity validation

ISOLATION:
- Pure algorithm logic (no Discord dependencies, no I/O)
- Uses secrets.SystemRandom for the shuffle
"""

import secrets
from typing import Dict, Hashable, List, Sequence, TypeVar

T = TypeVar("T", bound=Hashable)

MAX_ATTEMPTS = 100


def _shuffle_and_fix(items: Sequence[T], rng: secrets.SystemRandom) -> List[T]:
    result = list(items)
    rng.shuffle(result)

    # Break each fixed point by swapping with the next slot (wrapping to 0)
    last = len(result) - 1
    for i in range(len(result)):
        if result[i] == items[i]:
            swap_idx = 0 if i == last else i + 1
            result[i], result[swap_idx] = result[swap_idx], result[i]
    return result


def _has_fixed_point(items: Sequence[T], result: Sequence[T]) -> bool:
    return any(a == b for a, b in zip(items, result))


def generate_derangement(items: Sequence[T], max_attempts: int = MAX_ATTEMPTS) -> List[T]:
    """
    Produce a permutation of `items` where no element stays in its position.

    ALGORITHM:
    1. Uniformly shuffle the input
    2. Swap every fixed point with the next position (wrapping at the end)
    3. Repeat until no fixed point remains, at most `max_attempts` times

    If the bound is exhausted the result is built by rotating a fresh
    shuffle by one position, which has no fixed points for distinct items.
    Two elements always come out swapped on the first attempt.

    Raises:
        ValueError: fewer than 2 items, or duplicate items
    """
    if len(items) < 2:
        raise ValueError("Need at least 2 elements for a derangement")
    if len(set(items)) != len(items):
        raise ValueError("Derangement input must not contain duplicates")

    secure_random = secrets.SystemRandom()

    for _ in range(max_attempts):
        result = _shuffle_and_fix(items, secure_random)
        if not _has_fixed_point(items, result):
            return result

    # Rotation fallback: position of each item in `order` maps to the next one
    order = list(items)
    secure_random.shuffle(order)
    successor = {order[i]: order[(i + 1) % len(order)] for i in range(len(order))}
    result = [successor[item] for item in items]
    validate_pairing_integrity(dict(zip(items, result)), list(items))
    return result


def validate_pairing_integrity(pairings: Dict[T, T], participants: List[T]) -> None:
    """
    Ensure a pairing map is a bijection over `participants` with no
    self-assignment.

    Raises:
        ValueError: If any integrity check fails
    """
    if not pairings:
        raise ValueError("No pairings provided")

    if len(pairings) != len(participants):
        raise ValueError(f"Pairing count mismatch: {len(pairings)} pairings for {len(participants)} participants")

    expected = set(participants)
    givers = set(pairings.keys())
    if givers != expected:
        raise ValueError(f"Giver mismatch: missing {expected - givers}, extra {givers - expected}")

    receivers = list(pairings.values())
    if set(receivers) != expected:
        raise ValueError(f"Receiver mismatch: missing {expected - set(receivers)}, extra {set(receivers) - expected}")

    if len(receivers) != len(set(receivers)):
        counts: Dict[T, int] = {}
        for receiver in receivers:
            counts[receiver] = counts.get(receiver, 0) + 1
        duplicates = {r: c for r, c in counts.items() if c > 1}
        raise ValueError(f"Duplicate receivers: {duplicates}")

    for giver, receiver in pairings.items():
        if giver == receiver:
            raise ValueError(f"Self-assignment detected: {giver} → {receiver}")
