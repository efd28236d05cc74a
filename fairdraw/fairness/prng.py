"""Deterministic Lehmer (Park-Miller) generator seeded from roster values."""

from __future__ import annotations

import math
from typing import Iterable

from .errors import EmptyPoolDrawError

MODULUS = 2_147_483_647
MULTIPLIER = 16_807


def normalize_seed(seed: int) -> int:
    """Fold an arbitrary integer seed into the generator's state range.

    Parameters
    ----------
    seed : int
        Raw seed, usually the sum of every participant value.

    Returns
    -------
    int
        A state in ``[1, MODULUS - 1]``. Zero and multiples of the modulus map
        to ``MODULUS - 1`` so the recurrence never collapses to zero.
    """

    if isinstance(seed, bool) or not isinstance(seed, int):
        raise TypeError("seed must be an integer")
    normalized = seed % MODULUS
    if normalized <= 0:
        normalized += MODULUS - 1
    return normalized


def derive_seed(values: Iterable[int]) -> int:
    """Return the draw seed for a roster: the plain sum of submitted values."""

    return sum(values)


class LehmerRandom:
    """Minimal-standard linear congruential generator.

    Only integer arithmetic and a single IEEE-754 division are involved, so a
    given seed yields the same sequence on every platform that implements the
    same recurrence.
    """

    def __init__(self, seed: int) -> None:
        self._state = normalize_seed(seed)

    @property
    def state(self) -> int:
        return self._state

    def next(self) -> int:
        """Advance the recurrence and return the new state in ``[1, MODULUS - 1]``."""
        self._state = (self._state * MULTIPLIER) % MODULUS
        return self._state

    def next_float(self) -> float:
        """Return a float in ``[0, 1)``."""
        return (self.next() - 1) / (MODULUS - 1)

    def range(self, n: int) -> int:
        """Return an index in ``[0, n - 1]``.

        Raises
        ------
        EmptyPoolDrawError
            If ``n`` is not positive. Callers check pool sizes first; this is
            the last line, not the expected error path.
        """
        if n <= 0:
            raise EmptyPoolDrawError(f"cannot draw from a pool of size {n}")
        return math.floor(self.next_float() * n)


__all__ = [
    "LehmerRandom",
    "MODULUS",
    "MULTIPLIER",
    "derive_seed",
    "normalize_seed",
]
