"""Chart data describing how the seed builds up as participants join."""

from __future__ import annotations

from typing import Iterable

from .types import ParticipantSnapshot, order_roster


def seed_progression(roster: Iterable[ParticipantSnapshot]) -> list[tuple[int, int]]:
    """Return ``(x, running_sum % (x + 1))`` for each participant in arrival order.

    The last point's ``y`` equals the classic winner index for the full roster.
    """
    points: list[tuple[int, int]] = []
    running = 0
    for x, participant in enumerate(order_roster(list(roster))):
        running += participant.value
        points.append((x, running % (x + 1)))
    return points


__all__ = ["seed_progression"]
