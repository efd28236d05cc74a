"""Read-only playback of a persisted step log."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, Sequence

from .types import STEP_ELIM, DrawResult, ParticipantRef, Step, Winner


@dataclass(frozen=True)
class ReplayFrame:
    """What a client shows after applying ``step``.

    ``eliminated`` and ``ranked`` accumulate every target seen so far, in
    step order.
    """

    step: Step
    eliminated: tuple[ParticipantRef, ...]
    ranked: tuple[ParticipantRef, ...]
    delay_ms: int
    is_last: bool


@dataclass(frozen=True)
class ReplayPlan:
    enabled: bool
    delay_ms: int
    frames: tuple[ReplayFrame, ...]
    winners: tuple[Winner, ...]


def iter_frames(steps: Sequence[Step], *, delay_ms: int = 0) -> Iterator[ReplayFrame]:
    """Yield one frame per stored step.

    No randomness is involved: frames are derived from ``steps`` alone, so
    replaying the same log always yields the same frames.
    """
    eliminated: list[ParticipantRef] = []
    ranked: list[ParticipantRef] = []
    total = len(steps)
    for position, step in enumerate(steps, start=1):
        if step.type == STEP_ELIM:
            eliminated.append(step.target)
        else:
            ranked.append(step.target)
        yield ReplayFrame(
            step=step,
            eliminated=tuple(eliminated),
            ranked=tuple(ranked),
            delay_ms=delay_ms,
            is_last=position == total,
        )


def build_replay(result: DrawResult) -> ReplayPlan:
    """Return the playback plan for a stored result."""
    config = result.config_snapshot
    return ReplayPlan(
        enabled=config.enable_replay,
        delay_ms=config.replay_speed,
        frames=tuple(iter_frames(result.steps, delay_ms=config.replay_speed)),
        winners=result.winners,
    )


__all__ = ["ReplayFrame", "ReplayPlan", "build_replay", "iter_frames"]
