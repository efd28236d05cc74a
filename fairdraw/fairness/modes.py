"""Selection algorithms for the supported draw modes."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Dict, Optional, Sequence

from .errors import LoopGuardExceededError
from .prng import LehmerRandom
from .types import (
    MODE_CLASSIC,
    MODE_ELIM,
    MODE_MULTI,
    MODE_QUEUE,
    STEP_ELIM,
    STEP_WIN,
    ParticipantSnapshot,
    RouletteConfig,
    Step,
    Winner,
)

logger = logging.getLogger(__name__)

LOOP_GUARD_LIMIT = 1000


@dataclass(frozen=True)
class SelectionOutcome:
    """Steps and winners produced by one selection algorithm."""

    steps: tuple[Step, ...]
    winners: tuple[Winner, ...]


class StepLog:
    """Accumulates steps with 1-based indices alongside the winners list."""

    def __init__(self) -> None:
        self._steps: list[Step] = []
        self._winners: list[Winner] = []

    def __len__(self) -> int:
        return len(self._steps)

    def win(
        self,
        participant: ParticipantSnapshot,
        *,
        rank: int,
        label: str,
        detail: str,
        roll: int,
        pool_size: int,
        prize: Optional[str] = None,
    ) -> None:
        ref = participant.ref()
        self._append(STEP_WIN, ref, label, detail, roll, pool_size)
        self._winners.append(Winner(participant=ref, rank=rank, prize=prize))

    def eliminate(
        self,
        participant: ParticipantSnapshot,
        *,
        label: str,
        detail: str,
        roll: int,
        pool_size: int,
    ) -> None:
        self._append(STEP_ELIM, participant.ref(), label, detail, roll, pool_size)

    def outcome(self) -> SelectionOutcome:
        return SelectionOutcome(steps=tuple(self._steps), winners=tuple(self._winners))

    def _append(self, step_type, target, label, detail, roll, pool_size) -> None:
        step = Step(
            type=step_type,
            index=len(self._steps) + 1,
            target=target,
            label=label,
            detail=detail,
            roll=roll,
            pool_size=pool_size,
        )
        logger.debug("step %d %s %s: %s", step.index, step_type, target.id, detail)
        self._steps.append(step)


Selector = Callable[
    [Sequence[ParticipantSnapshot], RouletteConfig, int, LehmerRandom],
    SelectionOutcome,
]


@dataclass(frozen=True)
class DrawAlgorithm:
    """Definition of a draw mode.

    Attributes
    ----------
    key : str
        Registry key; matches :attr:`RouletteConfig.mode`.
    selector : Selector
        Callable receiving the ordered pool, the config, the seed and the
        shared PRNG, and returning the selection outcome. The pool is never
        empty when the selector runs.
    description : Optional[str]
        Human-readable summary of the mode.
    """

    key: str
    selector: Selector
    description: Optional[str] = None

    def select(
        self,
        pool: Sequence[ParticipantSnapshot],
        config: RouletteConfig,
        seed: int,
        rng: LehmerRandom,
    ) -> SelectionOutcome:
        return self.selector(pool, config, seed, rng)


class AlgorithmRegistry:
    """Mutable registry mapping draw mode keys to algorithms."""

    def __init__(self) -> None:
        self._algorithms: Dict[str, DrawAlgorithm] = {}

    def register(self, algorithm: DrawAlgorithm, *, replace: bool = False) -> None:
        """Register a draw algorithm under its key.

        Parameters
        ----------
        algorithm : DrawAlgorithm
            Algorithm to add to the registry.
        replace : bool, default: False
            When ``True`` an existing registration with the same key is
            overwritten. Otherwise a duplicate raises :class:`ValueError`.
        """
        if not replace and algorithm.key in self._algorithms:
            raise ValueError(f"Draw mode '{algorithm.key}' is already registered")
        self._algorithms[algorithm.key] = algorithm

    def get(self, key: str) -> DrawAlgorithm:
        """Return the algorithm registered under ``key``."""
        try:
            return self._algorithms[key]
        except KeyError as exc:
            raise KeyError(f"Unknown draw mode '{key}'") from exc

    def available_modes(self) -> Dict[str, DrawAlgorithm]:
        """Return a copy of the registered algorithms keyed by mode."""
        return dict(self._algorithms)


def _select_classic(pool, config, seed, rng) -> SelectionOutcome:
    size = len(pool)
    winner_index = seed % size
    log = StepLog()
    log.win(
        pool[winner_index],
        rank=1,
        label="Winner",
        detail=f"{winner_index} / ({seed} % {size})",
        roll=winner_index,
        pool_size=size,
    )
    return log.outcome()


def _select_multi(pool, config, seed, rng) -> SelectionOutcome:
    queue = config.prize_queue()
    awarded: set[str] = set()
    log = StepLog()
    for rank, prize_name in enumerate(queue, start=1):
        if config.allow_repeat:
            eligible = list(pool)
        else:
            eligible = [p for p in pool if p.id not in awarded]
        if not eligible:
            logger.debug("slot %d (%s) skipped: no eligible participants", rank, prize_name)
            continue
        idx = rng.range(len(eligible))
        winner = eligible[idx]
        log.win(
            winner,
            rank=rank,
            prize=prize_name,
            label=prize_name,
            detail=f"slot {rank}/{len(queue)}: {idx} of {len(eligible)}",
            roll=idx,
            pool_size=len(eligible),
        )
        awarded.add(winner.id)
    return log.outcome()


def _rank_remaining(remaining, rng, log, *, label_prefix, limit) -> None:
    """Draw everyone left in ``remaining`` in turn, recording one win per draw."""
    rank = 0
    while remaining:
        rank += 1
        if rank > limit:
            raise LoopGuardExceededError(
                f"ranking did not finish within {limit} iterations"
            )
        size = len(remaining)
        idx = rng.range(size)
        chosen = remaining.pop(idx)
        if len(remaining) != size - 1:
            raise LoopGuardExceededError("ranking pool failed to shrink")
        log.win(
            chosen,
            rank=rank,
            label=f"{label_prefix}{rank}",
            detail=f"{idx} of {size}",
            roll=idx,
            pool_size=size,
        )


def clamp_survivor_count(requested: int, pool_size: int) -> int:
    """Clamp ``requested`` so that at least one participant is eliminated."""
    return max(1, min(requested, pool_size - 1))


def _select_elim(pool, config, seed, rng) -> SelectionOutcome:
    remaining = list(pool)
    survivors = clamp_survivor_count(config.survivor_count, len(remaining))
    limit = max(LOOP_GUARD_LIMIT, len(remaining))
    log = StepLog()

    round_no = 0
    while len(remaining) > survivors:
        round_no += 1
        if round_no > limit:
            raise LoopGuardExceededError(
                f"elimination did not finish within {limit} iterations"
            )
        size = len(remaining)
        idx = rng.range(size)
        eliminated = remaining.pop(idx)
        if len(remaining) != size - 1:
            raise LoopGuardExceededError("elimination pool failed to shrink")
        log.eliminate(
            eliminated,
            label=f"Round {round_no}",
            detail=f"{idx} of {size}",
            roll=idx,
            pool_size=size,
        )

    _rank_remaining(remaining, rng, log, label_prefix="Rank ", limit=limit)
    return log.outcome()


def _select_queue(pool, config, seed, rng) -> SelectionOutcome:
    remaining = list(pool)
    log = StepLog()
    _rank_remaining(
        remaining,
        rng,
        log,
        label_prefix="#",
        limit=max(LOOP_GUARD_LIMIT, len(remaining)),
    )
    return log.outcome()


DEFAULT_MODE_REGISTRY = AlgorithmRegistry()
DEFAULT_MODE_REGISTRY.register(
    DrawAlgorithm(
        key=MODE_CLASSIC,
        selector=_select_classic,
        description="Single winner at index seed % roster size; no PRNG draw.",
    )
)
DEFAULT_MODE_REGISTRY.register(
    DrawAlgorithm(
        key=MODE_MULTI,
        selector=_select_multi,
        description=(
            "One PRNG draw per prize slot; without repeats, earlier winners "
            "leave the pool and slots with nobody left are skipped."
        ),
    )
)
DEFAULT_MODE_REGISTRY.register(
    DrawAlgorithm(
        key=MODE_ELIM,
        selector=_select_elim,
        description=(
            "Eliminate at random down to the survivor count, then rank the "
            "survivors by further draws."
        ),
    )
)
DEFAULT_MODE_REGISTRY.register(
    DrawAlgorithm(
        key=MODE_QUEUE,
        selector=_select_queue,
        description="Rank every participant by successive draws to form a queue.",
    )
)

__all__ = [
    "AlgorithmRegistry",
    "DEFAULT_MODE_REGISTRY",
    "DrawAlgorithm",
    "LOOP_GUARD_LIMIT",
    "SelectionOutcome",
    "StepLog",
    "clamp_survivor_count",
]
