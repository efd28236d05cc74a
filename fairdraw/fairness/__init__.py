"""Deterministic fairness engine for roulette, raffle and queue draws."""

from .engine import FairnessEngine, draw
from .errors import (
    AlreadyFinalizedError,
    EmptyPoolDrawError,
    FairDrawError,
    InvalidConfigurationError,
    LoopGuardExceededError,
    PermissionDeniedError,
    ProjectStateError,
    StaleConfigurationError,
)
from .modes import AlgorithmRegistry, DEFAULT_MODE_REGISTRY, DrawAlgorithm
from .prng import LehmerRandom, derive_seed, normalize_seed
from .replay import ReplayFrame, ReplayPlan, build_replay, iter_frames
from .trace import seed_progression
from .types import (
    DrawResult,
    ParticipantRef,
    ParticipantSnapshot,
    Prize,
    RouletteConfig,
    Step,
    Winner,
)

__all__ = [
    "AlgorithmRegistry",
    "AlreadyFinalizedError",
    "DEFAULT_MODE_REGISTRY",
    "DrawAlgorithm",
    "DrawResult",
    "EmptyPoolDrawError",
    "FairDrawError",
    "FairnessEngine",
    "InvalidConfigurationError",
    "LehmerRandom",
    "LoopGuardExceededError",
    "ParticipantRef",
    "ParticipantSnapshot",
    "PermissionDeniedError",
    "Prize",
    "ProjectStateError",
    "ReplayFrame",
    "ReplayPlan",
    "RouletteConfig",
    "StaleConfigurationError",
    "Step",
    "Winner",
    "build_replay",
    "derive_seed",
    "draw",
    "iter_frames",
    "normalize_seed",
    "seed_progression",
]
