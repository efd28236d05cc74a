"""Plain value objects exchanged between the engine, storage and replay."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
from typing import Any, Mapping, Optional, Sequence

from .errors import InvalidConfigurationError

MODE_CLASSIC = "classic"
MODE_MULTI = "multi"
MODE_ELIM = "elim"
MODE_QUEUE = "queue"
MODES = (MODE_CLASSIC, MODE_MULTI, MODE_ELIM, MODE_QUEUE)

ORDER_FORWARD = "fwd"
ORDER_REVERSE = "rev"
ORDERS = (ORDER_FORWARD, ORDER_REVERSE)

STEP_WIN = "win"
STEP_ELIM = "elim"

MIN_VALUE = 0
MAX_VALUE = 100

DEFAULT_REPLAY_SPEED_MS = 1000

# Stored documents may still use the camelCase keys of the web client.
_CONFIG_KEY_ALIASES = {
    "allowRepeat": "allow_repeat",
    "survivorCount": "survivor_count",
    "enableReplay": "enable_replay",
    "replaySpeed": "replay_speed",
}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class Prize:
    """A named prize occupying ``count`` consecutive slots of the prize queue."""

    name: str
    count: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "count": self.count}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Prize":
        try:
            name = data["name"]
        except KeyError as exc:
            raise InvalidConfigurationError("prize entries need a name") from exc
        return cls(name=str(name), count=data.get("count", 1))


@dataclass(frozen=True)
class RouletteConfig:
    """Draw configuration snapshotted at the start of every draw.

    Attributes
    ----------
    mode : str
        One of ``classic``, ``multi``, ``elim`` or ``queue``.
    prizes : tuple[Prize, ...]
        Ordered prize list; only used in ``multi`` mode.
    order : str
        ``fwd`` consumes the flattened prize queue as listed, ``rev`` backwards.
    allow_repeat : bool
        Whether one participant may win several prize slots (``multi``).
    survivor_count : int
        Participants left standing after eliminations (``elim``). Clamped to
        the pool at draw time.
    enable_replay : bool
        Presentation hint: whether clients animate the step log.
    replay_speed : int
        Presentation hint: delay between replayed steps, in milliseconds.
    """

    mode: str = MODE_CLASSIC
    prizes: tuple[Prize, ...] = ()
    order: str = ORDER_FORWARD
    allow_repeat: bool = False
    survivor_count: int = 1
    enable_replay: bool = True
    replay_speed: int = DEFAULT_REPLAY_SPEED_MS

    def validate(self) -> None:
        """Raise :class:`InvalidConfigurationError` if the config cannot be drawn."""
        if self.mode not in MODES:
            raise InvalidConfigurationError(f"Unknown draw mode '{self.mode}'")
        if self.order not in ORDERS:
            raise InvalidConfigurationError(f"Unknown prize order '{self.order}'")
        if not isinstance(self.allow_repeat, bool):
            raise InvalidConfigurationError("allow_repeat must be a boolean")
        if not _is_int(self.survivor_count) or self.survivor_count < 1:
            raise InvalidConfigurationError("survivor_count must be a positive integer")
        if not _is_int(self.replay_speed) or self.replay_speed < 0:
            raise InvalidConfigurationError("replay_speed must be a non-negative integer")
        for prize in self.prizes:
            if not _is_int(prize.count) or prize.count < 0:
                raise InvalidConfigurationError(
                    f"Prize '{prize.name}' has an invalid count {prize.count!r}"
                )
        if self.mode == MODE_MULTI and self.slot_count == 0:
            raise InvalidConfigurationError("multi mode needs at least one prize slot")

    @property
    def slot_count(self) -> int:
        return sum(prize.count for prize in self.prizes)

    def prize_queue(self) -> list[str]:
        """Flatten ``prizes`` into one entry per slot, honouring ``order``."""
        queue = [prize.name for prize in self.prizes for _ in range(prize.count)]
        if self.order == ORDER_REVERSE:
            queue.reverse()
        return queue

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "prizes": [prize.to_dict() for prize in self.prizes],
            "order": self.order,
            "allow_repeat": self.allow_repeat,
            "survivor_count": self.survivor_count,
            "enable_replay": self.enable_replay,
            "replay_speed": self.replay_speed,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "RouletteConfig":
        """Build a config from a stored document, accepting camelCase keys."""
        if not data:
            return cls()
        normalized = {_CONFIG_KEY_ALIASES.get(key, key): value for key, value in data.items()}
        unknown = set(normalized) - set(cls.__dataclass_fields__)
        if unknown:
            raise InvalidConfigurationError(
                "Unknown configuration keys: " + ", ".join(sorted(unknown))
            )
        prizes = tuple(Prize.from_dict(item) for item in normalized.pop("prizes", ()) or ())
        return cls(prizes=prizes, **normalized)


@dataclass(frozen=True)
class ParticipantRef:
    """Identity of a participant as captured in steps and winners."""

    id: str
    uid: str
    name: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "uid": self.uid, "name": self.name}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ParticipantRef":
        return cls(id=str(data["id"]), uid=str(data["uid"]), name=str(data["name"]))


@dataclass(frozen=True)
class ParticipantSnapshot:
    """A roster entry as the engine sees it at draw time."""

    id: str
    uid: str
    name: str
    value: int
    joined_at: int = 0
    """Submission time in epoch milliseconds; defines arrival order."""

    def __post_init__(self) -> None:
        if not _is_int(self.value):
            raise TypeError("participant value must be an integer")
        if not MIN_VALUE <= self.value <= MAX_VALUE:
            raise ValueError(
                f"participant value must be within [{MIN_VALUE}, {MAX_VALUE}]"
            )

    def ref(self) -> ParticipantRef:
        return ParticipantRef(id=self.id, uid=self.uid, name=self.name)


@dataclass(frozen=True)
class Step:
    """One entry of the replayable step log.

    ``roll`` is the raw index drawn and ``pool_size`` the size of the pool it
    was drawn from; ``label`` and ``detail`` are display text.
    """

    type: str
    index: int
    target: ParticipantRef
    label: str
    detail: str
    roll: int
    pool_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "index": self.index,
            "target": self.target.to_dict(),
            "label": self.label,
            "detail": self.detail,
            "roll": self.roll,
            "pool_size": self.pool_size,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Step":
        return cls(
            type=data["type"],
            index=int(data["index"]),
            target=ParticipantRef.from_dict(data["target"]),
            label=data["label"],
            detail=data["detail"],
            roll=int(data["roll"]),
            pool_size=int(data["pool_size"]),
        )


@dataclass(frozen=True)
class Winner:
    participant: ParticipantRef
    rank: int
    prize: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant": self.participant.to_dict(),
            "rank": self.rank,
            "prize": self.prize,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Winner":
        return cls(
            participant=ParticipantRef.from_dict(data["participant"]),
            rank=int(data["rank"]),
            prize=data.get("prize"),
        )


@dataclass(frozen=True)
class DrawResult:
    """The single source of truth for a finalized draw.

    Attributes
    ----------
    seed : int
        Sum of every participant value at draw time.
    steps : tuple[Step, ...]
        Step log in generation order.
    winners : tuple[Winner, ...]
        Winners in rank order (slot order for multi-prize draws).
    config_snapshot : RouletteConfig
        Configuration the draw was computed with.
    participant_count : int
        Roster size at draw time.
    """

    seed: int
    steps: tuple[Step, ...] = ()
    winners: tuple[Winner, ...] = ()
    config_snapshot: RouletteConfig = field(default_factory=RouletteConfig)
    participant_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.steps and not self.winners

    def to_dict(self) -> dict[str, Any]:
        return {
            "seed": self.seed,
            "steps": [step.to_dict() for step in self.steps],
            "winners": [winner.to_dict() for winner in self.winners],
            "config_snapshot": self.config_snapshot.to_dict(),
            "participant_count": self.participant_count,
        }

    def canonical_json(self) -> str:
        """Return a byte-stable JSON encoding used to compare re-derived draws."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DrawResult":
        return cls(
            seed=int(data["seed"]),
            steps=tuple(Step.from_dict(item) for item in data.get("steps", ())),
            winners=tuple(Winner.from_dict(item) for item in data.get("winners", ())),
            config_snapshot=RouletteConfig.from_dict(data.get("config_snapshot")),
            participant_count=int(data.get("participant_count", 0)),
        )


def order_roster(roster: Sequence[ParticipantSnapshot]) -> list[ParticipantSnapshot]:
    """Return ``roster`` in arrival order; ties keep their given order."""

    return sorted(roster, key=lambda participant: participant.joined_at)


__all__ = [
    "DrawResult",
    "MODES",
    "MODE_CLASSIC",
    "MODE_ELIM",
    "MODE_MULTI",
    "MODE_QUEUE",
    "ORDERS",
    "ORDER_FORWARD",
    "ORDER_REVERSE",
    "ParticipantRef",
    "ParticipantSnapshot",
    "Prize",
    "RouletteConfig",
    "STEP_ELIM",
    "STEP_WIN",
    "Step",
    "Winner",
    "order_roster",
]
