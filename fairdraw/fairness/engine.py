"""Pure draw engine turning a roster snapshot and a config into a result."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .modes import AlgorithmRegistry, DEFAULT_MODE_REGISTRY
from .prng import LehmerRandom, derive_seed
from .types import DrawResult, ParticipantSnapshot, RouletteConfig, order_roster

logger = logging.getLogger(__name__)


class FairnessEngine:
    """Engine that seeds the PRNG from the roster and runs the configured mode.

    The engine holds no draw state between calls: every call to :meth:`draw`
    builds a fresh generator from the roster it is given.
    """

    def __init__(self, *, registry: Optional[AlgorithmRegistry] = None) -> None:
        """Create an engine.

        Parameters
        ----------
        registry : Optional[AlgorithmRegistry], default: None
            Custom registry of draw modes. Typically omitted, in which case
            the default registry is used.
        """

        self._registry = registry or DEFAULT_MODE_REGISTRY

    def draw(
        self,
        roster: Iterable[ParticipantSnapshot],
        config: RouletteConfig,
    ) -> DrawResult:
        """Compute the draw for ``roster`` under ``config``.

        Parameters
        ----------
        roster : Iterable[ParticipantSnapshot]
            Every participant of the project. Entries are put in arrival
            order (``joined_at``) before drawing.
        config : RouletteConfig
            Configuration snapshot; it is copied verbatim into the result.

        Returns
        -------
        DrawResult
            Seed, step log and winners. An empty roster yields a result with
            no steps and no winners.

        Notes
        -----
        1. Validate the configuration before any PRNG state is consumed.
        2. Order the roster and compute the seed as the sum of values, once.
        3. Run the mode's selector with a single generator for all steps.

        Raises
        ------
        InvalidConfigurationError
            If the configuration cannot be drawn.
        LoopGuardExceededError
            If an elimination loop stops making progress.
        """
        config.validate()
        algorithm = self._registry.get(config.mode)

        pool = order_roster(list(roster))
        seed = derive_seed(p.value for p in pool)
        if not pool:
            logger.info("Draw skipped: empty roster (mode=%s)", config.mode)
            return DrawResult(seed=seed, config_snapshot=config, participant_count=0)

        rng = LehmerRandom(seed)
        outcome = algorithm.select(pool, config, seed, rng)
        logger.info(
            "Draw computed: mode=%s seed=%d participants=%d steps=%d winners=%d",
            config.mode,
            seed,
            len(pool),
            len(outcome.steps),
            len(outcome.winners),
        )
        return DrawResult(
            seed=seed,
            steps=outcome.steps,
            winners=outcome.winners,
            config_snapshot=config,
            participant_count=len(pool),
        )


def draw(
    roster: Iterable[ParticipantSnapshot],
    config: RouletteConfig,
    *,
    registry: Optional[AlgorithmRegistry] = None,
) -> DrawResult:
    """Convenience wrapper around :meth:`FairnessEngine.draw`."""

    return FairnessEngine(registry=registry).draw(roster, config)


__all__ = ["FairnessEngine", "draw"]
