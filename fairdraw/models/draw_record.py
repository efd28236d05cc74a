"""Persisted draw results."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    event,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import dt_iso, utcnow
from ..fairness.types import DrawResult
from .base import Base, ID_TYPE

if TYPE_CHECKING:
    from .project import Project


class DrawRecord(Base):
    """Immutable record of the one draw a project may have.

    The unique constraint on ``project_id`` backs the conditional status
    update performed by :func:`fairdraw.workflows.record_draw`.
    """

    __tablename__ = "draw_records"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Surrogate primary key."""

    project_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    """Project the draw belongs to."""

    seed: Mapped[int] = mapped_column(BigInteger, nullable=False)
    """Sum of participant values used to seed the PRNG."""

    participant_count: Mapped[int] = mapped_column(Integer, nullable=False)
    """Roster size at draw time."""

    config_version: Mapped[int] = mapped_column(Integer, nullable=False)
    """Project configuration version the draw was computed from."""

    config_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)
    """Configuration copied verbatim from the draw input."""

    steps: Mapped[list] = mapped_column(JSON, nullable=False)
    """Step log in generation order."""

    winners: Mapped[list] = mapped_column(JSON, nullable=False)
    """Winners in rank order."""

    drawn_by_uid: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    """Auth-provider uid of the user who triggered the draw."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    """Timestamp when the draw was recorded."""

    project: Mapped["Project"] = relationship(back_populates="draw_record")

    __table_args__ = (
        UniqueConstraint("project_id", name="uq_draw_records_project"),
    )

    def __init__(
        self,
        *,
        project_id: int,
        seed: int,
        participant_count: int,
        config_version: int,
        config_snapshot: dict,
        steps: list,
        winners: list,
        drawn_by_uid: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.project_id = project_id
        self.seed = seed
        self.participant_count = participant_count
        self.config_version = config_version
        self.config_snapshot = config_snapshot
        self.steps = steps
        self.winners = winners
        self.drawn_by_uid = drawn_by_uid
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<DrawRecord(id={self.id}, project_id={self.project_id}, "
            f"seed={self.seed}, winners={len(self.winners or [])})>"
        )

    @classmethod
    def from_result(
        cls,
        project_id: int,
        result: DrawResult,
        *,
        config_version: int,
        drawn_by_uid: Optional[str] = None,
    ) -> "DrawRecord":
        payload = result.to_dict()
        return cls(
            project_id=project_id,
            seed=result.seed,
            participant_count=result.participant_count,
            config_version=config_version,
            config_snapshot=payload["config_snapshot"],
            steps=payload["steps"],
            winners=payload["winners"],
            drawn_by_uid=drawn_by_uid,
        )

    @classmethod
    def get_for_project(cls, session: Session, project_id: int) -> Optional["DrawRecord"]:
        return session.scalar(select(cls).where(cls.project_id == project_id))

    def to_result(self) -> DrawResult:
        """Rebuild the engine's value object from the stored columns."""
        return DrawResult.from_dict(
            {
                "seed": self.seed,
                "steps": self.steps,
                "winners": self.winners,
                "config_snapshot": self.config_snapshot,
                "participant_count": self.participant_count,
            }
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            **self.to_result().to_dict(),
            "config_version": self.config_version,
            "drawn_by_uid": self.drawn_by_uid,
            "created_at": dt_iso(self.created_at),
        }


@event.listens_for(DrawRecord, "before_update")
def _reject_draw_record_update(mapper, connection, target: DrawRecord) -> None:
    raise ValueError(f"Draw record {target.id} is immutable once written")


__all__ = ["DrawRecord"]
