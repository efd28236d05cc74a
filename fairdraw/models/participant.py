"""Roster entries submitted by users joining a project."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    select,
    text,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from ..db.utils import dt_iso, utcnow
from ..fairness.types import ParticipantSnapshot
from .base import Base, ID_TYPE

if TYPE_CHECKING:
    from .project import Project


def _epoch_millis(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        # SQLite returns naive datetimes; they were written as UTC.
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


class RouletteParticipant(Base):
    """One user's entry in a project's roster.

    Only ``is_winner`` and ``queue_order`` change after creation, and only
    when a draw is recorded.
    """

    __tablename__ = "roulette_participants"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    project_id: Mapped[int] = mapped_column(
        ID_TYPE, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    uid: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    is_winner: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    queue_order: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    project: Mapped["Project"] = relationship(back_populates="participants")

    __table_args__ = (
        UniqueConstraint("project_id", "uid", name="uq_roulette_participant_per_user"),
        CheckConstraint("value >= 0 AND value <= 100", name="value_range"),
        Index("ix_roulette_participants_project_joined", "project_id", "joined_at"),
    )

    def __init__(
        self,
        *,
        entry_id: str,
        uid: str,
        name: str,
        value: int,
        project: Optional["Project"] = None,
        project_id: Optional[int] = None,
        joined_at: Optional[datetime] = None,
    ) -> None:
        self.entry_id = entry_id
        self.uid = uid
        self.name = name
        self.value = value
        self.is_winner = False
        if project is not None:
            self.project = project
        if project_id is not None:
            self.project_id = project_id
        if joined_at is not None:
            self.joined_at = joined_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<RouletteParticipant(id={self.id}, project_id={self.project_id}, "
            f"uid='{self.uid}', value={self.value}, is_winner={self.is_winner})>"
        )

    @classmethod
    def get_for_user(
        cls, session: Session, project_id: int, uid: str
    ) -> Optional["RouletteParticipant"]:
        """Return the entry ``uid`` holds in ``project_id``, if any."""

        return session.scalar(
            select(cls).where(cls.project_id == project_id, cls.uid == uid)
        )

    @classmethod
    def roster(cls, session: Session, project_id: int) -> list["RouletteParticipant"]:
        """Return every entry of ``project_id`` in arrival order."""

        stmt = (
            select(cls)
            .where(cls.project_id == project_id)
            .order_by(cls.joined_at.asc(), cls.id.asc())
        )
        return list(session.scalars(stmt).all())

    def snapshot(self) -> ParticipantSnapshot:
        return ParticipantSnapshot(
            id=self.entry_id,
            uid=self.uid,
            name=self.name,
            value=self.value,
            joined_at=_epoch_millis(self.joined_at),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "uid": self.uid,
            "name": self.name,
            "value": self.value,
            "joined_at": dt_iso(self.joined_at),
            "is_winner": self.is_winner,
            "queue_order": self.queue_order,
        }


__all__ = ["RouletteParticipant"]
