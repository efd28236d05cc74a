"""Projects owning a roster, a draw configuration and at most one result."""

from __future__ import annotations

from datetime import datetime
import json
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    func,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, object_session, relationship

from ..db.utils import dt_iso, utcnow
from ..fairness.types import MODE_QUEUE, RouletteConfig
from .base import Base, ID_TYPE

if TYPE_CHECKING:
    from ..auth import Identity
    from .draw_record import DrawRecord
    from .participant import RouletteParticipant

PROJECT_TYPE_ROULETTE = "roulette"
PROJECT_TYPE_QUEUE = "queue"
PROJECT_TYPES = (PROJECT_TYPE_ROULETTE, PROJECT_TYPE_QUEUE)

STATUS_ACTIVE = "active"
STATUS_STOPPED = "stopped"
STATUS_FINISHED = "finished"
STATUSES = (STATUS_ACTIVE, STATUS_STOPPED, STATUS_FINISHED)


class Project(Base):
    """A roulette or queue project that participants join and owners draw."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    """Primary key."""

    title: Mapped[str] = mapped_column(String(200), nullable=False)
    """Display title shown on the dashboard."""

    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PROJECT_TYPE_ROULETTE
    )
    """``roulette`` or ``queue``; queue projects always draw in queue mode."""

    creator_uid: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    """Auth-provider uid of the owner."""

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_ACTIVE)
    """``active``, ``stopped`` (paused) or ``finished`` (terminal)."""

    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    """Serialized :class:`RouletteConfig`; ``None`` means defaults."""

    config_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    """Bumped on every accepted configuration write."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    """Set in the same write that attaches the draw record."""

    participants: Mapped[list["RouletteParticipant"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="RouletteParticipant.joined_at",
    )
    draw_record: Mapped[Optional["DrawRecord"]] = relationship(
        back_populates="project",
        cascade="all, delete-orphan",
        uselist=False,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active','stopped','finished')", name="status_enum"
        ),
        CheckConstraint("type IN ('roulette','queue')", name="type_enum"),
        Index("ix_projects_status", "status"),
    )

    def __init__(
        self,
        *,
        title: str,
        creator_uid: str,
        type: str = PROJECT_TYPE_ROULETTE,
        status: str = STATUS_ACTIVE,
        config: Optional[dict] = None,
        config_version: int = 1,
        created_at: Optional[datetime] = None,
    ) -> None:
        if type not in PROJECT_TYPES:
            raise ValueError(f"Unknown project type '{type}'")
        if status not in STATUSES:
            raise ValueError(f"Unknown project status '{status}'")
        self.title = title
        self.creator_uid = creator_uid
        self.type = type
        self.status = status
        self.config = config
        self.config_version = config_version
        if created_at is not None:
            self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<Project(id={self.id}, type='{self.type}', status='{self.status}', "
            f"config_version={self.config_version})>"
        )

    @classmethod
    def get(cls, session: Session, project_id: int) -> Optional["Project"]:
        return session.scalar(select(cls).where(cls.id == project_id))

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    @property
    def is_finished(self) -> bool:
        return self.status == STATUS_FINISHED

    @property
    def roulette_config(self) -> RouletteConfig:
        """Return the stored configuration; queue projects are forced to queue mode."""
        config = RouletteConfig.from_dict(self.config)
        if self.type == PROJECT_TYPE_QUEUE and config.mode != MODE_QUEUE:
            data = config.to_dict()
            data["mode"] = MODE_QUEUE
            config = RouletteConfig.from_dict(data)
        return config

    def is_manageable_by(self, identity: "Identity") -> bool:
        """Whether ``identity`` may configure and draw this project."""
        return identity.is_admin or identity.uid == self.creator_uid

    def participant_count(self) -> int:
        """Count roster entries with a query so pending collection state is ignored."""
        session = object_session(self)
        if session is None or self.id is None:
            return len(self.participants)
        from .participant import RouletteParticipant

        return session.scalar(
            select(func.count(RouletteParticipant.id)).where(
                RouletteParticipant.project_id == self.id
            )
        ) or 0

    def to_json(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "creator_uid": self.creator_uid,
            "status": self.status,
            "config": self.roulette_config.to_dict(),
            "config_version": self.config_version,
            "participant_count": self.participant_count(),
            "created_at": dt_iso(self.created_at),
            "finished_at": dt_iso(self.finished_at),
        }

    def to_json_str(self) -> str:
        return json.dumps(self.to_json(), ensure_ascii=False)


__all__ = [
    "PROJECT_TYPES",
    "PROJECT_TYPE_QUEUE",
    "PROJECT_TYPE_ROULETTE",
    "Project",
    "STATUSES",
    "STATUS_ACTIVE",
    "STATUS_FINISHED",
    "STATUS_STOPPED",
]
