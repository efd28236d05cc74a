import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .auth import Identity
from .fairness.engine import FairnessEngine
from .fairness.errors import (
    AlreadyFinalizedError,
    PermissionDeniedError,
    ProjectStateError,
    StaleConfigurationError,
)
from .fairness.modes import AlgorithmRegistry
from .fairness.replay import ReplayPlan, build_replay
from .fairness.types import (
    MAX_VALUE,
    MIN_VALUE,
    MODE_CLASSIC,
    MODE_QUEUE,
    DrawResult,
    ParticipantSnapshot,
    RouletteConfig,
)
from .models import DrawRecord, Project, RouletteParticipant
from .models.project import (
    PROJECT_TYPES,
    PROJECT_TYPE_QUEUE,
    PROJECT_TYPE_ROULETTE,
    STATUS_ACTIVE,
    STATUS_FINISHED,
    STATUS_STOPPED,
)
from .db.utils import utcnow
from .models.utils import generate_entry_id

logger = logging.getLogger(__name__)

OUTCOME_RECORDED = "recorded"
OUTCOME_ALREADY_FINALIZED = "already_finalized"
OUTCOME_EMPTY_ROSTER = "empty_roster"

NAME_MAX_LENGTH = 100


@dataclass(frozen=True)
class RosterSnapshot:
    """Everything a draw reads, captured once at the start of the draw."""

    project_id: int
    status: str
    config: RouletteConfig
    config_version: int
    participants: tuple[ParticipantSnapshot, ...]

    @property
    def seed(self) -> int:
        return sum(p.value for p in self.participants)


@dataclass(frozen=True)
class DrawOutcome:
    """Result of :func:`run_draw`.

    ``status`` is ``recorded`` when this call finalized the project,
    ``already_finalized`` when another call got there first (``result`` is
    then the stored one), and ``empty_roster`` when nothing was drawn.
    """

    status: str
    result: Optional[DrawResult]
    record: Optional[DrawRecord] = None

    @property
    def recorded(self) -> bool:
        return self.status == OUTCOME_RECORDED


def _require_project(session: Session, project_id: int) -> Project:
    project = Project.get(session, project_id)
    if project is None:
        raise LookupError(f"Project {project_id} does not exist")
    return project


def _require_manager(project: Project, identity: Identity) -> None:
    if not project.is_manageable_by(identity):
        logger.warning(
            "uid=%s is not allowed to manage project %s", identity.uid, project.id
        )
        raise PermissionDeniedError(
            f"User {identity.uid} may not manage project {project.id}"
        )


def _is_lock_conflict(session: Session, exc: OperationalError) -> bool:
    # Other backends wait on row locks instead of failing the statement.
    return session.get_bind().dialect.name == "sqlite" and "locked" in str(exc.orig)


def _restart_as_writer(session: Session) -> None:
    """Restart the SQLite transaction under ``session`` holding the write lock.

    The session's transaction stays open for the caller; the database
    transaction beneath it is rolled back and reopened with ``BEGIN IMMEDIATE``,
    which waits for the concurrent writer to commit. Loaded objects are
    expired. Writes flushed earlier in the same transaction are lost.
    """
    connection = session.connection()
    connection.exec_driver_sql("ROLLBACK")
    connection.exec_driver_sql("BEGIN IMMEDIATE")
    session.expire_all()


def create_project(
    session: Session,
    identity: Identity,
    title: str,
    *,
    project_type: str = PROJECT_TYPE_ROULETTE,
    config: Optional[RouletteConfig] = None,
) -> Project:
    """Create a project owned by ``identity``.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    identity : Identity
        The creating user; becomes the project owner.
    title : str
        Display title. Must not be blank.
    project_type : str, default: "roulette"
        ``roulette`` or ``queue``.
    config : Optional[RouletteConfig], default: None
        Initial draw configuration; defaults to a classic draw.

    Returns
    -------
    Project
        The flushed project with ``status == "active"``.

    Raises
    ------
    ValueError
        If the title is blank or the project type is unknown.
    InvalidConfigurationError
        If ``config`` cannot be drawn.
    """

    if not title or not title.strip():
        raise ValueError("Project title must not be empty")
    if project_type not in PROJECT_TYPES:
        raise ValueError(f"Unknown project type '{project_type}'")
    if config is None:
        config = RouletteConfig(mode=MODE_QUEUE if project_type == PROJECT_TYPE_QUEUE else MODE_CLASSIC)
    config.validate()

    project = Project(
        title=title.strip(),
        creator_uid=identity.uid,
        type=project_type,
        config=config.to_dict(),
    )
    session.add(project)
    session.flush()
    logger.info("Project %s (%s) created by uid=%s", project.id, project_type, identity.uid)
    return project


def join_roster(
    session: Session,
    project_id: int,
    identity: Identity,
    value: int,
    *,
    name: Optional[str] = None,
    joined_at: Optional[datetime] = None,
) -> RouletteParticipant:
    """Add ``identity`` to the project's roster with ``value``.

    A user holds at most one entry per project. A repeated submission is a
    no-op: the first entry is returned unchanged, so its value alone counts
    towards the seed.

    On SQLite a concurrent writer can make the insert fail with a lock
    conflict. The database transaction is then restarted behind the writer
    and the join retried once, which finds the entry the writer committed.
    Writes flushed earlier in the same transaction are discarded in that case.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    project_id : int
        Project to join.
    identity : Identity
        Joining user.
    value : int
        Submitted number in ``[0, 100]``.
    name : Optional[str], default: None
        Display label of at most 100 characters; falls back to the
        identity's display name.
    joined_at : Optional[datetime], default: None
        Explicit submission time, mainly for imports and tests.

    Returns
    -------
    RouletteParticipant
        The new entry, or the user's existing one.

    Raises
    ------
    TypeError
        If ``value`` is not an integer.
    ValueError
        If ``value`` lies outside ``[0, 100]`` or the label is too long.
    LookupError
        If the project does not exist.
    ProjectStateError
        If the project is paused or finished.
    """

    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError("value must be an integer")
    if not MIN_VALUE <= value <= MAX_VALUE:
        raise ValueError(f"value must be within [{MIN_VALUE}, {MAX_VALUE}]")
    label = (name or "").strip() or identity.label
    if len(label) > NAME_MAX_LENGTH:
        raise ValueError(f"name must be at most {NAME_MAX_LENGTH} characters")

    try:
        return _add_roster_entry(session, project_id, identity, value, label, joined_at)
    except OperationalError as exc:
        if not _is_lock_conflict(session, exc):
            raise
        logger.warning(
            "Lock conflict while uid=%s joined project %s; retrying: %s",
            identity.uid,
            project_id,
            exc.orig,
        )
        _restart_as_writer(session)
        return _add_roster_entry(session, project_id, identity, value, label, joined_at)


def _add_roster_entry(
    session: Session,
    project_id: int,
    identity: Identity,
    value: int,
    label: str,
    joined_at: Optional[datetime],
) -> RouletteParticipant:
    project = _require_project(session, project_id)
    if not project.is_active:
        raise ProjectStateError(
            f"Project {project_id} is {project.status}; joining is closed"
        )

    existing = RouletteParticipant.get_for_user(session, project_id, identity.uid)
    if existing is not None:
        logger.info("uid=%s already joined project %s; ignoring", identity.uid, project_id)
        return existing

    participant = RouletteParticipant(
        entry_id=generate_entry_id(session=session),
        project_id=project_id,
        uid=identity.uid,
        name=label,
        value=value,
        joined_at=joined_at,
    )
    # A concurrent join for the same uid trips the unique constraint; the
    # savepoint keeps the caller's transaction usable in that case.
    try:
        with session.begin_nested():
            session.add(participant)
            session.flush()
    except IntegrityError:
        existing = RouletteParticipant.get_for_user(session, project_id, identity.uid)
        if existing is None:
            raise
        logger.info(
            "uid=%s joined project %s concurrently; keeping first entry",
            identity.uid,
            project_id,
        )
        return existing

    logger.info("uid=%s joined project %s", identity.uid, project_id)
    return participant


def load_roster(session: Session, project_id: int) -> RosterSnapshot:
    """Read the project's ordered roster and configuration in one go."""

    project = _require_project(session, project_id)
    participants = RouletteParticipant.roster(session, project_id)
    return RosterSnapshot(
        project_id=project_id,
        status=project.status,
        config=project.roulette_config,
        config_version=project.config_version,
        participants=tuple(p.snapshot() for p in participants),
    )


def compute_draw(
    snapshot: RosterSnapshot,
    *,
    registry: Optional[AlgorithmRegistry] = None,
) -> DrawResult:
    """Run the engine on a snapshot. Pure; nothing is written."""

    return FairnessEngine(registry=registry).draw(snapshot.participants, snapshot.config)


def record_draw(
    session: Session,
    project_id: int,
    result: DrawResult,
    *,
    config_version: int,
    drawn_by_uid: Optional[str] = None,
) -> DrawRecord:
    """Persist ``result`` and finish the project, at most once.

    The status transition is a conditional ``UPDATE`` that only matches a
    project that is not finished yet; the draw record is inserted in the same
    savepoint, so readers never see one without the other.

    On SQLite a concurrent finalizer can make the claim fail with a lock
    conflict. The database transaction is then restarted behind that writer
    and the claim retried once, so it observes the finished project and
    raises :class:`AlreadyFinalizedError`.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    project_id : int
        Project the result belongs to.
    result : DrawResult
        Output of the engine.
    config_version : int
        Version of the configuration the result was computed from.
    drawn_by_uid : Optional[str], default: None
        User who triggered the draw.

    Returns
    -------
    DrawRecord
        The flushed, immutable record.

    Raises
    ------
    AlreadyFinalizedError
        If the project already has a result. Nothing is written.
    LookupError
        If the project does not exist.
    """

    try:
        record = _claim_and_record(session, project_id, result, config_version, drawn_by_uid)
    except OperationalError as exc:
        if not _is_lock_conflict(session, exc):
            raise
        logger.warning(
            "Lock conflict while finalizing project %s; retrying: %s", project_id, exc.orig
        )
        _restart_as_writer(session)
        record = _claim_and_record(session, project_id, result, config_version, drawn_by_uid)

    logger.info(
        "Draw recorded for project %s: seed=%d winners=%d by uid=%s",
        project_id,
        result.seed,
        len(result.winners),
        drawn_by_uid,
    )
    return record


def _claim_and_record(
    session: Session,
    project_id: int,
    result: DrawResult,
    config_version: int,
    drawn_by_uid: Optional[str],
) -> DrawRecord:
    now = utcnow()
    try:
        with session.begin_nested():
            claimed = session.execute(
                update(Project)
                .where(Project.id == project_id, Project.status != STATUS_FINISHED)
                .values(status=STATUS_FINISHED, finished_at=now)
            )
            if claimed.rowcount != 1:
                _require_project(session, project_id)
                raise AlreadyFinalizedError(project_id)

            record = DrawRecord.from_result(
                project_id,
                result,
                config_version=config_version,
                drawn_by_uid=drawn_by_uid,
            )
            session.add(record)
            session.flush()
            _apply_participant_flags(session, project_id, result)
    except IntegrityError as exc:
        raise AlreadyFinalizedError(project_id) from exc
    return record


def _apply_participant_flags(session: Session, project_id: int, result: DrawResult) -> None:
    mode = result.config_snapshot.mode
    if mode == MODE_CLASSIC and result.winners:
        winner_ids = [w.participant.id for w in result.winners]
        session.execute(
            update(RouletteParticipant)
            .where(
                RouletteParticipant.project_id == project_id,
                RouletteParticipant.entry_id.in_(winner_ids),
            )
            .values(is_winner=True)
        )
    elif mode == MODE_QUEUE:
        for winner in result.winners:
            session.execute(
                update(RouletteParticipant)
                .where(
                    RouletteParticipant.project_id == project_id,
                    RouletteParticipant.entry_id == winner.participant.id,
                )
                .values(queue_order=winner.rank)
            )


def get_draw_result(session: Session, project_id: int) -> Optional[DrawResult]:
    """Return the stored result for ``project_id``, or ``None`` before the draw."""

    record = DrawRecord.get_for_project(session, project_id)
    return record.to_result() if record is not None else None


def run_draw(
    session: Session,
    project_id: int,
    identity: Identity,
    *,
    expected_config_version: Optional[int] = None,
    registry: Optional[AlgorithmRegistry] = None,
) -> DrawOutcome:
    """Snapshot, compute and record the draw for ``project_id``.

    Losing a race against another finalizer is not an error: the outcome
    then carries the stored result so callers can simply refresh.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    project_id : int
        Project to draw.
    identity : Identity
        Acting user; must own the project or be an admin.
    expected_config_version : Optional[int], default: None
        When given, the draw is refused if the configuration changed since
        the caller last saw it.
    registry : Optional[AlgorithmRegistry], default: None
        Optional registry override for custom draw modes.

    Returns
    -------
    DrawOutcome
        Recorded, already finalized, or empty roster.

    Raises
    ------
    PermissionDeniedError
        If ``identity`` may not draw this project.
    ProjectStateError
        If the project is paused.
    StaleConfigurationError
        If ``expected_config_version`` does not match.
    InvalidConfigurationError
        If the stored configuration cannot be drawn.
    """

    project = _require_project(session, project_id)
    _require_manager(project, identity)

    if project.status == STATUS_FINISHED:
        logger.info("Project %s already finished; returning stored draw", project_id)
        return _already_finalized(session, project_id)
    if project.status != STATUS_ACTIVE:
        raise ProjectStateError(f"Project {project_id} is {project.status}; drawing is paused")

    snapshot = load_roster(session, project_id)
    if expected_config_version is not None and expected_config_version != snapshot.config_version:
        raise StaleConfigurationError(expected_config_version, snapshot.config_version)

    result = compute_draw(snapshot, registry=registry)
    if result.participant_count == 0:
        logger.info("Project %s has no participants; nothing recorded", project_id)
        return DrawOutcome(status=OUTCOME_EMPTY_ROSTER, result=result)

    try:
        record = record_draw(
            session,
            project_id,
            result,
            config_version=snapshot.config_version,
            drawn_by_uid=identity.uid,
        )
    except AlreadyFinalizedError:
        logger.info("Project %s was finalized concurrently; keeping stored draw", project_id)
        return _already_finalized(session, project_id)

    return DrawOutcome(status=OUTCOME_RECORDED, result=result, record=record)


def _already_finalized(session: Session, project_id: int) -> DrawOutcome:
    record = DrawRecord.get_for_project(session, project_id)
    return DrawOutcome(
        status=OUTCOME_ALREADY_FINALIZED,
        result=record.to_result() if record is not None else None,
        record=record,
    )


def verify_draw(
    session: Session,
    project_id: int,
    *,
    registry: Optional[AlgorithmRegistry] = None,
) -> bool:
    """Re-derive the stored draw from its config snapshot and the current roster.

    Returns ``True`` when the recomputation is byte-identical to the stored
    steps and winners. A roster edited after the draw makes this ``False``
    without affecting the stored result or its replay.
    """

    record = DrawRecord.get_for_project(session, project_id)
    if record is None:
        raise LookupError(f"Project {project_id} has no recorded draw")
    stored = record.to_result()
    participants = [p.snapshot() for p in RouletteParticipant.roster(session, project_id)]
    recomputed = FairnessEngine(registry=registry).draw(participants, stored.config_snapshot)
    matches = recomputed.canonical_json() == stored.canonical_json()
    if not matches:
        logger.warning("Stored draw for project %s no longer matches its roster", project_id)
    return matches


def load_replay(session: Session, project_id: int) -> ReplayPlan:
    """Return the playback plan built from the stored step log only."""

    record = DrawRecord.get_for_project(session, project_id)
    if record is None:
        raise LookupError(f"Project {project_id} has no recorded draw")
    return build_replay(record.to_result())


def update_config(
    session: Session,
    project_id: int,
    identity: Identity,
    config: RouletteConfig,
    *,
    expected_version: Optional[int] = None,
) -> Project:
    """Store a new draw configuration as the next version.

    Parameters
    ----------
    session : Session
        Active SQLAlchemy session.
    project_id : int
        Project to configure.
    identity : Identity
        Acting user; must own the project or be an admin.
    config : RouletteConfig
        New configuration; validated before it is written.
    expected_version : Optional[int], default: None
        Version the caller edited. Defaults to the version currently loaded.

    Returns
    -------
    Project
        The project with the bumped ``config_version``.

    Raises
    ------
    ProjectStateError
        If the project is finished; its configuration is frozen.
    StaleConfigurationError
        If another write bumped the version first.
    """

    project = _require_project(session, project_id)
    _require_manager(project, identity)
    config.validate()
    if project.is_finished:
        raise ProjectStateError(f"Project {project_id} is finished; configuration is frozen")

    base_version = expected_version if expected_version is not None else project.config_version
    written = session.execute(
        update(Project)
        .where(
            Project.id == project_id,
            Project.status != STATUS_FINISHED,
            Project.config_version == base_version,
        )
        .values(config=config.to_dict(), config_version=base_version + 1)
    )
    if written.rowcount != 1:
        session.refresh(project)
        if project.is_finished:
            raise ProjectStateError(f"Project {project_id} is finished; configuration is frozen")
        raise StaleConfigurationError(base_version, project.config_version)

    session.refresh(project)
    logger.info(
        "Project %s configuration v%d saved by uid=%s",
        project_id,
        project.config_version,
        identity.uid,
    )
    return project


def toggle_project_status(session: Session, project_id: int, identity: Identity) -> str:
    """Pause an active project or resume a paused one; returns the new status.

    Only the creator may toggle. Finished projects stay finished.
    """

    project = _require_project(session, project_id)
    if identity.uid != project.creator_uid:
        raise PermissionDeniedError(f"Only the creator may pause or resume project {project_id}")
    if project.is_finished:
        raise ProjectStateError(f"Project {project_id} is finished")

    current = project.status
    new_status = STATUS_STOPPED if current == STATUS_ACTIVE else STATUS_ACTIVE
    changed = session.execute(
        update(Project)
        .where(Project.id == project_id, Project.status == current)
        .values(status=new_status)
    )
    session.refresh(project)
    if changed.rowcount != 1:
        raise ProjectStateError(
            f"Project {project_id} changed status concurrently (now {project.status})"
        )
    logger.info("Project %s %s -> %s by uid=%s", project_id, current, new_status, identity.uid)
    return new_status
