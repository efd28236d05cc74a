import os
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from fairdraw import workflows
from fairdraw.auth import Identity
from fairdraw.db.engine import get_sessionmaker, make_engine
from fairdraw.fairness import (
    AlreadyFinalizedError,
    PermissionDeniedError,
    Prize,
    ProjectStateError,
    RouletteConfig,
    StaleConfigurationError,
)
from fairdraw.models import Base, DrawRecord, Project, RouletteParticipant
from fairdraw.workflows import (
    OUTCOME_ALREADY_FINALIZED,
    OUTCOME_EMPTY_ROSTER,
    OUTCOME_RECORDED,
    compute_draw,
    create_project,
    get_draw_result,
    join_roster,
    load_replay,
    load_roster,
    record_draw,
    run_draw,
    toggle_project_status,
    update_config,
    verify_draw,
)

OWNER = Identity(uid="owner", display_name="Owner")
ADMIN = Identity(uid="root", display_name="Root", is_admin=True)
STRANGER = Identity(uid="stranger", display_name="Stranger")
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def draw_count(session, project_id):
    return session.scalar(
        select(func.count(DrawRecord.id)).where(DrawRecord.project_id == project_id)
    )


class WorkflowTestCase(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:", echo=False)
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def _project(self, session, config=None, project_type="roulette"):
        return create_project(session, OWNER, "Friday draw", project_type=project_type, config=config)

    def _join_all(self, session, project_id, *values):
        """Join u1..un with the given values, one second apart."""
        entries = []
        for i, value in enumerate(values, start=1):
            entries.append(
                join_roster(
                    session,
                    project_id,
                    Identity(uid=f"u{i}", display_name=f"Player {i}"),
                    value,
                    joined_at=BASE_TIME + timedelta(seconds=i),
                )
            )
        return entries


class CreateProjectTests(WorkflowTestCase):
    def test_defaults(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self.assertEqual(project.status, "active")
            self.assertEqual(project.creator_uid, "owner")
            self.assertEqual(project.config_version, 1)
            self.assertEqual(project.roulette_config, RouletteConfig())

            queue = self._project(session, project_type="queue")
            self.assertEqual(queue.roulette_config.mode, "queue")

    def test_rejects_blank_title_and_unknown_type(self):
        with self.Session.begin() as session:
            with self.assertRaises(ValueError):
                create_project(session, OWNER, "   ")
            with self.assertRaises(ValueError):
                create_project(session, OWNER, "Draw", project_type="lottery")
            with self.assertRaises(ValueError):
                create_project(session, OWNER, "Draw", config=RouletteConfig(mode="multi"))


class JoinRosterTests(WorkflowTestCase):
    def test_join_creates_entry_with_identity_label(self):
        with self.Session.begin() as session:
            project = self._project(session)
            entry = join_roster(session, project.id, Identity(uid="u1", display_name="Alice"), 42)

            self.assertEqual(entry.name, "Alice")
            self.assertEqual(entry.value, 42)
            self.assertFalse(entry.is_winner)
            self.assertTrue(entry.entry_id.startswith("P-"))

            anonymous = join_roster(session, project.id, Identity(uid="u2"), 7)
            self.assertEqual(anonymous.name, "Anonymous")
            named = join_roster(session, project.id, Identity(uid="u3"), 7, name="  Table 3 ")
            self.assertEqual(named.name, "Table 3")

    def test_second_join_is_a_no_op(self):
        with self.Session.begin() as session:
            project = self._project(session)
            first = join_roster(session, project.id, Identity(uid="u1"), 10)
            again = join_roster(session, project.id, Identity(uid="u1"), 99)

            self.assertEqual(again.id, first.id)
            self.assertEqual(again.value, 10)
            self.assertEqual(project.participant_count(), 1)
            self.assertEqual(load_roster(session, project.id).seed, 10)

    def test_concurrent_duplicate_keeps_first_entry(self):
        with self.Session.begin() as session:
            project = self._project(session)
            first = join_roster(session, project.id, Identity(uid="u1"), 10)

            # The pre-check misses the first entry, as a racing request would.
            with patch.object(
                RouletteParticipant, "get_for_user", side_effect=[None, first]
            ):
                again = join_roster(session, project.id, Identity(uid="u1"), 55)

            self.assertIs(again, first)
            self.assertEqual(project.participant_count(), 1)
            # The savepoint rollback leaves the outer transaction usable.
            join_roster(session, project.id, Identity(uid="u2"), 5)
            self.assertEqual(project.participant_count(), 2)

    def test_value_validation(self):
        with self.Session.begin() as session:
            project = self._project(session)
            for bad in ("5", 5.0, True, None):
                with self.subTest(value=bad):
                    with self.assertRaises(TypeError):
                        join_roster(session, project.id, Identity(uid="u1"), bad)
            for bad in (-1, 101):
                with self.subTest(value=bad):
                    with self.assertRaises(ValueError):
                        join_roster(session, project.id, Identity(uid="u1"), bad)
            join_roster(session, project.id, Identity(uid="u1"), 0)
            join_roster(session, project.id, Identity(uid="u2"), 100)
            self.assertEqual(load_roster(session, project.id).seed, 100)

    def test_label_length_is_limited(self):
        with self.Session.begin() as session:
            project = self._project(session)
            with self.assertRaises(ValueError):
                join_roster(session, project.id, Identity(uid="u1"), 1, name="x" * 101)
            with self.assertRaises(ValueError):
                join_roster(session, project.id, Identity(uid="u1", display_name="y" * 101), 1)
            self.assertEqual(project.participant_count(), 0)

            entry = join_roster(session, project.id, Identity(uid="u1"), 1, name="x" * 100)
            self.assertEqual(entry.name, "x" * 100)

    def test_unknown_project(self):
        with self.Session.begin() as session:
            with self.assertRaises(LookupError):
                join_roster(session, 999, Identity(uid="u1"), 1)

    def test_paused_and_finished_projects_reject_joins(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 10)
            toggle_project_status(session, project.id, OWNER)
            with self.assertRaises(ProjectStateError):
                join_roster(session, project.id, Identity(uid="late"), 5)

            toggle_project_status(session, project.id, OWNER)
            run_draw(session, project.id, OWNER)
            with self.assertRaises(ProjectStateError):
                join_roster(session, project.id, Identity(uid="late"), 5)

    def test_roster_is_loaded_in_join_order(self):
        with self.Session.begin() as session:
            project = self._project(session)
            join_roster(session, project.id, Identity(uid="b"), 2, joined_at=BASE_TIME + timedelta(seconds=5))
            join_roster(session, project.id, Identity(uid="a"), 1, joined_at=BASE_TIME)

            snapshot = load_roster(session, project.id)
            self.assertEqual([p.uid for p in snapshot.participants], ["a", "b"])
            self.assertEqual(snapshot.config_version, 1)
            self.assertEqual(snapshot.status, "active")


class RunDrawTests(WorkflowTestCase):
    def test_classic_draw_is_recorded_once(self):
        with self.Session.begin() as session:
            project = self._project(session)
            entries = self._join_all(session, project.id, 10, 20, 70)

            outcome = run_draw(session, project.id, OWNER)

            self.assertEqual(outcome.status, OUTCOME_RECORDED)
            self.assertTrue(outcome.recorded)
            self.assertEqual(outcome.result.seed, 100)
            self.assertEqual(outcome.result.winners[0].participant.id, entries[1].entry_id)
            self.assertEqual(outcome.record.drawn_by_uid, "owner")
            self.assertEqual(outcome.record.config_version, 1)
            self.assertEqual(project.status, "finished")
            self.assertIsNotNone(project.finished_at)

        with self.Session.begin() as session:
            winners = session.scalars(
                select(RouletteParticipant.uid).where(RouletteParticipant.is_winner.is_(True))
            ).all()
            self.assertEqual(winners, ["u2"])
            self.assertEqual(get_draw_result(session, project.id), outcome.result)

    def test_second_draw_returns_stored_result(self):
        with self.Session.begin() as session:
            project = self._project(session, RouletteConfig(mode="elim", survivor_count=2))
            self._join_all(session, project.id, 10, 20, 30, 40, 50)
            first = run_draw(session, project.id, OWNER)

        with self.Session.begin() as session:
            second = run_draw(session, project.id, ADMIN)
            self.assertEqual(second.status, OUTCOME_ALREADY_FINALIZED)
            self.assertEqual(second.result.canonical_json(), first.result.canonical_json())
            self.assertEqual(second.record.drawn_by_uid, "owner")
            self.assertEqual(draw_count(session, project.id), 1)

    def test_lost_race_returns_winner_of_the_race(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 10, 20, 70)
            project_id = project.id

            real_compute = workflows.compute_draw

            def racing_compute(snapshot, registry=None):
                result = real_compute(snapshot, registry=registry)
                record_draw(
                    session,
                    project_id,
                    result,
                    config_version=snapshot.config_version,
                    drawn_by_uid="other-tab",
                )
                return result

            with patch("fairdraw.workflows.compute_draw", side_effect=racing_compute):
                outcome = run_draw(session, project_id, OWNER)

            self.assertEqual(outcome.status, OUTCOME_ALREADY_FINALIZED)
            self.assertEqual(outcome.record.drawn_by_uid, "other-tab")
            self.assertEqual(draw_count(session, project_id), 1)

    def test_other_operational_errors_propagate(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 10, 20)
            error = OperationalError("UPDATE projects", {}, Exception("disk I/O error"))
            with patch("fairdraw.workflows._claim_and_record", side_effect=error):
                with self.assertRaises(OperationalError):
                    run_draw(session, project.id, OWNER)

    def test_empty_roster_records_nothing(self):
        with self.Session.begin() as session:
            project = self._project(session)
            outcome = run_draw(session, project.id, OWNER)

            self.assertEqual(outcome.status, OUTCOME_EMPTY_ROSTER)
            self.assertTrue(outcome.result.is_empty)
            self.assertIsNone(outcome.record)
            self.assertEqual(project.status, "active")
            self.assertEqual(draw_count(session, project.id), 0)
            self.assertIsNone(get_draw_result(session, project.id))

    def test_only_managers_may_draw(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 1, 2)
            with self.assertRaises(PermissionDeniedError):
                run_draw(session, project.id, STRANGER)
            self.assertTrue(run_draw(session, project.id, ADMIN).recorded)

    def test_paused_project_cannot_be_drawn(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 1, 2)
            toggle_project_status(session, project.id, OWNER)
            with self.assertRaises(ProjectStateError):
                run_draw(session, project.id, OWNER)

    def test_stale_config_version_is_refused(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 1, 2)
            update_config(session, project.id, OWNER, RouletteConfig(mode="queue"))
            with self.assertRaises(StaleConfigurationError):
                run_draw(session, project.id, OWNER, expected_config_version=1)
            outcome = run_draw(session, project.id, OWNER, expected_config_version=2)
            self.assertEqual(outcome.record.config_version, 2)
            self.assertEqual(outcome.result.config_snapshot.mode, "queue")

    def test_queue_project_stores_positions(self):
        with self.Session.begin() as session:
            project = self._project(session, project_type="queue")
            self._join_all(session, project.id, 10, 20, 70)
            outcome = run_draw(session, project.id, OWNER)
            self.assertEqual(outcome.result.config_snapshot.mode, "queue")

        with self.Session.begin() as session:
            rows = session.execute(
                select(RouletteParticipant.uid, RouletteParticipant.queue_order)
                .where(RouletteParticipant.project_id == project.id)
                .order_by(RouletteParticipant.queue_order)
            ).all()
            self.assertEqual([tuple(r) for r in rows], [("u1", 1), ("u2", 2), ("u3", 3)])

    def test_multi_draw_winners_are_stored_in_slot_order(self):
        config = RouletteConfig(
            mode="multi",
            prizes=(Prize("Gold"), Prize("Silver", count=2)),
            order="rev",
        )
        with self.Session.begin() as session:
            project = self._project(session, config)
            self._join_all(session, project.id, 10, 20, 30, 40, 50)
            run_draw(session, project.id, OWNER)

        with self.Session.begin() as session:
            stored = get_draw_result(session, project.id)
            self.assertEqual(
                [(w.participant.uid, w.prize, w.rank) for w in stored.winners],
                [("u1", "Silver", 1), ("u4", "Silver", 2), ("u3", "Gold", 3)],
            )


class RecordDrawTests(WorkflowTestCase):
    def test_record_twice_raises_and_writes_nothing(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 3, 4)
            result = compute_draw(load_roster(session, project.id))
            record_draw(session, project.id, result, config_version=1)

            with self.assertRaises(AlreadyFinalizedError):
                record_draw(session, project.id, result, config_version=1)
            self.assertEqual(draw_count(session, project.id), 1)

    def test_unique_record_per_project_backs_the_status_check(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 3, 4)
            result = compute_draw(load_roster(session, project.id))
            record_draw(session, project.id, result, config_version=1)

            # Reopen the project behind the workflow's back.
            session.execute(
                update(Project).where(Project.id == project.id).values(status="active")
            )
            with self.assertRaises(AlreadyFinalizedError):
                record_draw(session, project.id, result, config_version=1)
            self.assertEqual(draw_count(session, project.id), 1)

    def test_unknown_project(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 3)
            result = compute_draw(load_roster(session, project.id))
            with self.assertRaises(LookupError):
                record_draw(session, 12345, result, config_version=1)

    def test_records_are_immutable(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self._join_all(session, project.id, 3, 4)
            run_draw(session, project.id, OWNER)
            project_id = project.id

        session = self.Session()
        try:
            record = DrawRecord.get_for_project(session, project_id)
            record.seed = 1
            with self.assertRaises(ValueError):
                session.flush()
        finally:
            session.rollback()
            session.close()


class SequentialSessionsTests(unittest.TestCase):
    """Two sessions against one file database, as two server workers would."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "draws.db")
        self.engine = make_engine(f"sqlite+pysqlite:///{path}", echo=False)
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    def test_stale_finalizer_does_not_overwrite(self):
        with self.Session.begin() as session:
            project = create_project(session, OWNER, "Shared", config=RouletteConfig(mode="queue"))
            for i, value in enumerate((10, 20, 70), start=1):
                join_roster(
                    session,
                    project.id,
                    Identity(uid=f"u{i}"),
                    value,
                    joined_at=BASE_TIME + timedelta(seconds=i),
                )
            project_id = project.id

        # Worker B computes from the roster it read before A finalized.
        with self.Session.begin() as session_b:
            stale_result = compute_draw(load_roster(session_b, project_id))

        with self.Session.begin() as session_a:
            winner = run_draw(session_a, project_id, OWNER)
            self.assertTrue(winner.recorded)

        with self.Session.begin() as session_b:
            with self.assertRaises(AlreadyFinalizedError):
                record_draw(session_b, project_id, stale_result, config_version=1, drawn_by_uid="b")

        with self.Session.begin() as session:
            self.assertEqual(draw_count(session, project_id), 1)
            record = DrawRecord.get_for_project(session, project_id)
            self.assertEqual(record.drawn_by_uid, "owner")
            loser = run_draw(session, project_id, OWNER)
            self.assertEqual(loser.status, OUTCOME_ALREADY_FINALIZED)
            self.assertEqual(loser.result.canonical_json(), winner.result.canonical_json())


class ConcurrentWritersTests(unittest.TestCase):
    """Two threads, each in its own session, writing the same row at once."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        path = os.path.join(self.tmpdir.name, "draws.db")
        self.engine = make_engine(f"sqlite+pysqlite:///{path}", echo=False)
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)
        with self.Session.begin() as session:
            project = create_project(session, OWNER, "Shared", config=RouletteConfig(mode="queue"))
            self.project_id = project.id

    def tearDown(self):
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _run_in_threads(self, work):
        """Run ``work(barrier)`` in two threads; return results and errors."""
        barrier = threading.Barrier(2, timeout=10)
        results, errors = [], []

        def target():
            try:
                results.append(work(barrier))
            except Exception as exc:
                errors.append(exc)
                barrier.abort()

        threads = [threading.Thread(target=target) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        self.assertFalse(any(thread.is_alive() for thread in threads))
        return results, errors

    def test_simultaneous_draws_record_once(self):
        with self.Session.begin() as session:
            for i, value in enumerate((10, 20, 70), start=1):
                join_roster(
                    session,
                    self.project_id,
                    Identity(uid=f"u{i}"),
                    value,
                    joined_at=BASE_TIME + timedelta(seconds=i),
                )

        def work(barrier):
            with self.Session.begin() as session:
                load_roster(session, self.project_id)
                barrier.wait()
                outcome = run_draw(session, self.project_id, OWNER)
                return outcome.status, outcome.result.canonical_json()

        results, errors = self._run_in_threads(work)

        self.assertEqual(errors, [])
        self.assertEqual(
            sorted(status for status, _ in results),
            [OUTCOME_ALREADY_FINALIZED, OUTCOME_RECORDED],
        )
        self.assertEqual(results[0][1], results[1][1])
        with self.Session.begin() as session:
            self.assertEqual(draw_count(session, self.project_id), 1)
            stored = get_draw_result(session, self.project_id)
            self.assertEqual(stored.canonical_json(), results[0][1])
            self.assertTrue(session.get(Project, self.project_id).is_finished)

    def test_simultaneous_duplicate_joins_keep_one_entry(self):
        values = iter((11, 22))
        lock = threading.Lock()

        def work(barrier):
            with lock:
                value = next(values)
            with self.Session.begin() as session:
                load_roster(session, self.project_id)
                barrier.wait()
                entry = join_roster(session, self.project_id, Identity(uid="u1"), value)
                return entry.entry_id, entry.value

        results, errors = self._run_in_threads(work)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 2)
        self.assertEqual(results[0], results[1])
        with self.Session.begin() as session:
            roster = load_roster(session, self.project_id)
            self.assertEqual(len(roster.participants), 1)
            self.assertEqual(roster.participants[0].id, results[0][0])
            self.assertEqual(roster.seed, results[0][1])


class ConfigAndStatusTests(WorkflowTestCase):
    def test_update_config_bumps_version(self):
        with self.Session.begin() as session:
            project = self._project(session)
            updated = update_config(
                session, project.id, OWNER, RouletteConfig(mode="elim", survivor_count=2)
            )
            self.assertEqual(updated.config_version, 2)
            self.assertEqual(updated.roulette_config.survivor_count, 2)

            update_config(session, project.id, ADMIN, RouletteConfig(), expected_version=2)
            self.assertEqual(project.config_version, 3)

    def test_update_config_detects_stale_writes(self):
        with self.Session.begin() as session:
            project = self._project(session)
            update_config(session, project.id, OWNER, RouletteConfig(mode="queue"))
            with self.assertRaises(StaleConfigurationError) as ctx:
                update_config(session, project.id, OWNER, RouletteConfig(), expected_version=1)
            self.assertEqual(ctx.exception.expected, 1)
            self.assertEqual(ctx.exception.actual, 2)
            self.assertEqual(project.roulette_config.mode, "queue")

    def test_update_config_rules(self):
        with self.Session.begin() as session:
            project = self._project(session)
            with self.assertRaises(PermissionDeniedError):
                update_config(session, project.id, STRANGER, RouletteConfig())
            with self.assertRaises(ValueError):
                update_config(session, project.id, OWNER, RouletteConfig(mode="nope"))

            self._join_all(session, project.id, 1, 2)
            run_draw(session, project.id, OWNER)
            with self.assertRaises(ProjectStateError):
                update_config(session, project.id, OWNER, RouletteConfig(mode="queue"))
            self.assertEqual(project.config_version, 1)

    def test_toggle_status(self):
        with self.Session.begin() as session:
            project = self._project(session)
            self.assertEqual(toggle_project_status(session, project.id, OWNER), "stopped")
            self.assertEqual(project.status, "stopped")
            self.assertEqual(toggle_project_status(session, project.id, OWNER), "active")

            with self.assertRaises(PermissionDeniedError):
                toggle_project_status(session, project.id, ADMIN)

            self._join_all(session, project.id, 4)
            run_draw(session, project.id, OWNER)
            with self.assertRaises(ProjectStateError):
                toggle_project_status(session, project.id, OWNER)


class VerifyAndReplayTests(WorkflowTestCase):
    def test_verify_and_replay_after_roster_edit(self):
        with self.Session.begin() as session:
            project = self._project(session, RouletteConfig(mode="elim", survivor_count=2, replay_speed=200))
            self._join_all(session, project.id, 10, 20, 30, 40, 50)
            outcome = run_draw(session, project.id, OWNER)
            project_id = project.id

        with self.Session.begin() as session:
            self.assertTrue(verify_draw(session, project_id))
            plan = load_replay(session, project_id)
            self.assertEqual(plan.delay_ms, 200)
            self.assertEqual([f.step for f in plan.frames], list(outcome.result.steps))

            session.add(
                RouletteParticipant(
                    entry_id="P-late-entry",
                    project_id=project_id,
                    uid="late",
                    name="Late",
                    value=9,
                    joined_at=BASE_TIME + timedelta(minutes=5),
                )
            )
            session.flush()

            self.assertFalse(verify_draw(session, project_id))
            self.assertEqual(load_replay(session, project_id), plan)
            self.assertEqual(get_draw_result(session, project_id), outcome.result)

    def test_replay_requires_a_record(self):
        with self.Session.begin() as session:
            project = self._project(session)
            with self.assertRaises(LookupError):
                load_replay(session, project.id)
            with self.assertRaises(LookupError):
                verify_draw(session, project.id)


if __name__ == "__main__":
    unittest.main()
