from __future__ import annotations

import json
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError

from fairdraw.db.engine import get_sessionmaker, make_engine
from fairdraw.fairness import ParticipantSnapshot, RouletteConfig, draw
from fairdraw.models import Base, DrawRecord, Project, RouletteParticipant
from fairdraw.models.utils import generate_entry_id


class ModelTests(unittest.TestCase):
    def setUp(self):
        self.engine = make_engine("sqlite+pysqlite:///:memory:", echo=False)
        Base.metadata.create_all(self.engine)
        self.Session = get_sessionmaker(self.engine)

    def tearDown(self):
        self.engine.dispose()

    def _project(self, session, **kwargs):
        project = Project(title="Raffle", creator_uid="owner", **kwargs)
        session.add(project)
        session.flush()
        return project

    def test_schema_uses_naming_convention(self):
        insp = inspect(self.engine)
        self.assertEqual(
            set(insp.get_table_names()),
            {"projects", "roulette_participants", "draw_records"},
        )
        uniques = {u["name"] for u in insp.get_unique_constraints("roulette_participants")}
        self.assertIn("uq_roulette_participant_per_user", uniques)
        self.assertIn("uq_roulette_participants_entry_id", uniques)
        self.assertEqual(
            {u["name"] for u in insp.get_unique_constraints("draw_records")},
            {"uq_draw_records_project"},
        )

    def test_project_validates_type_and_status(self):
        with self.assertRaises(ValueError):
            Project(title="x", creator_uid="owner", type="lottery")
        with self.assertRaises(ValueError):
            Project(title="x", creator_uid="owner", status="archived")

    def test_project_to_json(self):
        with self.Session.begin() as session:
            project = self._project(session, config={"mode": "elim", "survivorCount": 2})
            session.add(
                RouletteParticipant(
                    entry_id="P-000000000001",
                    project_id=project.id,
                    uid="u1",
                    name="Alice",
                    value=12,
                )
            )
            session.flush()

            data = project.to_json()
            self.assertEqual(data["type"], "roulette")
            self.assertEqual(data["status"], "active")
            self.assertEqual(data["config"]["mode"], "elim")
            self.assertEqual(data["config"]["survivor_count"], 2)
            self.assertEqual(data["participant_count"], 1)
            self.assertIsNone(data["finished_at"])
            self.assertTrue(data["created_at"].endswith("+00:00"))
            self.assertEqual(json.loads(project.to_json_str())["id"], project.id)

    def test_queue_project_forces_queue_mode(self):
        with self.Session.begin() as session:
            project = self._project(session, type="queue", config={"mode": "classic"})
            self.assertEqual(project.roulette_config.mode, "queue")

    def test_one_entry_per_user_per_project(self):
        with self.Session() as session:
            project = self._project(session)
            session.add(
                RouletteParticipant(entry_id="P-a", project_id=project.id, uid="u1", name="A", value=1)
            )
            session.flush()
            session.add(
                RouletteParticipant(entry_id="P-b", project_id=project.id, uid="u1", name="A", value=2)
            )
            with self.assertRaises(IntegrityError):
                session.flush()
            session.rollback()

    def test_value_range_is_checked_in_the_database(self):
        with self.Session() as session:
            project = self._project(session)
            session.add(
                RouletteParticipant(entry_id="P-x", project_id=project.id, uid="u1", name="A", value=101)
            )
            with self.assertRaises(IntegrityError):
                session.flush()
            session.rollback()

    def test_participant_snapshot_and_json(self):
        joined = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        with self.Session.begin() as session:
            project = self._project(session)
            entry = RouletteParticipant(
                entry_id="P-snap",
                project_id=project.id,
                uid="u1",
                name="Alice",
                value=33,
                joined_at=joined,
            )
            session.add(entry)
            project_id = project.id

        with self.Session.begin() as session:
            entry = RouletteParticipant.get_for_user(session, project_id, "u1")
            snapshot = entry.snapshot()
            self.assertEqual(
                snapshot,
                ParticipantSnapshot(
                    id="P-snap",
                    uid="u1",
                    name="Alice",
                    value=33,
                    joined_at=int(joined.timestamp() * 1000),
                ),
            )
            data = entry.to_json()
            self.assertEqual(data["joined_at"], "2024-01-02T03:04:05+00:00")
            self.assertFalse(data["is_winner"])
            self.assertIsNone(data["queue_order"])
            self.assertIsNone(RouletteParticipant.get_for_user(session, project_id, "nobody"))

    def test_draw_record_round_trip(self):
        roster = [
            ParticipantSnapshot(id=f"P{i}", uid=f"u{i}", name=f"N{i}", value=v, joined_at=i)
            for i, v in enumerate((10, 20, 30, 40, 50), start=1)
        ]
        result = draw(roster, RouletteConfig(mode="elim", survivor_count=2))

        with self.Session.begin() as session:
            project = self._project(session)
            session.add(DrawRecord.from_result(project.id, result, config_version=4, drawn_by_uid="owner"))
            project_id = project.id

        with self.Session.begin() as session:
            record = DrawRecord.get_for_project(session, project_id)
            self.assertEqual(record.seed, 150)
            self.assertEqual(record.participant_count, 5)
            self.assertEqual(record.to_result(), result)
            data = record.to_json()
            self.assertEqual(data["config_version"], 4)
            self.assertEqual(data["drawn_by_uid"], "owner")
            self.assertEqual([w["participant"]["id"] for w in data["winners"]], ["P5", "P2"])

    def test_generate_entry_id_retries_on_collision(self):
        with self.Session() as session:
            project = self._project(session)
            session.add(
                RouletteParticipant(
                    entry_id="P-AAAAAAAAAAAA", project_id=project.id, uid="u1", name="A", value=1
                )
            )
            session.flush()

            with patch(
                "fairdraw.models.utils.secrets.choice",
                side_effect=list("A" * 12 + "B" * 12),
            ):
                generated = generate_entry_id(session=session)

            self.assertEqual(generated, "P-BBBBBBBBBBBB")

    def test_generate_entry_id_gives_up(self):
        with patch("fairdraw.models.utils.secrets.choice", return_value="Z"):
            with self.Session() as session:
                project = self._project(session)
                session.add(
                    RouletteParticipant(
                        entry_id="P-ZZZZZZZZZZZZ", project_id=project.id, uid="u1", name="A", value=1
                    )
                )
                session.flush()
                with self.assertRaises(RuntimeError):
                    generate_entry_id(session=session, max_attempts=3)


if __name__ == "__main__":
    unittest.main()
