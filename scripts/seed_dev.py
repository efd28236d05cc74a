import logging
from datetime import datetime, timedelta, timezone

from fairdraw.auth import Identity
from fairdraw.db.engine import get_sessionmaker, make_engine
from fairdraw.fairness import Prize, RouletteConfig, seed_progression
from fairdraw.models import Base, RouletteParticipant
from fairdraw.workflows import (
    create_project,
    join_roster,
    load_replay,
    run_draw,
)


def main() -> None:
    """Seed the development database with one drawn project per mode."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s [%(name)s] %(message)s")
    engine = make_engine()

    # Start from an empty schema on every run.
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    Session = get_sessionmaker(engine)

    owner = Identity(uid="owner_01", display_name="Host")
    players = [
        (Identity(uid="user_01", display_name="Alice"), 10),
        (Identity(uid="user_02", display_name="Bob"), 20),
        (Identity(uid="user_03", display_name="Carol"), 30),
        (Identity(uid="user_04", display_name="Dave"), 40),
        (Identity(uid="user_05", display_name="Erin"), 50),
    ]
    configs = {
        "Lunch roulette": RouletteConfig(),
        "Year-end raffle": RouletteConfig(
            mode="multi",
            prizes=(Prize("Gold"), Prize("Silver", count=2)),
        ),
        "Last one standing": RouletteConfig(mode="elim", survivor_count=2),
    }

    start = datetime.now(timezone.utc)
    with Session.begin() as session:
        project_ids = []
        for title, config in configs.items():
            project = create_project(session, owner, title, config=config)
            project_ids.append(project.id)
        queue = create_project(session, owner, "Demo queue", project_type="queue")
        project_ids.append(queue.id)

        for project_id in project_ids:
            for offset, (identity, value) in enumerate(players):
                join_roster(
                    session,
                    project_id,
                    identity,
                    value,
                    joined_at=start + timedelta(seconds=offset),
                )

    for project_id in project_ids:
        with Session.begin() as session:
            outcome = run_draw(session, project_id, owner)
            print(f"\nProject {project_id}: {outcome.status} (seed={outcome.result.seed})")

            roster = [p.snapshot() for p in RouletteParticipant.roster(session, project_id)]
            print("  seed progression:", seed_progression(roster))

            plan = load_replay(session, project_id)
            for frame in plan.frames:
                step = frame.step
                print(f"  {step.index:>2} {step.type:<4} {step.label:<10} {step.target.name} ({step.detail})")
            for winner in plan.winners:
                prize = f" [{winner.prize}]" if winner.prize else ""
                print(f"  rank {winner.rank}: {winner.participant.name}{prize}")

    print("\nDevelopment data seeded.")


if __name__ == "__main__":
    main()
