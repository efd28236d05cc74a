"""Utility helpers for the models package."""

from __future__ import annotations

import secrets
import string
from typing import Optional
from sqlalchemy.orm import Session

BASE62_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase


def generate_entry_id(
    prefix: str = "P",
    session: Optional[Session] = None,
    length: int = 12,
    max_attempts: int = 32,
) -> str:
    """Return an opaque roster-entry identifier made of base62 characters.

    When a session is provided, the helper retries if the generated value is
    already present (or pending) in ``RouletteParticipant.entry_id``.
    """

    participant_cls = None
    select_stmt = None
    if session is not None:
        from sqlalchemy import select
        from .participant import RouletteParticipant

        participant_cls = RouletteParticipant
        select_stmt = select

    attempts = 0
    while attempts < max_attempts:
        suffix = "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))
        candidate = f"{prefix}-{suffix}"[:32]

        if session is not None and participant_cls is not None and select_stmt is not None:
            pending = any(
                isinstance(obj, participant_cls)
                and getattr(obj, "entry_id", None) == candidate
                for obj in session.new
            )
            if pending:
                attempts += 1
                continue

            exists = session.scalar(
                select_stmt(participant_cls.id).where(
                    participant_cls.entry_id == candidate
                )
            )
            if exists is not None:
                attempts += 1
                continue

        return candidate

    raise RuntimeError(
        "Unable to generate a unique roster entry identifier after multiple attempts"
    )
