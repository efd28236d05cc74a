"""Identity values handed over by the external auth provider."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Identity:
    """The signed-in user as seen by workflows.

    Attributes
    ----------
    uid : str
        Stable user identifier issued by the auth provider.
    display_name : str
        Default label for roster entries.
    is_admin : bool
        Site administrators may manage every project.
    """

    uid: str
    display_name: str = ""
    is_admin: bool = False

    def __post_init__(self) -> None:
        if not self.uid:
            raise ValueError("identity uid must not be empty")

    @property
    def label(self) -> str:
        return self.display_name or "Anonymous"


__all__ = ["Identity"]
