from .base import Base, ID_TYPE

# import models so Alembic/autoloaders can discover mappers
from .project import Project  # noqa: F401
from .participant import RouletteParticipant  # noqa: F401
from .draw_record import DrawRecord  # noqa: F401

__all__ = [
    "Base",
    "ID_TYPE",
    "Project",
    "RouletteParticipant",
    "DrawRecord",
]
