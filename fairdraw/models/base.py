from sqlalchemy import BigInteger, Integer
from sqlalchemy.orm import DeclarativeBase
from fairdraw.db.metadata import metadata_obj

# BigInteger keys in production, with the Integer variant SQLite needs for autoincrement.
ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    metadata = metadata_obj
