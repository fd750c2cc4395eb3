# rxflow/models/base.py
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """
    Base class for all ORM models.

    Every clinical table carries a clinic_id; tenancy is row-level, not
    schema-level.
    """

    pass
