"""Database connection and session management."""

import logging

from sqlalchemy import create_engine, select
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from accessgate.config import settings

logger = logging.getLogger(__name__)

# Rate card installed on an empty rates table (pesos -> minutes).
DEFAULT_RATES = ((1, 30), (5, 240), (10, 600))


def _build_engine(database_url: str):
    """Create a SQLAlchemy engine with appropriate configuration."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


engine = _build_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""

    pass


def init_db(bind, session_factory=None) -> None:
    """Create all tables and seed the default rate card if it is empty."""
    from accessgate.models import Rate

    Base.metadata.create_all(bind=bind)
    factory = session_factory or sessionmaker(bind=bind)
    with factory() as db:
        if db.execute(select(Rate.id).limit(1)).first() is None:
            db.add_all(Rate(pesos=p, minutes=m) for p, m in DEFAULT_RATES)
            db.commit()
            logger.info("Seeded default rate card: %s", DEFAULT_RATES)
