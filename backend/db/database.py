from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import config


def make_engine(database_url: str):
    """SQLite needs check_same_thread off because the scheduler runs in its own thread."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        return create_engine(database_url, connect_args=connect_args, echo=False)

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,  # drop dead connections before use
        pool_recycle=3600,
        echo=False,
    )


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind=None) -> None:
    """Create all tables that don't exist yet."""
    # Import registers the models on Base.metadata
    from db import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
