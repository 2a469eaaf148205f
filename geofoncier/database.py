"""Database connection and session management."""

from collections.abc import Generator

from sqlalchemy import Engine, create_engine, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from starlette.requests import Request

from .config import Settings

Base = declarative_base()


def build_engine(settings: Settings) -> Engine:
    """Create the SQLAlchemy engine described by the settings."""
    connect_args = {}
    if settings.database_url.startswith("sqlite"):
        # TestClient and the threadpool hand sessions across threads.
        connect_args["check_same_thread"] = False
    return create_engine(
        settings.database_url,
        echo=settings.database_echo,
        connect_args=connect_args,
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency for getting database sessions."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine) -> None:
    """Create all tables and enable required extensions."""
    # Importing models registers every table on Base.metadata
    from . import models  # noqa: F401

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
            conn.commit()
    Base.metadata.create_all(bind=engine)
