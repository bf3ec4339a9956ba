import logging
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from .config import DATA_DIR, settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    if ":memory:" not in DATABASE_URL and DATABASE_URL != "sqlite://":
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    connect_args = {"check_same_thread": False}

engine = create_engine(
    DATABASE_URL,
    echo=False,
    connect_args=connect_args,
)


def init_db() -> None:
    """Create database tables if they do not exist."""
    from . import models  # noqa: F401  registers the tables on SQLModel.metadata

    SQLModel.metadata.create_all(engine)
    logger.info("Database schema ready (%s)", engine.url.render_as_string(hide_password=True))


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
