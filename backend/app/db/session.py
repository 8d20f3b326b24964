from __future__ import annotations

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.logging import get_logger
from app.db.base import Base

logger = get_logger(__name__)


def build_engine(url: str | None = None, **kwargs) -> Engine:
    url = url or settings.DATABASE_URL
    options = {
        "echo": settings.DATABASE_ECHO,
        "future": True,
    }
    if not url.startswith("sqlite"):
        options["pool_pre_ping"] = True  # detects dead connections before using them
        options["pool_recycle"] = 300    # recycle connections periodically (seconds)
    options.update(kwargs)
    return create_engine(url, **options)


def build_sessionmaker(bind: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=bind,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


# -----------------------------
# Default engine (from settings)
# -----------------------------
engine: Engine = build_engine()
SessionLocal = build_sessionmaker(engine)


def create_tables(bind: Engine | None = None) -> None:
    """Create all mapped tables (tests, local development)."""
    import app.models  # noqa: F401  # force model registration

    Base.metadata.create_all(bind=bind or engine)
    logger.info("tables_created")

