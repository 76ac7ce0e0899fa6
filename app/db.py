from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


class RadiusBase(DeclarativeBase):
    """Tables owned by the FreeRADIUS SQL schema."""


def get_engine(url: str | None = None):
    url = url or settings.database_url
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


_engine = get_engine()
_radius_engine = (
    get_engine(settings.radius_database_url) if settings.radius_database_url else _engine
)

SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False)
RadiusSessionLocal = sessionmaker(bind=_radius_engine, autoflush=False, autocommit=False)


def get_db():
    """Centralized database session dependency for FastAPI.

    Yields a database session and ensures it is closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_radius_db():
    """Session dependency bound to the RADIUS schema."""
    db = RadiusSessionLocal()
    try:
        yield db
    finally:
        db.close()
