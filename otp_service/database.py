from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from otp_service.config import settings


def _build_database_url() -> str:
    raw_url = settings.database_url
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def _engine_options(url: str) -> dict:
    if url.startswith("postgresql"):
        return {
            "pool_pre_ping": True,
            "pool_timeout": settings.database_connect_timeout_seconds,
            "connect_args": {
                "connect_timeout": settings.database_connect_timeout_seconds,
                "options": f"-c statement_timeout={settings.database_statement_timeout_ms}",
            },
        }
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    options = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": settings.database_connect_timeout_seconds,
        }
    }
    if url in {"sqlite://", "sqlite:///:memory:"}:
        # In-memory databases live inside a single connection.
        options["poolclass"] = StaticPool
    return options


DATABASE_URL = _build_database_url()
engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=False
)
Base = declarative_base()


def init_db() -> None:
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not configured")
    from otp_service.models import otp as _otp  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
