import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from eventlens.core.settings import settings


def build_database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    server = settings.DB_SERVER
    # If DB_SERVER already contains a port (":" or ",") or an instance name ("\\"),
    # use it as-is; otherwise append :port
    if any(sep in (server or "") for sep in (":", ",", "\\")):
        hostpart = server
    else:
        hostpart = f"{server}:{settings.DB_PORT}"
    return (
        f"mssql+pyodbc://{settings.DB_USER}:{settings.DB_PASSWORD}@{hostpart}/{settings.DB_NAME}"
        f"?driver={settings.DB_DRIVER.replace(' ', '+')}"
    )


# Tests opt into an in-memory SQLite DB with TEST_SQLITE=1
if os.getenv("TEST_SQLITE") == "1":
    # Use StaticPool so the same in-memory DB is reused across connections.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    _url = build_database_url()
    if _url.startswith("mssql"):
        engine = create_engine(
            _url,
            connect_args={"TrustServerCertificate": "yes", "Encrypt": "yes"},
            pool_pre_ping=True,
        )
    else:
        engine = create_engine(_url, pool_pre_ping=True)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Tests set this so in-process request handlers share their transactional session
_TEST_SESSION = None


def get_db():
    if _TEST_SESSION is not None:
        yield _TEST_SESSION
        return

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def new_session():
    """Session for work that must commit independently of the request session."""
    if _TEST_SESSION is not None:
        return _TEST_SESSION
    return SessionLocal()


def release_session(db) -> None:
    if db is not _TEST_SESSION:
        db.close()
