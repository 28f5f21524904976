import os
from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase


# Ensure local development loads environment from project root by default
load_dotenv(dotenv_path=os.getenv("ENV_FILE", ".env"), override=False)

# Choose SQLite automatically for pytest runs unless explicitly forced
_is_pytest = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("TESTING") == "1"
_force_pg_tests = os.getenv("FORCE_POSTGRES_TESTS") == "1"
if _is_pytest and not _force_pg_tests:
    DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///./test_touchrelay.db")
else:
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./touchrelay.db")
    # Normalize Render/Heroku style postgres URLs for SQLAlchemy 2.x
    if DATABASE_URL.startswith("postgres://"):
        DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql+psycopg2://", 1)


class Base(DeclarativeBase):
    pass


_is_sqlite = DATABASE_URL.startswith("sqlite")

pool_size = int(os.getenv("DB_POOL_SIZE", "5"))
max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "5"))
pool_timeout = int(os.getenv("DB_POOL_TIMEOUT", "10"))
pool_recycle = int(os.getenv("DB_POOL_RECYCLE_SECONDS", "900"))

# Per-connection defaults (can be overridden by PGOPTIONS or role settings)
pg_statement_timeout_ms = int(os.getenv("PG_STATEMENT_TIMEOUT_MS", "12000"))
pg_lock_timeout_ms = int(os.getenv("PG_LOCK_TIMEOUT_MS", "3000"))
db_app_name = os.getenv("DB_APP_NAME", "touchrelay")
db_connect_timeout = int(os.getenv("DB_CONNECT_TIMEOUT", "5"))

if _is_sqlite:
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        DATABASE_URL,
        connect_args={"connect_timeout": db_connect_timeout, "application_name": db_app_name},
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=os.getenv("DB_POOL_PRE_PING", "0") == "1",
    )
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Apply Postgres per-connection timeouts at DBAPI connect
def _on_connect(dbapi_connection, connection_record):  # type: ignore
    if not DATABASE_URL.startswith("postgres"):
        return
    cur = dbapi_connection.cursor()
    try:
        cur.execute("SET statement_timeout TO %s", (pg_statement_timeout_ms,))
        cur.execute("SET lock_timeout TO %s", (pg_lock_timeout_ms,))
    finally:
        cur.close()


event.listen(engine, "connect", _on_connect)
