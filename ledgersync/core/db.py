from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from dotenv import load_dotenv

from ..config_manager import EnvConfig

# Load environment variables from .env file
load_dotenv()

# Direct DATABASE_URL, or one built from the POSTGRES_* components
DATABASE_URL = EnvConfig.get_database_url()


def _engine_options(url: str) -> dict:
    """Pool and timeout settings; only PostgreSQL gets the server-side options."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "pool_recycle": 1800,  # seconds
        "connect_args": {
            "connect_timeout": 10,
            "options": "-c statement_timeout=60000",
        },
    }


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """FastAPI dependency returning the session factory used by sync services."""
    return SessionLocal


def init_db(bind=None):
    # Models import happens here to avoid circular imports.
    from . import models
    models.Base.metadata.create_all(bind=bind or engine)
