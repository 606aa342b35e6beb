from typing import Generator
import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import get_settings
from .models.base import Base

logger = logging.getLogger(__name__)

def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions are used from FastAPI's worker threads
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)

engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db(bind: Engine = engine) -> None:
    """Create any missing tables"""
    # Registers the models on Base.metadata
    from .models import qc_models  # noqa: F401

    Base.metadata.create_all(bind=bind)
    logger.info(f"Database tables ready on {bind.url.render_as_string(hide_password=True)}")

def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI Depends"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
