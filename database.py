"""
Database connection and session management
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session
from models import Base
import os
import logging

logger = logging.getLogger(__name__)

# Database URL from environment (required when the engine is first used)
DATABASE_URL = os.getenv('DATABASE_URL')

engine = None

# Session factory, bound in init_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)

# Thread-safe scoped session
ScopedSession = scoped_session(SessionLocal)


def init_engine(database_url=None, **engine_kwargs):
    """
    Create the engine and bind the session factories to it.

    Args:
        database_url: Overrides DATABASE_URL
        **engine_kwargs: Extra create_engine() arguments (tests pass poolclass)

    Returns:
        The SQLAlchemy engine
    """
    global engine

    url = database_url or DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith('postgresql'):
        options = {
            'pool_size': 10,
            'max_overflow': 20,
            'pool_pre_ping': True,  # Verify connections before using
        }
    else:
        options = {}
    options.update(engine_kwargs)

    engine = create_engine(url, echo=False, **options)
    SessionLocal.configure(bind=engine)
    ScopedSession.remove()
    logger.info(f"Database engine initialized ({engine.dialect.name})")
    return engine


def init_db():
    """Initialize database - create all tables"""
    if engine is None:
        init_engine()
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating database tables: {e}")
        raise
