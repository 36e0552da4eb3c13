"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from ledger.models.base import Base
from ledger.core.config import settings

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    import ledger.models  # noqa: F401  register every model with Base.metadata
    Base.metadata.create_all(bind=engine)
