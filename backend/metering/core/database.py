from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from metering.core.config import settings


class Base(DeclarativeBase):
    pass


# Row-level locks (SELECT ... FOR UPDATE) serialize per-account mutations, so
# every request needs its own pooled connection rather than a shared one.
engine = create_engine(
    settings.DATABASE_URL,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=False,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
