from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from perdexa.core.config import settings

engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db):
    """
    One unit of work: commit on success, roll back on any error.

    Nested use joins the outermost unit, so a service can call another
    service's public methods and still get a single commit.
    """
    if db.info.get("in_atomic"):
        yield db
        return
    db.info["in_atomic"] = True
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.info.pop("in_atomic", None)
