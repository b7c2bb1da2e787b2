from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config.settings import settings


def build_engine(url: str, echo: bool = False):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": settings.sqlite_timeout}
    return create_engine(url, echo=echo, connect_args=connect_args)


engine = build_engine(settings.database_url, settings.database_echo)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """
    Yields a database session for the duration of one request.

    Yields:
        Session: A session bound to the configured engine, closed afterwards.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
