from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config.settings import settings


def _connect_args(url: str) -> dict:
    # SQLite connections are shared with the threadpool that runs sync handlers.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.database_url),
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
