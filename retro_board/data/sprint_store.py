import asyncio
from types import SimpleNamespace
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

import data.db as db_module
from core.session_bootstrap import PersistenceError
from data.models import Sprint, now_utc


class SqlSprintStore:
    """Sprint reads/writes for the retrospective bootstrap.

    SQLAlchemy is sync: every query runs in a worker thread so the event loop
    serving the sockets never blocks on the database.
    """

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory

    def _session(self):
        factory = self._session_factory or db_module.SessionLocal
        return factory()

    async def get(self, sprint_id: int) -> Optional[SimpleNamespace]:
        return await asyncio.to_thread(self._get, sprint_id)

    def _get(self, sprint_id: int) -> Optional[SimpleNamespace]:
        db = self._session()
        try:
            sprint = db.get(Sprint, sprint_id)
            if not sprint:
                return None
            # Detach from the session for safe cross-thread usage.
            return SimpleNamespace(
                id=sprint.id,
                project_id=sprint.project_id,
                retrospective_url=sprint.retrospective_url,
            )
        finally:
            db.close()

    async def save_retrospective_url(self, sprint_id: int, path: str) -> None:
        await asyncio.to_thread(self._save_retrospective_url, sprint_id, path)

    def _save_retrospective_url(self, sprint_id: int, path: str) -> None:
        db = self._session()
        try:
            sprint = db.get(Sprint, sprint_id)
            if not sprint:
                raise PersistenceError(f"Sprint {sprint_id} not found")
            sprint.retrospective_url = path
            sprint.updated_at = now_utc()
            db.commit()
        except SQLAlchemyError as err:
            db.rollback()
            raise PersistenceError(str(err)) from err
        finally:
            db.close()
