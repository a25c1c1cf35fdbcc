"""Join/create workflow for a sprint's retrospective session.

The first facilitator to enter a sprint's retrospective provisions a realtime
session, waits for the substrate to publish its join URL, points that URL at
the retrospective route, stores it on the sprint and navigates there. Anyone
entering later reuses the stored URL.

Collaborators are duck-typed:

``substrate``
    ``create_session() -> token``, ``await wait_for_join_url(token) -> str``
    and ``discard_session(token)``.
``sprints``
    ``await get(sprint_id)`` returning an object with ``id`` and
    ``retrospective_url`` (or ``None``), and
    ``await save_retrospective_url(sprint_id, path)`` raising
    ``PersistenceError`` when the write fails.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from core.roles import Role, can_join_retrospective, can_provision_retrospective

logger = logging.getLogger(__name__)

JOIN_ENABLED = "enabled"
JOIN_LOADING = "loading"
JOIN_DISABLED = "disabled"


class PersistenceError(Exception):
    pass


@dataclass(frozen=True)
class Navigation:
    url: str
    created: bool


def rewrite_join_url(join_url: str, planning_route: str, retro_route: str) -> Tuple[str, str]:
    """Return ``(full_url, stored_path)`` for a substrate join URL.

    The planning route segment is swapped for the retrospective route; the
    stored path is everything from the retrospective route on, so it can be
    re-rooted on whatever origin serves the app.
    """
    parts = urlsplit(join_url)
    path = parts.path
    if planning_route and planning_route in path:
        path = path.replace(planning_route, retro_route, 1)
    elif retro_route not in path:
        path = retro_route
    full_url = urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))
    stored_path = urlunsplit(("", "", path[path.find(retro_route):], parts.query, parts.fragment))
    return full_url, stored_path


class RetrospectiveBootstrap:
    def __init__(
        self,
        substrate,
        sprints,
        base_url: str,
        retro_route: str = "/retrospective",
        planning_route: str = "/sprint-planning",
        join_url_timeout: Optional[float] = None,
    ) -> None:
        self.substrate = substrate
        self.sprints = sprints
        self.base_url = base_url.rstrip("/")
        self.retro_route = retro_route
        self.planning_route = planning_route
        self.join_url_timeout = join_url_timeout
        self._creating: Dict[int, asyncio.Task] = {}

    def is_creating(self, sprint_id: int) -> bool:
        task = self._creating.get(sprint_id)
        return task is not None and not task.done()

    def join_control(self, sprint, role: Role) -> str:
        has_url = bool(getattr(sprint, "retrospective_url", None))
        if can_provision_retrospective(role) and not has_url and self.is_creating(sprint.id):
            return JOIN_LOADING
        if can_join_retrospective(role, has_url):
            return JOIN_ENABLED
        return JOIN_DISABLED

    async def enter(self, sprint_id: int, role: Role) -> Optional[Navigation]:
        """Resolve where ``role`` should go for the sprint's retrospective.

        Returns ``None`` when the user stays on the planning view: unknown
        sprint, a role that cannot provision and no stored URL yet, or a failed
        provisioning.
        """
        sprint = await self.sprints.get(sprint_id)
        if sprint is None:
            logger.warning("Sprint %s not found", sprint_id)
            return None
        if sprint.retrospective_url:
            return Navigation(url=f"{self.base_url}{sprint.retrospective_url}", created=False)
        if not can_provision_retrospective(role):
            return None
        task = self._creating.get(sprint_id)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._provision(sprint_id))
            self._creating[sprint_id] = task
        # One caller going away must not cancel the provisioning others wait on.
        return await asyncio.shield(task)

    async def _provision(self, sprint_id: int) -> Optional[Navigation]:
        try:
            # A facilitator that read the sprint before a previous run finished
            # must join that session, not replace it.
            sprint = await self.sprints.get(sprint_id)
            if sprint is not None and sprint.retrospective_url:
                return Navigation(url=f"{self.base_url}{sprint.retrospective_url}", created=False)
            token = self.substrate.create_session()
            logger.info("Creating retrospective session for sprint %s", sprint_id)
            try:
                join_url = await asyncio.wait_for(
                    self.substrate.wait_for_join_url(token), timeout=self.join_url_timeout
                )
            except asyncio.TimeoutError:
                logger.error("No join URL published for sprint %s", sprint_id)
                self.substrate.discard_session(token)
                return None
            full_url, stored_path = rewrite_join_url(join_url, self.planning_route, self.retro_route)
            try:
                await self.sprints.save_retrospective_url(sprint_id, stored_path)
            except PersistenceError:
                logger.exception("Error updating sprint %s with retrospective URL", sprint_id)
                self.substrate.discard_session(token)
                return None
            logger.info("Updated sprint %s with retrospective URL %s", sprint_id, stored_path)
            return Navigation(url=full_url, created=True)
        finally:
            self._creating.pop(sprint_id, None)
