import asyncio
from types import SimpleNamespace

import pytest

from core.roles import Role
from core.session_bootstrap import (
    JOIN_DISABLED,
    JOIN_ENABLED,
    JOIN_LOADING,
    Navigation,
    PersistenceError,
    RetrospectiveBootstrap,
    rewrite_join_url,
)

BASE = "https://retro.example.com"


class FakeSubstrate:
    def __init__(self, publish=True, delay=0.0):
        self.publish = publish
        self.delay = delay
        self.created = []
        self.discarded = []

    def create_session(self):
        token = f"tok{len(self.created) + 1}"
        self.created.append(token)
        return token

    async def wait_for_join_url(self, token):
        if not self.publish:
            await asyncio.Event().wait()
        await asyncio.sleep(self.delay)
        return f"{BASE}/sprint-planning?session={token}"

    def discard_session(self, token):
        self.discarded.append(token)


class FakeSprints:
    def __init__(self, sprints, fail=False):
        self.sprints = {s.id: s for s in sprints}
        self.fail = fail
        self.saved = []

    async def get(self, sprint_id):
        return self.sprints.get(sprint_id)

    async def save_retrospective_url(self, sprint_id, path):
        if self.fail:
            raise PersistenceError("database down")
        self.saved.append((sprint_id, path))
        self.sprints[sprint_id].retrospective_url = path


class HeldReadSprints(FakeSprints):
    """Takes the snapshot, then holds the next read until ``release`` is set."""

    def __init__(self, sprints):
        super().__init__(sprints)
        self.release = asyncio.Event()
        self.hold_next = True

    async def get(self, sprint_id):
        current = self.sprints.get(sprint_id)
        snapshot = SimpleNamespace(id=current.id, retrospective_url=current.retrospective_url)
        if self.hold_next:
            self.hold_next = False
            await self.release.wait()
        return snapshot


def sprint(sprint_id=1, url=None):
    return SimpleNamespace(id=sprint_id, retrospective_url=url)


def make(sprints=None, **kwargs):
    substrate = kwargs.pop("substrate", None) or FakeSubstrate()
    store = FakeSprints(sprints or [sprint()], fail=kwargs.pop("fail", False))
    return RetrospectiveBootstrap(substrate, store, base_url=BASE, **kwargs), substrate, store


def test_rewrite_join_url():
    full, stored = rewrite_join_url(
        "https://host/app/sprint-planning?session=abc", "/sprint-planning", "/retrospective"
    )
    assert full == "https://host/app/retrospective?session=abc"
    assert stored == "/retrospective?session=abc"


def test_rewrite_join_url_without_planning_segment():
    full, stored = rewrite_join_url("https://host/?session=abc", "/sprint-planning", "/retrospective")
    assert full == "https://host/retrospective?session=abc"
    assert stored == "/retrospective?session=abc"


def test_existing_url_is_reused_by_any_role():
    bootstrap, substrate, _ = make([sprint(url="/retrospective?session=xyz")])
    for role in Role:
        nav = asyncio.run(bootstrap.enter(1, role))
        assert nav == Navigation(url=f"{BASE}/retrospective?session=xyz", created=False)
    assert substrate.created == []


def test_facilitator_creates_and_persists():
    bootstrap, substrate, store = make()
    nav = asyncio.run(bootstrap.enter(1, Role.SCRUM_MASTER))
    assert nav == Navigation(url=f"{BASE}/retrospective?session=tok1", created=True)
    assert store.saved == [(1, "/retrospective?session=tok1")]
    assert substrate.discarded == []
    assert not bootstrap.is_creating(1)

    again = asyncio.run(bootstrap.enter(1, Role.SCRUM_MASTER))
    assert again.created is False
    assert substrate.created == ["tok1"]


def test_non_facilitator_without_url_stays():
    bootstrap, substrate, store = make()
    assert asyncio.run(bootstrap.enter(1, Role.DEVELOPER)) is None
    assert asyncio.run(bootstrap.enter(1, Role.PRODUCT_OWNER)) is None
    assert substrate.created == [] and store.saved == []


def test_unknown_sprint():
    bootstrap, substrate, _ = make()
    assert asyncio.run(bootstrap.enter(99, Role.SCRUM_MASTER)) is None
    assert substrate.created == []


def test_persistence_failure_discards_session():
    bootstrap, substrate, store = make(fail=True)
    assert asyncio.run(bootstrap.enter(1, Role.SCRUM_MASTER)) is None
    assert substrate.discarded == ["tok1"]
    assert store.sprints[1].retrospective_url is None
    assert not bootstrap.is_creating(1)


def test_join_url_timeout_discards_session():
    bootstrap, substrate, _ = make(substrate=FakeSubstrate(publish=False), join_url_timeout=0.05)
    assert asyncio.run(bootstrap.enter(1, Role.SCRUM_MASTER)) is None
    assert substrate.discarded == ["tok1"]


def test_concurrent_enters_share_one_session():
    bootstrap, substrate, store = make(substrate=FakeSubstrate(delay=0.05))

    async def scenario():
        return await asyncio.gather(
            bootstrap.enter(1, Role.SCRUM_MASTER), bootstrap.enter(1, Role.SCRUM_MASTER)
        )

    first, second = asyncio.run(scenario())
    assert first == second
    assert substrate.created == ["tok1"]
    assert len(store.saved) == 1


def test_join_control_states():
    bootstrap, _, _ = make(substrate=FakeSubstrate(delay=0.05))
    pending = sprint()
    assert bootstrap.join_control(pending, Role.SCRUM_MASTER) == JOIN_ENABLED
    assert bootstrap.join_control(pending, Role.DEVELOPER) == JOIN_DISABLED

    async def scenario():
        task = asyncio.create_task(bootstrap.enter(1, Role.SCRUM_MASTER))
        await asyncio.sleep(0)
        during = bootstrap.join_control(pending, Role.SCRUM_MASTER)
        await task
        return during

    assert asyncio.run(scenario()) == JOIN_LOADING
    started = sprint(url="/retrospective?session=tok1")
    assert bootstrap.join_control(started, Role.DEVELOPER) == JOIN_ENABLED
    assert bootstrap.join_control(started, Role.SCRUM_MASTER) == JOIN_ENABLED


def test_stale_read_after_provisioning_joins_existing_session():
    substrate = FakeSubstrate()
    store = HeldReadSprints([sprint()])
    bootstrap = RetrospectiveBootstrap(substrate, store, base_url=BASE)

    async def scenario():
        late = asyncio.create_task(bootstrap.enter(1, Role.SCRUM_MASTER))
        await asyncio.sleep(0)
        first = await bootstrap.enter(1, Role.SCRUM_MASTER)
        store.release.set()
        return first, await late

    first, late = asyncio.run(scenario())
    assert first.created is True
    assert late == Navigation(url=first.url, created=False)
    assert substrate.created == ["tok1"]
    assert store.saved == [(1, "/retrospective?session=tok1")]


def test_cancelled_waiter_does_not_abort_shared_provisioning():
    bootstrap, substrate, store = make(substrate=FakeSubstrate(delay=0.05))

    async def scenario():
        leaving = asyncio.create_task(bootstrap.enter(1, Role.SCRUM_MASTER))
        staying = asyncio.create_task(bootstrap.enter(1, Role.SCRUM_MASTER))
        await asyncio.sleep(0.01)
        leaving.cancel()
        with pytest.raises(asyncio.CancelledError):
            await leaving
        return await staying

    nav = asyncio.run(scenario())
    assert nav == Navigation(url=f"{BASE}/retrospective?session=tok1", created=True)
    assert substrate.created == ["tok1"]
    assert store.saved == [(1, "/retrospective?session=tok1")]
    assert substrate.discarded == []
