# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import pytest
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import MagicMock


# =============================================================================
# DETERMINISTIC TIME
# =============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 1, 8, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeTimer:
    """Stand-in for threading.Timer; runs only when fired."""

    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    @property
    def active(self) -> bool:
        return self.started and not self.cancelled and not self.fired

    def fire(self) -> None:
        assert self.active, "timer is not active"
        self.fired = True
        self.callback()


class FakeTimerFactory:
    """TimerFactory that records every timer it creates."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def active(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.active]

    def fire_all(self) -> int:
        """Fire every active timer (including ones scheduled while firing)."""
        fired = 0
        while self.active:
            self.active[0].fire()
            fired += 1
        return fired


@pytest.fixture
def clock():
    """Fake clock starting on 2024-03-01 08:00"""
    return FakeClock()


@pytest.fixture
def timers():
    """Deterministic timer factory"""
    return FakeTimerFactory()


# =============================================================================
# SERVER FAKES
# =============================================================================

class FakeSender:
    """
    Scripted replacement for SyncApiClient.send_action.

    ``script`` maps an entity id to a list of outcomes consumed in order.
    An outcome that is an exception is raised; anything else is returned.
    Unscripted actions succeed and echo their payload.
    """

    def __init__(self, script: Optional[Dict[str, List[Any]]] = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.sent = []

    def __call__(self, action):
        self.sent.append(action)
        outcomes = self.script.get(action.entity_id)
        if outcomes:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return {**action.payload, "server": True}

    @property
    def sent_ids(self) -> List[int]:
        return [a.id for a in self.sent]


class FakeProbe:
    """Health probe whose answer the test controls."""

    def __init__(self, result: bool = True):
        self.result = result
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def sender():
    """Sender that accepts everything"""
    return FakeSender()


@pytest.fixture
def probe():
    """Probe that reports the server reachable"""
    return FakeProbe(True)


def make_response(status_code: int = 200, body: Any = None, text: str = "") -> MagicMock:
    """Build a mocked requests.Response"""
    response = MagicMock()
    response.status_code = status_code
    response.reason = "Reason"
    if body is None:
        response.content = text.encode()
        response.text = text
        response.json.side_effect = ValueError("No JSON")
    else:
        response.content = b"{...}"
        response.text = str(body)
        response.json.return_value = body
    return response


@pytest.fixture
def mock_session():
    """Mock requests.Session with real header dict"""
    session = MagicMock()
    session.headers = {}
    session.request.return_value = make_response(200, {"success": True})
    return session


# =============================================================================
# STORE FIXTURES
# =============================================================================

@pytest.fixture
def store(tmp_path, clock):
    """Initialized LocalDurableStore in a temp directory"""
    from educafric_core.offline.local_store import LocalDurableStore

    db = LocalDurableStore(tmp_path / "offline.db", clock=clock)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def queue(store):
    """ActionQueue over the temp store"""
    from educafric_core.offline.action_queue import ActionQueue

    return ActionQueue(store)


@pytest.fixture
def online_monitor(probe, timers, clock):
    """NetworkMonitor already confirmed ONLINE"""
    from educafric_core.offline.network_monitor import NetworkMonitor

    monitor = NetworkMonitor(probe=probe, timer_factory=timers, clock=clock)
    monitor.handle_online_event()
    yield monitor
    monitor.close()


@pytest.fixture
def settings(tmp_path):
    """SyncSettings pointing at a temp data dir"""
    from educafric_core.config import SyncSettings

    return SyncSettings(api_base_url="http://educafric.test", data_dir=str(tmp_path / "data"))


# =============================================================================
# FACTORY FIXTURES
# =============================================================================

@pytest.fixture
def make_sender():
    """Build a scripted sender: make_sender({"A": [error, record]})"""
    return FakeSender


@pytest.fixture
def response():
    """Build a mocked requests.Response: response(404, {"error": "..."})"""
    return make_response
