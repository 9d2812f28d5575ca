import pytest

from collector.database import build_engine, build_session_factory, init_db
from collector.store import RunStore, ScheduleStore


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    engine = build_engine("sqlite://")
    init_db(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def run_store(session_factory):
    return RunStore(session_factory)


@pytest.fixture
def schedule_store(session_factory):
    return ScheduleStore(session_factory)


@pytest.fixture
def no_sleep():
    """Records requested delays instead of sleeping."""
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    sleep.delays = delays
    return sleep
