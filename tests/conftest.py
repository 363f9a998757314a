import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))
from helpdesk.models import build_engine, build_session_factory, init_db  # noqa: E402


@pytest.fixture
def db():
    engine = build_engine("sqlite://")
    factory = build_session_factory(engine)
    init_db(engine, factory)
    session = factory()
    yield session
    factory.remove()
    engine.dispose()
