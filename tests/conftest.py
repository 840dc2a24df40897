import pytest

from app.core.database import create_engine_from_settings, create_session_factory, init_db
from tests.factories import make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def engine(settings):
    engine = create_engine_from_settings(settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)
