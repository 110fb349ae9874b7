import fakeredis
import httpx
import pytest
import pytest_asyncio

from ticket_engine import deps
from ticket_engine.db import Base, make_engine, make_sessionmaker
from ticket_engine.main import app
from tests.helpers import FakeProvider


@pytest.fixture
def session_factory(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'tickets.db'}")
    Base.metadata.create_all(bind=eng)
    try:
        yield make_sessionmaker(eng)
    finally:
        eng.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def redis():
    r = fakeredis.FakeAsyncRedis(decode_responses=True)
    await r.flushall()
    try:
        yield r
    finally:
        await r.aclose()


@pytest_asyncio.fixture
async def client(session_factory, redis, provider):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_redis] = lambda: redis
    app.dependency_overrides[deps.get_payment_provider] = lambda: provider
    try:
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=10.0) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
