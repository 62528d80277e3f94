"""
Shared fixtures: a throwaway database file per test, a config with a known
password and salt, and a clock the tests can move forward.
"""

import pytest

from scoretracker import (
    DatabaseManager,
    InMemorySessionStore,
    QRTokenService,
    ScoreTrackerSystem,
    SessionAuthenticator,
    TrackerConfig,
)

TEST_PASSWORD = "let-me-score"
TEST_SALT = "pepper"
START_TIME = 1_700_000_000.0

ENV_VARS = [
    "APP_NAME",
    "DEBUG_MODE",
    "DB_PATH",
    "DB_BUSY_TIMEOUT",
    "ADMIN_PASSWORD",
    "PASSWORD_SALT",
    "SESSION_NAME",
    "SESSION_LIFETIME",
    "QR_MAX_USES",
    "QR_BASE_URL",
]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path, monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    cfg = TrackerConfig(str(tmp_path / "tracker_config.json"), create_missing=False)
    cfg.set("auth", "admin_password", value=TEST_PASSWORD)
    cfg.set("auth", "password_salt", value=TEST_SALT)
    cfg.set("database", "path", value=str(tmp_path / "scores.db"))
    cfg.set("qr", "base_url", value="http://testserver")
    return cfg


@pytest.fixture
async def db(config):
    manager = DatabaseManager(config.get("database", "path"))
    await manager.init_db()
    return manager


@pytest.fixture
def qr_service(db, config, clock):
    return QRTokenService(db, config, clock=clock)


@pytest.fixture
def session_store():
    return InMemorySessionStore()


@pytest.fixture
def authenticator(config, session_store, qr_service, clock):
    return SessionAuthenticator(config, session_store, qr_tokens=qr_service, clock=clock)


@pytest.fixture
async def system(config, clock):
    tracker = ScoreTrackerSystem(config=config, clock=clock)
    await tracker.init_db()
    return tracker


@pytest.fixture
async def client(aiohttp_client, system):
    return await aiohttp_client(system.create_app())


@pytest.fixture
async def auth_client(client):
    resp = await client.post("/api/auth/login", json={"password": TEST_PASSWORD})
    assert resp.status == 200
    return client


@pytest.fixture
def client_factory(aiohttp_client, system):
    """Extra clients against the same store and sessions, each with its own cookie jar."""

    async def factory():
        return await aiohttp_client(system.create_app())

    return factory
