import os

# Settings are read at import time; give the test run a complete environment.
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("BLUESKY_IDENTIFIER", "bot.test")
os.environ.setdefault("BLUESKY_PASSWORD", "app-password")
os.environ.setdefault("BLUESKY_HOST", "https://pds.test")
os.environ.setdefault("BOT_HANDLE", "@bot")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost/replybot_unused")

import pytest  # noqa: E402
from pytest_postgresql import factories  # noqa: E402

from fakes import Clock, FakeBluesky, FakeLLM, FakeQuotaDB, FakeStore  # noqa: E402

# Throwaway PostgreSQL server started from the local pg_ctl
pg_server = factories.postgresql_proc()


@pytest.fixture(scope="session")
def pg_dsn(request) -> str:
    """DSN of the database the queue tests run against.

    TEST_DATABASE_URL points at an existing server; otherwise one is started.
    """
    dsn = os.environ.get("TEST_DATABASE_URL")
    if dsn:
        return dsn

    proc = request.getfixturevalue("pg_server")
    password = getattr(proc, "password", None)
    auth = f"{proc.user}:{password}" if password else proc.user
    return f"postgresql://{auth}@{proc.host}:{proc.port}/postgres"


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def quota_db() -> FakeQuotaDB:
    return FakeQuotaDB()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def bluesky() -> FakeBluesky:
    return FakeBluesky()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()
