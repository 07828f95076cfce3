import os
import tempfile

from cryptography.fernet import Fernet

# Settings are read once; point them at a throwaway database before any import
_TMP_DIR = tempfile.mkdtemp(prefix="thinkspace-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_DIR}/test.db"
os.environ["OPENROUTER_API_KEY"] = "server-test-key"
os.environ["BYOK_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["CURATED_MODELS"] = "openai/gpt-5-mini"
os.environ["RUN_WORKER_IN_PROCESS"] = "false"
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

from thinkspace.database import AsyncSessionLocal, Base, engine  # noqa: E402
from thinkspace.utils import metrics  # noqa: E402
from tests.fakes import FakeClock  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
async def session_factory():
    """Fresh schema on the test database for every test that touches SQL."""
    from thinkspace.models import request_job, conversation, usage_event, user_account  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield AsyncSessionLocal
    await engine.dispose()
