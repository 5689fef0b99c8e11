from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway sqlite database before any docledger import.
_TEST_ROOT = tempfile.mkdtemp(prefix="docledger-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_ROOT}/docledger.db")
os.environ.setdefault("REINDEX_DISPATCH_MODE", "db")
os.environ.setdefault("STORAGE_BACKEND", "filesystem")
os.environ.setdefault("STORAGE_BASE_DIR", f"{_TEST_ROOT}/objects")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from docledger.domain.models import Base  # noqa: E402
from docledger.persistence.db import SessionLocal, engine  # noqa: E402
from docledger.services.documents import DocumentOrchestrator  # noqa: E402
from docledger.services.quota import QuotaLedger  # noqa: E402
from docledger.services.reindex.queue import ReindexQueue  # noqa: E402
from docledger.services.reindex.worker import ReindexWorker  # noqa: E402
from docledger.services.resilience import RetryPolicy  # noqa: E402
from docledger.services.storage.backends import FilesystemBackend  # noqa: E402
from docledger.services.storage.object_store import ObjectStore  # noqa: E402
from docledger.services.telemetry import reset_telemetry  # noqa: E402
from docledger.tests.utils.fakes import FakeClock, FlakyBackend, RecordingSleep  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def db_schema() -> None:
    # Fresh schema per test; dispose so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    reset_telemetry()
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def session():
    async with SessionLocal() as db_session:
        yield db_session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def backend(tmp_path) -> FlakyBackend:
    return FlakyBackend(
        FilesystemBackend(
            base_dir=tmp_path / "objects",
            bucket="test-bucket",
            base_url="http://objects.test",
            signing_secret="test-secret",
        )
    )


@pytest.fixture
def store(backend: FlakyBackend, clock: FakeClock, sleeper: RecordingSleep) -> ObjectStore:
    return ObjectStore(
        backend,
        retry_policy=RetryPolicy(timeout_ms=5000, max_attempts=3, backoff_ms=200),
        upload_grant_ttl_s=900,
        download_grant_ttl_s=3600,
        chunk_size=4,
        time_provider=clock.now,
        sleep=sleeper,
    )


@pytest.fixture
def ledger(clock: FakeClock) -> QuotaLedger:
    return QuotaLedger(time_provider=clock.now)


@pytest.fixture
def queue(clock: FakeClock) -> ReindexQueue:
    return ReindexQueue(time_provider=clock.now, max_attempts=3, retry_delays_s=[30, 120, 300], sla_seconds=300)


@pytest.fixture
def orchestrator(store: ObjectStore, queue: ReindexQueue, ledger: QuotaLedger, clock: FakeClock) -> DocumentOrchestrator:
    return DocumentOrchestrator(
        store=store,
        queue=queue,
        ledger=ledger,
        strict_reservation=True,
        time_provider=clock.now,
    )


@pytest.fixture
def worker(store: ObjectStore, queue: ReindexQueue) -> ReindexWorker:
    return ReindexWorker(store=store, queue=queue, session_factory=SessionLocal, batch_size=10, concurrency=1)
