from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import pytest_asyncio

# Add backend folder to sys.path so `import receiptflow...` works in tests when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402

from receiptflow.core.database import create_tables, make_session_factory  # noqa: E402
from receiptflow.services.receipt_store import ReceiptStore  # noqa: E402
from receiptflow.services.storage_service import StorageService  # noqa: E402

from fakes import FULL_DRAFT  # noqa: E402


@pytest.fixture
def full_draft():
    return json.loads(json.dumps(FULL_DRAFT))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await create_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def storage(tmp_path):
    return StorageService(backend="filesystem", base_dir=str(tmp_path / "files"))


@pytest.fixture
def store(session_factory, storage):
    return ReceiptStore(session_factory, storage)


@pytest.fixture
def make_receipt(store, storage):
    """Upload a small PDF for ``owner`` and return the pending receipt."""

    async def _make(owner: str = "user_a", name: str = "r1.pdf"):
        file_id = await storage.save(b"%PDF-1.4 test", owner, name, "application/pdf")
        return await store.create(owner_id=owner, file_id=file_id, file_name=name, mime_type="application/pdf", size=13)

    return _make
