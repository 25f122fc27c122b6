from __future__ import annotations

import pytest

from receiptflow.core.config import settings
from receiptflow.core.database import SQLITE_FALLBACK_URL, normalise_database_url


def test_sqlite_uses_aiosqlite():
    assert normalise_database_url("sqlite:///./local.db") == "sqlite+aiosqlite:///./local.db"


def test_remote_postgres_gets_psycopg_and_ssl():
    url = normalise_database_url("postgres://u:p@db.example.com:5432/receipts")
    assert url.startswith("postgresql+psycopg://u:p@db.example.com:5432/receipts")
    assert "sslmode=require" in url


def test_local_postgres_keeps_plain_connection():
    url = normalise_database_url("postgresql://u:p@localhost/receipts")
    assert url == "postgresql+psycopg://u:p@localhost/receipts"


def test_missing_url_fails_fast_unless_fallback_enabled(monkeypatch):
    monkeypatch.setattr(settings, "DB_DEV_FALLBACK_SQLITE", False)
    with pytest.raises(RuntimeError):
        normalise_database_url(None)
    monkeypatch.setattr(settings, "DB_DEV_FALLBACK_SQLITE", True)
    assert normalise_database_url(None) == SQLITE_FALLBACK_URL
