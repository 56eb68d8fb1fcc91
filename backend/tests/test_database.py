"""
Unit Tests for the MongoDB handle
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

import database


class TestRequiredEnv:

    def test_missing_vars_are_all_named(self, monkeypatch):
        monkeypatch.delenv("MONGO_URL", raising=False)
        monkeypatch.delenv("DB_NAME", raising=False)

        with pytest.raises(ValueError) as exc:
            database.validate_required_env_vars()

        assert "MONGO_URL" in str(exc.value)
        assert "DB_NAME" in str(exc.value)

    def test_present_vars_pass(self, monkeypatch):
        monkeypatch.setenv("MONGO_URL", "mongodb://localhost:27017")
        monkeypatch.setenv("DB_NAME", "voice_minutes_test")

        database.validate_required_env_vars()


class TestConnectionCheck:

    @pytest.mark.asyncio
    async def test_ping_failure_is_reported(self, monkeypatch):
        client = MagicMock()
        client.admin.command = AsyncMock(side_effect=RuntimeError("no primary"))
        monkeypatch.setattr(database, "client", client)

        ok, error = await database.check_db_connection()

        assert not ok
        assert "no primary" in error

    @pytest.mark.asyncio
    async def test_healthy_connection(self, monkeypatch):
        client = MagicMock()
        client.admin.command = AsyncMock(return_value={"ok": 1})
        db = MagicMock()
        db.list_collection_names = AsyncMock(return_value=["user_minutes"])
        monkeypatch.setattr(database, "client", client)
        monkeypatch.setattr(database, "db", db)

        assert await database.check_db_connection() == (True, None)
        assert database.get_database() is db
