"""
Integration tests for the SQLAlchemy metadata store and user service,
running against a throwaway SQLite database (aiosqlite).
"""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio

from digitaltwin.core.auth.identity import Identity
from digitaltwin.core.auth.user_service import UserService
from digitaltwin.core.database.models import AssetRecord
from digitaltwin.core.shared.database_service import DatabaseService
from digitaltwin.core.shared.metadata_store import SQLAlchemyMetadataStore


@pytest_asyncio.fixture
async def db(tmp_path):
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path / 'metadata.db'}")
    await service.init_db()
    yield service
    await service.close()


@pytest.fixture
def sql_store(db):
    return SQLAlchemyMetadataStore(db)


def _record(name="assets", date=None, **fields):
    return AssetRecord(
        name=name,
        content_type="application/octet-stream",
        description=fields.pop("description", "d"),
        date=date or datetime(2024, 5, 1),
        **fields,
    )


class TestSQLAlchemyMetadataStore:
    @pytest.mark.asyncio
    async def test_save_assigns_id_and_defaults(self, sql_store):
        saved = await sql_store.save(_record(filename="a.bin"))
        assert saved.id is not None

        fetched = await sql_store.get_by_id(saved.id)
        assert fetched.filename == "a.bin"
        assert fetched.is_public is True
        assert fetched.upload_status is None

    @pytest.mark.asyncio
    async def test_get_missing(self, sql_store):
        assert await sql_store.get_by_id(999) is None

    @pytest.mark.asyncio
    async def test_update_ignores_immutable_fields(self, sql_store):
        saved = await sql_store.save(_record())
        original_date = saved.date

        updated = await sql_store.update_by_id(saved.id, {
            "description": "changed",
            "name": "tilesets",
            "date": datetime(2000, 1, 1),
        })

        assert updated.description == "changed"
        assert updated.name == "assets"
        assert updated.date == original_date

    @pytest.mark.asyncio
    async def test_update_unknown_field(self, sql_store):
        saved = await sql_store.save(_record())
        with pytest.raises(ValueError):
            await sql_store.update_by_id(saved.id, {"colour": "red"})

    @pytest.mark.asyncio
    async def test_update_missing_record(self, sql_store):
        assert await sql_store.update_by_id(999, {"description": "x"}) is None

    @pytest.mark.asyncio
    async def test_delete(self, sql_store):
        saved = await sql_store.save(_record())
        assert await sql_store.delete(saved.id) is True
        assert await sql_store.delete(saved.id) is False
        assert await sql_store.get_by_id(saved.id) is None

    @pytest.mark.asyncio
    async def test_date_range_filters_by_name_and_sorts(self, sql_store):
        base = datetime(2024, 1, 1)
        older = await sql_store.save(_record(date=base))
        newer = await sql_store.save(_record(date=base + timedelta(days=1)))
        await sql_store.save(_record(name="tilesets", date=base))
        await sql_store.save(_record(date=datetime(2030, 1, 1)))

        records = await sql_store.get_by_date_range("assets", base, base + timedelta(days=2))

        assert [r.id for r in records] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_date_range_limit(self, sql_store):
        for day in range(5):
            await sql_store.save(_record(date=datetime(2024, 1, 1) + timedelta(days=day)))
        records = await sql_store.get_by_date_range(
            "assets", datetime(1970, 1, 1), datetime(2099, 1, 1), limit=2
        )
        assert len(records) == 2
        assert records[0].date == datetime(2024, 1, 5)


class TestUserService:
    @pytest.mark.asyncio
    async def test_find_or_create_is_idempotent(self, db):
        users = UserService(db)
        first = await users.find_or_create_user(Identity(id="alice", roles=("editor",)))
        again = await users.find_or_create_user(Identity(id="alice", roles=("editor",)))
        other = await users.find_or_create_user(Identity(id="bob"))

        assert first.id == again.id
        assert other.id != first.id

    @pytest.mark.asyncio
    async def test_roles_are_synced(self, db):
        users = UserService(db)
        await users.find_or_create_user(Identity(id="alice", roles=("editor",)))
        await users.find_or_create_user(Identity(id="alice", roles=("admin", "editor")))

        stored = await users.get_by_external_id("alice")
        assert stored.roles == ["admin", "editor"]


class TestDatabaseService:
    @pytest.mark.asyncio
    async def test_health_check(self, db):
        health = await db.health_check()
        assert health == {"status": "healthy", "connected": True}

    @pytest.mark.asyncio
    async def test_session_rolls_back_on_error(self, db, sql_store):
        with pytest.raises(RuntimeError):
            async with db.get_session() as session:
                session.add(_record(filename="rolled-back.bin"))
                await session.flush()
                raise RuntimeError("abort")

        records = await sql_store.get_by_date_range("assets", datetime(1970, 1, 1), datetime(2099, 1, 1))
        assert records == []
