import io
import os
import shutil
import tempfile
import zipfile
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

import pytest


# Configure writable locations for tests before importing app modules.
# Use the system temp directory to avoid cluttering the repo tree.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="digitaltwin_pytest_"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR / 'metadata.db'}")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_DIR", str(_SESSION_DIR / "storage"))
os.environ.setdefault("LOCAL_PUBLIC_BASE_URL", "http://testserver/storage")
os.environ.setdefault("UPLOAD_TMP_DIR", str(_SESSION_DIR / "uploads"))

# Keep external integrations quiet during tests
os.environ.setdefault("USE_CELERY", "false")
os.environ.setdefault("AUTH_MODE", "gateway")

for sub in ("storage", "uploads"):
    Path(_SESSION_DIR / sub).mkdir(parents=True, exist_ok=True)


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


# =============================================================================
# FAKES
# =============================================================================


class FakeMetadataStore:
    """In-memory MetadataStore that assigns ids like the database would."""

    def __init__(self):
        self.records = {}
        self._next_id = 1
        self._clock = datetime(2024, 1, 1)
        self.fail_on_save = False
        self.fail_on_update = False

    async def save(self, record):
        if self.fail_on_save:
            raise RuntimeError("database unavailable")
        record.id = self._next_id
        self._next_id += 1
        # Strictly increasing dates keep list ordering deterministic
        self._clock += timedelta(seconds=1)
        record.date = self._clock
        self.records[record.id] = record
        return record

    async def get_by_id(self, record_id):
        return self.records.get(record_id)

    async def update_by_id(self, record_id, fields):
        if self.fail_on_update:
            raise RuntimeError("database unavailable")
        record = self.records.get(record_id)
        if record is None:
            return None
        for key, value in fields.items():
            if key in ("id", "date", "name"):
                continue
            setattr(record, key, value)
        return record

    async def delete(self, record_id):
        return self.records.pop(record_id, None) is not None

    async def get_by_date_range(self, name, start, end, limit=1000):
        matching = [
            r for r in self.records.values()
            if r.name == name and start <= r.date <= end
        ]
        matching.sort(key=lambda r: r.date, reverse=True)
        return matching[:limit]


class FakeUserService:
    """Maps external ids to sequential numeric user ids."""

    def __init__(self):
        self.users = {}
        self.fail = False

    async def find_or_create_user(self, identity):
        if self.fail:
            raise RuntimeError("user store unavailable")
        if identity.id not in self.users:
            self.users[identity.id] = SimpleNamespace(
                id=len(self.users) + 1,
                external_id=identity.id,
                roles=list(identity.roles),
            )
        return self.users[identity.id]


class FakeUploadQueue:
    def __init__(self):
        self.jobs = []
        self.fail = False

    async def enqueue(self, job_id, payload):
        from digitaltwin.core.ingestion.upload_queue import QueuedJob

        if self.fail:
            raise ConnectionError("broker unreachable")
        self.jobs.append((job_id, payload))
        return QueuedJob(id=job_id)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def store():
    return FakeMetadataStore()


@pytest.fixture
def users():
    return FakeUserService()


@pytest.fixture
def upload_queue():
    return FakeUploadQueue()


@pytest.fixture
def storage(tmp_path):
    from digitaltwin.core.storage.local_storage import LocalStorageService

    return LocalStorageService(tmp_path / "blobs", "http://cdn.test/storage")


@pytest.fixture
def resolver(users):
    from digitaltwin.core.auth.auth_policy import AuthPolicy, CallerResolver

    return CallerResolver(AuthPolicy.gateway(), users)


@pytest.fixture
def make_manager(store, storage, resolver):
    """Factory for managers sharing the test store, storage and resolver."""
    from digitaltwin.core.assets import (
        AssetsManager,
        AssetsManagerConfig,
        MapLayerVariant,
        SimpleAssetVariant,
        TilesetVariant,
    )

    presets = {
        "assets": (SimpleAssetVariant, None, "application/octet-stream"),
        "tilesets": (TilesetVariant, ".zip", "application/json"),
        "maps": (MapLayerVariant, ".json", "application/json"),
    }

    def _make(kind="assets", queue=None, resolver_override=None, batch_concurrency=5):
        variant_cls, extension, content_type = presets[kind]
        config = AssetsManagerConfig(
            name=kind,
            description=f"{kind} under test",
            endpoint=kind,
            content_type=content_type,
            extension=extension,
            tags=[kind],
        )
        return AssetsManager(
            config,
            variant_cls(),
            store=store,
            storage=storage,
            resolver=resolver_override or resolver,
            queue=queue,
            batch_concurrency=batch_concurrency,
        )

    return _make


@pytest.fixture
def zip_bytes():
    """Factory building in-memory ZIP archives from {name: content} dicts."""

    def _build(files):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, content in files.items():
                if isinstance(content, str):
                    content = content.encode("utf-8")
                archive.writestr(name, content)
        return buffer.getvalue()

    return _build


@pytest.fixture
def owner_headers():
    return {"x-user-id": "alice"}


@pytest.fixture
def other_headers():
    return {"x-user-id": "bob"}


@pytest.fixture
def admin_headers():
    return {"x-user-id": "root", "x-user-roles": "admin"}
