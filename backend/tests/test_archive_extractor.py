"""
Tests for ZIP extraction into blob storage.

Covers root file detection, common-folder stripping, validation before any
write, batched uploads and rollback of partially stored archives.
"""

import pytest

from digitaltwin.core.errors import BadRequestError
from digitaltwin.core.storage import archive_extractor
from digitaltwin.core.storage.archive_extractor import (
    MISSING_ROOT_MESSAGE,
    detect_root_file,
    extract_and_store_archive,
    new_base_path,
    normalize_archive_paths,
)


class FlakyStorage:
    """Storage double failing on one path, recording every call."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.saved = []
        self.deleted_batches = []

    async def save_with_path(self, data, path):
        if self.fail_on and path.endswith(self.fail_on):
            raise IOError(f"disk full writing {path}")
        self.saved.append(path)
        return path

    async def delete_batch(self, paths):
        self.deleted_batches.append(list(paths))
        return len(paths)


class TestDetectRootFile:
    def test_top_level_wins(self):
        paths = ["sub/tileset.json", "tileset.json", "a/b/tileset.json"]
        assert detect_root_file(paths) == "tileset.json"

    def test_one_level_deep_before_deeper(self):
        paths = ["a/b/tileset.json", "sub/tileset.json"]
        assert detect_root_file(paths) == "sub/tileset.json"

    def test_any_depth_fallback(self):
        assert detect_root_file(["x/y/z/tileset.json", "x/data.b3dm"]) == "x/y/z/tileset.json"

    def test_case_insensitive(self):
        assert detect_root_file(["Tileset.JSON"]) == "Tileset.JSON"

    def test_missing(self):
        assert detect_root_file(["data.b3dm", "readme.txt"]) is None


class TestNormalizeArchivePaths:
    def test_common_folder_stripped(self):
        mapping = normalize_archive_paths(["city/tileset.json", "city/tiles/0.b3dm"])
        assert mapping == {"city/tileset.json": "tileset.json", "city/tiles/0.b3dm": "tiles/0.b3dm"}

    def test_mixed_roots_kept(self):
        files = ["city/tileset.json", "other/0.b3dm"]
        assert normalize_archive_paths(files) == {name: name for name in files}

    def test_flat_archive_kept(self):
        assert normalize_archive_paths(["tileset.json", "0.b3dm"]) == {
            "tileset.json": "tileset.json",
            "0.b3dm": "0.b3dm",
        }


def test_new_base_path_is_unique():
    first, second = new_base_path("tilesets"), new_base_path("tilesets/")
    assert first.startswith("tilesets/")
    assert second.startswith("tilesets/")
    assert first != second


class TestExtractAndStoreArchive:
    @pytest.mark.asyncio
    async def test_extracts_under_base_path(self, storage, zip_bytes):
        data = zip_bytes({
            "city/tileset.json": '{"asset": {"version": "1.0"}}',
            "city/tiles/0.b3dm": b"\x00\x01",
        })
        result = await extract_and_store_archive(data, storage, "tilesets/123_abc")

        assert result.root_file == "tileset.json"
        assert result.file_count == 2
        assert await storage.retrieve("tilesets/123_abc/tiles/0.b3dm") == b"\x00\x01"
        assert b"version" in await storage.retrieve("tilesets/123_abc/tileset.json")

    @pytest.mark.asyncio
    async def test_directory_entries_skipped(self, storage, zip_bytes):
        data = zip_bytes({"root/": b"", "root/tileset.json": "{}"})
        result = await extract_and_store_archive(data, storage, "tilesets/1")
        assert result.file_count == 1

    @pytest.mark.asyncio
    async def test_missing_root_rejected_before_write(self, zip_bytes):
        fake = FlakyStorage()
        with pytest.raises(BadRequestError) as exc:
            await extract_and_store_archive(zip_bytes({"a.b3dm": b"1"}), fake, "tilesets/1")
        assert exc.value.message == MISSING_ROOT_MESSAGE
        assert fake.saved == []

    @pytest.mark.asyncio
    async def test_corrupt_archive(self):
        with pytest.raises(BadRequestError) as exc:
            await extract_and_store_archive(b"definitely not a zip", FlakyStorage(), "tilesets/1")
        assert exc.value.message.startswith("Invalid ZIP archive")

    @pytest.mark.asyncio
    async def test_empty_archive(self, zip_bytes):
        with pytest.raises(BadRequestError):
            await extract_and_store_archive(zip_bytes({}), FlakyStorage(), "tilesets/1")

    @pytest.mark.asyncio
    async def test_failure_rolls_back_stored_files(self, zip_bytes, monkeypatch):
        monkeypatch.setattr(archive_extractor, "UPLOAD_BATCH_SIZE", 2)
        files = {"tileset.json": "{}"}
        files.update({f"tiles/{i}.b3dm": b"x" for i in range(5)})
        fake = FlakyStorage(fail_on="tiles/3.b3dm")

        with pytest.raises(IOError):
            await extract_and_store_archive(zip_bytes(files), fake, "tilesets/9")

        # First batch fully stored, second batch partially; all of it rolled back
        assert len(fake.deleted_batches) == 1
        assert sorted(fake.deleted_batches[0]) == sorted(fake.saved)
        assert "tilesets/9/tiles/3.b3dm" not in fake.saved

    @pytest.mark.asyncio
    async def test_many_files_across_batches(self, storage, zip_bytes):
        files = {"tileset.json": "{}"}
        files.update({f"tiles/{i}.b3dm": bytes([i]) for i in range(25)})
        result = await extract_and_store_archive(zip_bytes(files), storage, "tilesets/big")
        assert result.file_count == 26
        assert await storage.retrieve("tilesets/big/tiles/24.b3dm") == bytes([24])
