"""
Tests for AssetsManager with the simple asset and map layer variants.

Covers:
- Upload (JSON base64 and staged file), ownership and visibility
- List filtering and ordering
- Fetch with read access control and cross-manager isolation
- Metadata update and delete permissions
- Batch upload and batch delete
- Map layer uploads
"""

import base64

import pytest

from digitaltwin.core.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    UnauthorizedError,
)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _upload_fields(**overrides):
    fields = {
        "description": "Pump house model",
        "source": "https://example.org/pump",
        "filename": "pump.glb",
        "file": _b64(b"glTF-binary"),
    }
    fields.update(overrides)
    return fields


# =============================================================================
# UPLOAD
# =============================================================================


class TestUpload:
    @pytest.mark.asyncio
    async def test_json_upload_stores_blob_and_record(self, make_manager, store, storage, owner_headers):
        manager = make_manager("assets")
        result = await manager.upload(owner_headers, _upload_fields())

        assert result.status_code == 200
        assert result.body["message"] == "Asset uploaded successfully"
        record = store.records[result.body["id"]]
        assert record.name == "assets"
        assert record.owner_id == 1
        assert record.is_public is True
        assert record.filename == "pump.glb"
        assert record.url.startswith("assets/") and record.url.endswith(".glb")
        assert await storage.retrieve(record.url) == b"glTF-binary"

    @pytest.mark.asyncio
    async def test_staged_file_upload(self, make_manager, store, tmp_path, owner_headers):
        staged = tmp_path / "upload-1.bin"
        staged.write_bytes(b"raw-bytes")
        manager = make_manager("assets")

        result = await manager.upload(
            owner_headers,
            {"description": "d", "source": "https://example.org", "is_public": "false"},
            file_path=str(staged),
            filename="scan.las",
            size=9,
        )

        record = store.records[result.body["id"]]
        assert record.is_public is False
        assert record.filename == "scan.las"

    @pytest.mark.asyncio
    async def test_upload_requires_authentication(self, make_manager, store):
        manager = make_manager("assets")
        with pytest.raises(UnauthorizedError):
            await manager.upload({}, _upload_fields())
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_missing_source(self, make_manager, owner_headers):
        manager = make_manager("assets")
        with pytest.raises(BadRequestError) as exc:
            await manager.upload(owner_headers, _upload_fields(source=""))
        assert exc.value.message == "Missing required fields: description, source, file"

    @pytest.mark.asyncio
    async def test_invalid_base64(self, make_manager, owner_headers):
        manager = make_manager("assets")
        with pytest.raises(BadRequestError) as exc:
            await manager.upload(owner_headers, _upload_fields(file="***"))
        assert "Invalid base64 data for file: pump.glb" in exc.value.message

    @pytest.mark.asyncio
    async def test_record_failure_removes_blob(self, make_manager, store, storage, owner_headers, tmp_path):
        store.fail_on_save = True
        manager = make_manager("assets")
        with pytest.raises(RuntimeError):
            await manager.upload(owner_headers, _upload_fields())
        blob_dir = tmp_path / "blobs" / "assets"
        assert not blob_dir.exists() or list(blob_dir.iterdir()) == []


# =============================================================================
# LIST / FETCH
# =============================================================================


class TestListAndFetch:
    @pytest.mark.asyncio
    async def test_list_filters_private_and_orders_newest_first(
        self, make_manager, owner_headers, other_headers, admin_headers
    ):
        manager = make_manager("assets")
        first = await manager.upload(owner_headers, _upload_fields(description="public"))
        second = await manager.upload(owner_headers, _upload_fields(description="private", is_public=False))

        anonymous = await manager.list_assets({})
        assert [item["id"] for item in anonymous] == [first.body["id"]]

        stranger = await manager.list_assets(other_headers)
        assert [item["id"] for item in stranger] == [first.body["id"]]

        owner = await manager.list_assets(owner_headers)
        assert [item["id"] for item in owner] == [second.body["id"], first.body["id"]]

        admin = await manager.list_assets(admin_headers)
        assert len(admin) == 2

    @pytest.mark.asyncio
    async def test_list_format(self, make_manager, owner_headers):
        manager = make_manager("assets")
        result = await manager.upload(owner_headers, _upload_fields())
        [item] = await manager.list_assets({})
        record_id = result.body["id"]
        assert item["url"] == f"/assets/{record_id}"
        assert item["download_url"] == f"/assets/{record_id}/download"
        assert item["contentType"] == "application/octet-stream"
        assert item["source"] == "https://example.org/pump"

    @pytest.mark.asyncio
    async def test_fetch_public_anonymously(self, make_manager, owner_headers):
        manager = make_manager("assets")
        result = await manager.upload(owner_headers, _upload_fields())
        content = await manager.get_asset(result.body["id"], {})
        assert content.data == b"glTF-binary"
        assert content.filename == "pump.glb"

    @pytest.mark.asyncio
    async def test_fetch_private(self, make_manager, owner_headers, other_headers, admin_headers):
        manager = make_manager("assets")
        result = await manager.upload(owner_headers, _upload_fields(is_public="false"))
        record_id = result.body["id"]

        with pytest.raises(UnauthorizedError):
            await manager.get_asset(record_id, {})
        with pytest.raises(ForbiddenError):
            await manager.get_asset(record_id, other_headers)
        assert (await manager.get_asset(record_id, owner_headers)).data == b"glTF-binary"
        assert (await manager.get_asset(record_id, {"x-user-roles": "admin"})).data == b"glTF-binary"

    @pytest.mark.asyncio
    async def test_record_of_other_manager_is_not_found(self, make_manager, owner_headers):
        assets = make_manager("assets")
        maps = make_manager("maps")
        result = await assets.upload(owner_headers, _upload_fields())
        with pytest.raises(NotFoundError) as exc:
            await maps.get_asset(result.body["id"], owner_headers)
        assert exc.value.message == "Asset not found"

    @pytest.mark.asyncio
    async def test_missing_record(self, make_manager):
        with pytest.raises(NotFoundError):
            await make_manager("assets").get_asset(404, {})


# =============================================================================
# UPDATE / DELETE
# =============================================================================


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_owner_updates_metadata(self, make_manager, store, owner_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]

        body = await manager.update_asset(
            record_id, owner_headers, {"description": "new", "is_public": "false"}
        )

        assert body == {"message": "Asset metadata updated successfully"}
        assert store.records[record_id].description == "new"
        assert store.records[record_id].is_public is False

    @pytest.mark.asyncio
    async def test_update_requires_a_field(self, make_manager, owner_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        with pytest.raises(BadRequestError) as exc:
            await manager.update_asset(record_id, owner_headers, {})
        assert exc.value.message == (
            "At least one field (description, source, or is_public) must be provided for update"
        )

    @pytest.mark.asyncio
    async def test_update_rejects_bad_source(self, make_manager, owner_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        with pytest.raises(BadRequestError) as exc:
            await manager.update_asset(record_id, owner_headers, {"source": "nope"})
        assert exc.value.message == "Invalid source URL"

    @pytest.mark.asyncio
    async def test_update_by_stranger_forbidden(self, make_manager, owner_headers, other_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        with pytest.raises(ForbiddenError) as exc:
            await manager.update_asset(record_id, other_headers, {"description": "mine now"})
        assert exc.value.message == "You can only modify your own assets"

    @pytest.mark.asyncio
    async def test_delete_removes_blob_and_record(self, make_manager, store, storage, owner_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        blob = store.records[record_id].url

        body = await manager.delete_asset(record_id, owner_headers)

        assert body == {"message": "Asset deleted successfully"}
        assert record_id not in store.records
        with pytest.raises(NotFoundError):
            await storage.retrieve(blob)

    @pytest.mark.asyncio
    async def test_delete_by_stranger_forbidden(self, make_manager, store, owner_headers, other_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        with pytest.raises(ForbiddenError) as exc:
            await manager.delete_asset(record_id, other_headers)
        assert exc.value.message == "You can only delete your own assets"
        assert record_id in store.records

    @pytest.mark.asyncio
    async def test_admin_deletes_any(self, make_manager, store, owner_headers, admin_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        await manager.delete_asset(record_id, admin_headers)
        assert record_id not in store.records

    @pytest.mark.asyncio
    async def test_delete_survives_missing_blob(self, make_manager, store, storage, owner_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        await storage.delete(store.records[record_id].url)
        await manager.delete_asset(record_id, owner_headers)
        assert record_id not in store.records


# =============================================================================
# BATCH
# =============================================================================


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_upload(self, make_manager, store, owner_headers):
        manager = make_manager("assets")
        requests = [
            _upload_fields(filename="a.glb"),
            _upload_fields(filename="b.glb", is_public=False),
        ]

        report = await manager.upload_batch(owner_headers, requests)

        assert report.status_code == 200
        assert report.to_response("uploaded")["message"] == "2/2 assets uploaded successfully"
        assert sorted(r.filename for r in store.records.values()) == ["a.glb", "b.glb"]

    @pytest.mark.asyncio
    async def test_invalid_item_rejects_whole_batch(self, make_manager, store, owner_headers):
        manager = make_manager("assets")
        with pytest.raises(BadRequestError):
            await manager.upload_batch(owner_headers, [_upload_fields(), _upload_fields(file="!!")])
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_storage_failure_on_one_item_is_isolated(
        self, make_manager, store, storage, owner_headers, monkeypatch
    ):
        manager = make_manager("assets")
        real_save = storage.save

        async def flaky_save(data, folder, filename):
            if data == b"second":
                raise RuntimeError("storage down")
            return await real_save(data, folder, filename)

        monkeypatch.setattr(storage, "save", flaky_save)
        requests = [
            _upload_fields(filename="a.glb", file=_b64(b"first")),
            _upload_fields(filename="b.glb", file=_b64(b"second")),
            _upload_fields(filename="c.glb", file=_b64(b"third")),
        ]

        report = await manager.upload_batch(owner_headers, requests)
        body = report.to_response("uploaded")

        assert report.status_code == 207
        assert body["results"] == [
            {"filename": "a.glb", "success": True},
            {"filename": "b.glb", "success": False, "error": "storage down"},
            {"filename": "c.glb", "success": True},
        ]
        assert sorted(r.filename for r in store.records.values()) == ["a.glb", "c.glb"]

    @pytest.mark.asyncio
    async def test_bad_extension_in_batch_stores_nothing(self, make_manager, store, storage, owner_headers):
        manager = make_manager("tilesets")
        requests = [
            _upload_fields(filename="a.zip"),
            _upload_fields(filename="b.tar"),
            _upload_fields(filename="c.zip"),
        ]

        with pytest.raises(BadRequestError) as exc:
            await manager.upload_batch(owner_headers, requests)

        assert exc.value.message == "Invalid file extension for b.tar. Expected: .zip"
        assert store.records == {}

    @pytest.mark.asyncio
    async def test_batch_delete_repeated_id(self, make_manager, store, owner_headers):
        manager = make_manager("assets")
        record_id = (await manager.upload(owner_headers, _upload_fields())).body["id"]

        report = await manager.delete_batch(owner_headers, [record_id, str(record_id)])
        body = report.to_response("deleted")

        assert report.status_code == 207
        assert body["results"][0] == {"id": record_id, "success": True}
        assert body["results"][1] == {"id": str(record_id), "success": False, "error": "Asset not found"}
        assert record_id not in store.records

    @pytest.mark.asyncio
    async def test_batch_delete_partial(self, make_manager, store, owner_headers, other_headers):
        manager = make_manager("assets")
        mine = (await manager.upload(owner_headers, _upload_fields())).body["id"]
        theirs = (await manager.upload(other_headers, _upload_fields())).body["id"]

        report = await manager.delete_batch(owner_headers, [mine, theirs, 999, "abc"])
        body = report.to_response("deleted")

        assert report.status_code == 207
        assert body["message"] == "1/4 assets deleted successfully"
        assert body["results"][0] == {"id": mine, "success": True}
        assert body["results"][1]["error"] == "You can only delete your own assets"
        assert body["results"][2]["error"] == "Asset not found"
        assert body["results"][3]["error"] == "Asset not found"
        assert theirs in store.records

    @pytest.mark.asyncio
    async def test_batch_delete_requires_ids(self, make_manager, owner_headers):
        with pytest.raises(BadRequestError) as exc:
            await make_manager("assets").delete_batch(owner_headers, [])
        assert exc.value.message == "IDs array is required and must not be empty"


# =============================================================================
# MAP LAYERS
# =============================================================================


class TestMapLayers:
    @pytest.mark.asyncio
    async def test_geojson_layer_upload(self, make_manager, store, storage, owner_headers):
        manager = make_manager("maps")
        layer = {
            "type": "FeatureCollection",
            "name": "parcels",
            "features": [{"type": "Feature", "geometry": {"type": "Polygon"}, "properties": {"id": 1}}],
        }

        result = await manager.upload(owner_headers, {"layer": layer, "is_public": True})

        assert result.status_code == 200
        assert result.body["layer_name"] == "parcels"
        assert result.body["geometry_type"] == "polygon"
        record = store.records[result.body["id"]]
        assert record.layer_type == "geojson"
        assert record.filename.startswith("parcels_") and record.filename.endswith(".json")
        assert record.description == "Map layer"
        assert b"FeatureCollection" in await storage.retrieve(record.url)

        [item] = await manager.list_assets({})
        assert item["layer_type"] == "geojson"
        assert item["properties_count"] == 1

    @pytest.mark.asyncio
    async def test_layer_required(self, make_manager, owner_headers):
        with pytest.raises(BadRequestError) as exc:
            await make_manager("maps").upload(owner_headers, {"description": "x"})
        assert exc.value.message == "Missing required field: layer (JSON object)"

    @pytest.mark.asyncio
    async def test_layer_must_be_object(self, make_manager, owner_headers):
        with pytest.raises(BadRequestError) as exc:
            await make_manager("maps").upload(owner_headers, {"layer": [1, 2]})
        assert exc.value.message == "Layer must be a valid JSON object"

    @pytest.mark.asyncio
    async def test_layer_json_string_accepted(self, make_manager, store, owner_headers):
        result = await make_manager("maps").upload(
            owner_headers, {"layer": '{"title": "Noise", "description": "Noise map"}'}
        )
        record = store.records[result.body["id"]]
        assert record.layer_type == "custom"
        assert record.description == "Noise map"
