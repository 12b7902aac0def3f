"""End-to-end tests: HTTP transport and scheduler against the ASGI app."""
import httpx
import pytest

from resumable import tus
from resumable.app import create_app
from resumable.errors import UploadError
from resumable.models import ServerConfig, UploadConfig, UploadFile
from resumable.orchestrator.scheduler import UploadScheduler
from resumable.services.transport import HTTPTransferClient

TUS = {tus.H_RESUMABLE: tus.TUS_VERSION}


@pytest.fixture
def server_config(tmp_path):
    return ServerConfig(uploads_dir=tmp_path / "uploads", tmp_dir=tmp_path / "tmp")


def make_client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def create_upload(client, length, metadata):
    return await client.post(
        "/files",
        headers={
            **TUS,
            tus.H_UPLOAD_LENGTH: str(length),
            tus.H_UPLOAD_METADATA: tus.encode_metadata(metadata),
        },
    )


class TestProtocol:
    """Raw tus requests."""

    @pytest.mark.asyncio
    async def test_options(self, server_config):
        async with make_client(create_app(server_config)) as client:
            response = await client.options("/files")

        assert response.status_code == 204
        assert response.headers[tus.H_VERSION] == "1.0.0"
        assert response.headers[tus.H_EXTENSION] == "creation,termination"

    @pytest.mark.asyncio
    async def test_requires_tus_version(self, server_config):
        async with make_client(create_app(server_config)) as client:
            response = await client.post("/files", headers={tus.H_UPLOAD_LENGTH: "3"})

        assert response.status_code == 412

    @pytest.mark.asyncio
    async def test_create_requires_group_id(self, server_config):
        async with make_client(create_app(server_config)) as client:
            response = await create_upload(client, 3, {"filename": "a.txt"})

        assert response.status_code == 400
        assert response.text == "Missing 'groupId' in metadata"

    @pytest.mark.asyncio
    async def test_create_rejects_bad_length(self, server_config):
        async with make_client(create_app(server_config)) as client:
            response = await client.post("/files", headers={**TUS, tus.H_UPLOAD_LENGTH: "-5"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_create_head_patch_delete(self, server_config):
        async with make_client(create_app(server_config)) as client:
            created = await create_upload(client, 6, {"filename": "a.txt", "groupId": "g1"})
            assert created.status_code == 201
            location = created.headers["Location"]
            assert location.startswith("/files/")

            head = await client.head(location, headers=TUS)
            assert head.status_code == 200
            assert head.headers[tus.H_UPLOAD_OFFSET] == "0"
            assert head.headers[tus.H_UPLOAD_LENGTH] == "6"
            assert head.headers["Cache-Control"] == "no-store"

            patched = await client.patch(
                location,
                content=b"abc",
                headers={**TUS, tus.H_UPLOAD_OFFSET: "0", "Content-Type": tus.OFFSET_CONTENT_TYPE},
            )
            assert patched.status_code == 204
            assert patched.headers[tus.H_UPLOAD_OFFSET] == "3"

            conflict = await client.patch(
                location,
                content=b"def",
                headers={**TUS, tus.H_UPLOAD_OFFSET: "1", "Content-Type": tus.OFFSET_CONTENT_TYPE},
            )
            assert conflict.status_code == 409

            deleted = await client.delete(location, headers=TUS)
            assert deleted.status_code == 204
            gone = await client.head(location, headers=TUS)
            assert gone.status_code == 404

    @pytest.mark.asyncio
    async def test_patch_requires_offset_content_type(self, server_config):
        async with make_client(create_app(server_config)) as client:
            created = await create_upload(client, 3, {"filename": "a.txt", "groupId": "g1"})
            response = await client.patch(
                created.headers["Location"],
                content=b"abc",
                headers={**TUS, tus.H_UPLOAD_OFFSET: "0", "Content-Type": "text/plain"},
            )

        assert response.status_code == 415

    @pytest.mark.asyncio
    async def test_final_patch_returns_json(self, server_config, tmp_path):
        async with make_client(create_app(server_config)) as client:
            created = await create_upload(client, 3, {"filename": "a.txt", "groupId": "team 1"})
            response = await client.patch(
                created.headers["Location"],
                content=b"abc",
                headers={**TUS, tus.H_UPLOAD_OFFSET: "0", "Content-Type": tus.OFFSET_CONTENT_TYPE},
            )

        assert response.status_code == 200
        assert response.headers[tus.H_UPLOAD_OFFSET] == "3"
        assert response.json()["message"] == "File a.txt uploaded to group team_1."
        assert (tmp_path / "uploads" / "team_1" / "a.txt").read_bytes() == b"abc"


class TestEndToEnd:
    """Scheduler + HTTPTransferClient + app."""

    @pytest.mark.asyncio
    async def test_batch_upload(self, server_config, tmp_path):
        source = tmp_path / "source.bin"
        source.write_bytes(bytes(range(256)) * 40)
        files = [
            UploadFile.from_path(source),
            UploadFile.from_bytes("notes.txt", b"hello world", content_type="text/plain"),
            UploadFile.from_bytes("empty.txt", b""),
        ]
        config = UploadConfig(endpoint="http://test/files/", max_concurrent_uploads=2, chunk_size=1000)

        async with make_client(create_app(server_config)) as client:
            async with HTTPTransferClient(config.endpoint, client=client) as transport:
                async with UploadScheduler(transport, config) as scheduler:
                    scheduler.enqueue(files, "batch 7")
                    await scheduler.wait()

                    assert scheduler.failed_uploads == []
                    records = {r.file_name: r for r in scheduler.successful_uploads}

        group_dir = tmp_path / "uploads" / "batch_7"
        assert (group_dir / "source.bin").read_bytes() == source.read_bytes()
        assert (group_dir / "notes.txt").read_bytes() == b"hello world"
        assert (group_dir / "empty.txt").read_bytes() == b""
        assert records["notes.txt"].final_path == str(group_dir.resolve() / "notes.txt")
        assert records["notes.txt"].remote_id.startswith("http://test/files/")
        assert list((tmp_path / "tmp").iterdir()) == []

    @pytest.mark.asyncio
    async def test_finish_hook_error_reaches_client(self, server_config):
        def on_finish(final_path, metadata):
            raise UploadError("Rejected by finish hook")

        config = UploadConfig(endpoint="http://test/files/", retry_delays=[0, 0])
        app = create_app(server_config, on_finish=on_finish)

        async with make_client(app) as client:
            async with HTTPTransferClient(config.endpoint, client=client) as transport:
                async with UploadScheduler(transport, config) as scheduler:
                    scheduler.enqueue([UploadFile.from_bytes("a.txt", b"abc")], "g1")
                    await scheduler.wait()

                    (failure,) = scheduler.failed_uploads

        assert failure.error_kind == "transport"
        assert "Rejected by finish hook" in failure.error_detail
        assert "500" in failure.error_detail

    @pytest.mark.asyncio
    async def test_missing_server_is_transport_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        config = UploadConfig(endpoint="http://test/files/", retry_delays=[0, 0])
        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
            async with HTTPTransferClient(config.endpoint, client=client) as transport:
                async with UploadScheduler(transport, config) as scheduler:
                    scheduler.enqueue([UploadFile.from_bytes("a.txt", b"abc")], "g1")
                    await scheduler.wait()

                    (failure,) = scheduler.failed_uploads

        assert failure.error_kind == "transport"
        assert "ConnectError" in failure.error_detail
