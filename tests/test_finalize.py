"""Tests for sanitization and FinalizationHandler."""
import os
from datetime import datetime, timezone

import pytest

from resumable.errors import IntegrityError, ResourceError, UploadError
from resumable.models import SessionRecord
from resumable.services.finalize import FinalizationHandler, sanitize_filename, sanitize_group_id


def make_record(tmp_path, data=b"payload", metadata=None, resource_id="a" * 32):
    tmp_dir = tmp_path / "tmp"
    tmp_dir.mkdir(exist_ok=True)
    temp_path = tmp_dir / resource_id
    temp_path.write_bytes(data)
    record = SessionRecord(
        resource_id=resource_id,
        temp_path=temp_path,
        declared_length=len(data),
        metadata=metadata if metadata is not None else {"filename": "movie.mkv", "groupId": "g1"},
        offset=len(data),
        created_at=datetime.now(timezone.utc),
    )
    record.bookkeeping_path.write_text("{}", encoding="utf-8")
    return record


class TestSanitize:

    def test_filename_strips_directories(self):
        assert sanitize_filename("../../etc/passwd") == "passwd"
        assert sanitize_filename("C:\\temp\\report.pdf") == "report.pdf"

    def test_filename_replaces_unsafe_characters(self):
        assert sanitize_filename('what?<is>"this"|*.txt') == "what__is__this___.txt"
        assert sanitize_filename("tab\there") == "tab_here"

    def test_filename_never_points_at_a_directory(self):
        assert sanitize_filename("..") == "__"
        assert sanitize_filename(".") == "_"
        assert sanitize_filename("") == "_"
        assert sanitize_filename("uploads/") == "_"

    def test_group_id(self):
        assert sanitize_group_id("a/b c") == "a_b_c"
        assert sanitize_group_id("../..") == "_____"
        assert sanitize_group_id("Group_1-x") == "Group_1-x"
        assert sanitize_group_id("") == "_"


class TestFinalize:

    @pytest.mark.asyncio
    async def test_moves_into_group_directory(self, tmp_path):
        handler = FinalizationHandler(tmp_path / "uploads")
        record = make_record(tmp_path, metadata={"filename": "../../etc/passwd", "groupId": "a/b c"})

        result = await handler.finalize(record)

        expected = (tmp_path / "uploads").resolve() / "a_b_c" / "passwd"
        assert result.final_path == expected
        assert expected.read_bytes() == b"payload"
        assert result.body == {
            "message": "File passwd uploaded to group a_b_c.",
            "finalPath": str(expected),
        }
        assert not record.temp_path.exists()
        assert not record.bookkeeping_path.exists()

    @pytest.mark.asyncio
    async def test_replaces_existing_destination(self, tmp_path):
        handler = FinalizationHandler(tmp_path / "uploads")
        existing = tmp_path / "uploads" / "g1" / "movie.mkv"
        existing.parent.mkdir(parents=True)
        existing.write_bytes(b"old")

        await handler.finalize(make_record(tmp_path, data=b"new"))

        assert existing.read_bytes() == b"new"

    @pytest.mark.asyncio
    async def test_missing_metadata_is_integrity_error(self, tmp_path):
        handler = FinalizationHandler(tmp_path / "uploads")
        record = make_record(tmp_path, metadata={"filename": "movie.mkv"})

        with pytest.raises(IntegrityError) as exc_info:
            await handler.finalize(record)

        assert exc_info.value.status_code == 500
        assert record.resource_id in exc_info.value.message
        assert not record.temp_path.exists()
        assert not record.bookkeeping_path.exists()

    @pytest.mark.asyncio
    async def test_relocation_failure_is_resource_error(self, tmp_path, monkeypatch):
        handler = FinalizationHandler(tmp_path / "uploads")
        record = make_record(tmp_path)

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)

        with pytest.raises(ResourceError) as exc_info:
            await handler.finalize(record)

        assert exc_info.value.message == "Server error storing file movie.mkv"
        assert not record.temp_path.exists()
        assert not (tmp_path / "uploads" / "g1" / "movie.mkv").exists()

    @pytest.mark.asyncio
    async def test_finish_hook_extends_body(self, tmp_path):
        seen = {}

        async def on_finish(final_path, metadata):
            seen["path"] = final_path
            seen["metadata"] = metadata
            return {"checksum": "abc123"}

        handler = FinalizationHandler(tmp_path / "uploads", on_finish=on_finish)
        result = await handler.finalize(make_record(tmp_path))

        assert result.body["checksum"] == "abc123"
        assert seen["path"] == result.final_path
        assert seen["metadata"]["groupId"] == "g1"

    @pytest.mark.asyncio
    async def test_finish_hook_rejection_removes_file(self, tmp_path):
        def on_finish(final_path, metadata):
            raise UploadError("Rejected by finish hook", 422)

        handler = FinalizationHandler(tmp_path / "uploads", on_finish=on_finish)

        with pytest.raises(UploadError) as exc_info:
            await handler.finalize(make_record(tmp_path))

        assert exc_info.value.status_code == 422
        assert not (tmp_path / "uploads" / "g1" / "movie.mkv").exists()

    @pytest.mark.asyncio
    async def test_finish_hook_crash_is_resource_error(self, tmp_path):
        def on_finish(final_path, metadata):
            raise KeyError("boom")

        handler = FinalizationHandler(tmp_path / "uploads", on_finish=on_finish)

        with pytest.raises(ResourceError):
            await handler.finalize(make_record(tmp_path))
