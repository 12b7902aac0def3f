"""Deterministic task identifiers for queued files."""
import re

from blake3 import blake3

from ..models import UploadFile


def derive_task_id(group_id: str, name: str, size: int, last_modified: int) -> str:
    """
    Derive a stable task id from the file identity and its group.

    The same {group, name, size, last-modified} always yields the same id,
    so a repeated submission can be recognised as a duplicate.
    """
    hasher = blake3()
    for part in (str(group_id), name, str(size), str(last_modified)):
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    readable = re.sub(r"[^a-zA-Z0-9.-]", "-", name)[:40]
    return f"file-{readable}-{hasher.hexdigest()[:16]}"


def task_id_for(file: UploadFile, group_id: str) -> str:
    return derive_task_id(group_id, file.name, file.size, file.last_modified)
