"""Object-storage layout for uploads and commit artifacts.

Uploads live under ``{source_system}/{anchor}/{upload_set_id}/`` and commit
artifacts (per-file JSONL and the manifest) under
``{source_system}_commits/{anchor}/{upload_set_id}/``.
"""

from __future__ import annotations

from pathlib import PurePosixPath

CONTENT_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".csv": "text/csv",
    ".json": "application/json",
    ".jsonl": "application/x-ndjson",
}


def upload_prefix(source_system: str, anchor: str, upload_set_id: str) -> str:
    return f"{source_system}/{anchor}/{upload_set_id}"


def commit_prefix(source_system: str, anchor: str, upload_set_id: str) -> str:
    return f"{source_system}_commits/{anchor}/{upload_set_id}"


def join(prefix: str, name: str) -> str:
    return f"{prefix.rstrip('/')}/{name}"


def basename(filename: str) -> str:
    """Return the last path component, accepting both slash styles."""
    return PurePosixPath(filename.replace("\\", "/")).name


def extension(filename: str) -> str:
    return PurePosixPath(filename).suffix.lower()


def artifact_name(filename: str) -> str:
    """Name of the JSONL artifact written for an uploaded file."""
    return f"{filename}.jsonl"


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(extension(filename), "application/octet-stream")
