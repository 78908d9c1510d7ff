"""Concrete backend implementations for the techkpi-ingest protocols."""

from techkpi_ingest.backends.filesystem import FileSystemObjectStorage
from techkpi_ingest.backends.regions import HttpRegionProvider, StaticRegionProvider
from techkpi_ingest.backends.sqlite import SQLiteIngestStore

__all__ = [
    "FileSystemObjectStorage",
    "HttpRegionProvider",
    "SQLiteIngestStore",
    "StaticRegionProvider",
]
