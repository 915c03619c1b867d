# src/fundtrace/core/__init__.py
"""Core infrastructure: Warehouse, Canonical, Configuration, Blob storage, Logging."""

from fundtrace.core.blob_store import FilesystemBlobStore
from fundtrace.core.canonical import (
    canonical_json,
    stable_hash,
)
from fundtrace.core.config import (
    FundtraceSettings,
    load_settings,
)
from fundtrace.core.logging import bind_context, configure_from_settings, configure_logging, get_logger
from fundtrace.core.warehouse import WarehouseDB

__all__ = [
    "FilesystemBlobStore",
    "FundtraceSettings",
    "WarehouseDB",
    "bind_context",
    "canonical_json",
    "configure_from_settings",
    "configure_logging",
    "get_logger",
    "load_settings",
    "stable_hash",
]
