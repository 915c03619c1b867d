# src/fundtrace/core/warehouse/__init__.py
"""Warehouse: relational state for every tier of the evidence engine.

Raw object metadata, silver rows and quarantine, gold aggregates, the
stream ledger, pipeline runs and AI evidence all live in one database
managed by WarehouseDB.
"""

from fundtrace.core.warehouse.database import SchemaCompatibilityError, WarehouseDB

__all__ = [
    "SchemaCompatibilityError",
    "WarehouseDB",
]
