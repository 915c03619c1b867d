"""
fundtrace: Evidence transformation and lineage engine for financial-assistance data.

Moves evidence through immutable raw storage, idempotent normalized storage
and curated aggregates, keeping every number traceable to verified source bytes.
"""

__version__ = "0.1.0"
