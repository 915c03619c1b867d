# src/fundtrace/engine/__init__.py
"""Evidence engine: raw store, quality gate, silver/gold tiers, runs and lineage.

The EvidenceEngine facade wires the components together:

    engine = EvidenceEngine.from_settings(load_settings(Path("fundtrace.yaml")))
    engine.submit_evidence("bundle-7", content, EvidenceMetadata(...))
    outcome = engine.run_transform("nightly-2024-03-01")
    chain = engine.resolve_lineage(GoldCellRef("disbursement_total", day, "AW-1"))
"""

from fundtrace.engine.extraction import ExtractionRunner
from fundtrace.engine.findings import FindingStore
from fundtrace.engine.gold import GoldRollup
from fundtrace.engine.ledger import StreamLedger
from fundtrace.engine.lineage import LineageResolver
from fundtrace.engine.quality import Accepted, GateContext, QualityGate, Quarantined
from fundtrace.engine.quarantine import QuarantineReader
from fundtrace.engine.raw_store import RawStore
from fundtrace.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager
from fundtrace.engine.runs import RunTracker
from fundtrace.engine.service import EvidenceEngine
from fundtrace.engine.silver import SilverTransform, SourceBatch

__all__ = [
    "Accepted",
    "EvidenceEngine",
    "ExtractionRunner",
    "FindingStore",
    "GateContext",
    "GoldRollup",
    "LineageResolver",
    "MaxRetriesExceeded",
    "QualityGate",
    "QuarantineReader",
    "Quarantined",
    "RawStore",
    "RetryConfig",
    "RetryManager",
    "RunTracker",
    "SilverTransform",
    "SourceBatch",
    "StreamLedger",
]
