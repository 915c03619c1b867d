"""EvidenceModel protocol for the external extraction/embedding capability.

The engine never performs inference. It calls an implementation of this
protocol, treats every call as fallible and slow, and stores the outputs
with lineage pointers.
"""

from typing import Any, Protocol, runtime_checkable


class EvidenceModelError(Exception):
    """Raised by an EvidenceModel implementation when a call fails.

    retryable tells the extraction runner whether another attempt may succeed
    (rate limits, timeouts) or not (malformed prompt, content policy).
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@runtime_checkable
class EvidenceModel(Protocol):
    """External model capability."""

    name: str

    def embed(self, text: str) -> list[float]:
        """Return an embedding vector for the text."""
        ...

    def extract(self, text: str, prompt: str) -> dict[str, Any]:
        """Return structured fields extracted from the text per the prompt."""
        ...
