"""Service layer for Docflow operations.

- messages: message queries and status transitions
- streams: stream descriptors (read-only to the pipeline)
- watermarks: per-stream checkpoints
- classifications, conversations, proposals: batch results
- runs: batch run tracking
- documents: documentation index and similarity search
"""

from docflow.services import (
    classifications,
    conversations,
    documents,
    messages,
    proposals,
    runs,
    streams,
    watermarks,
)

__all__ = [
    "classifications",
    "conversations",
    "documents",
    "messages",
    "proposals",
    "runs",
    "streams",
    "watermarks",
]
