"""Archive-to-canonical-store batch migration."""

from .object_store import FilesystemObjectStore, ObjectStore
from .pipeline import FileOutcome, FileStatus, MigrationPipeline, decode_payload, partition
from .state import MigrationRunState, PipelineState, RunStatus

__all__ = [
    "FileOutcome",
    "FileStatus",
    "FilesystemObjectStore",
    "MigrationPipeline",
    "MigrationRunState",
    "ObjectStore",
    "PipelineState",
    "RunStatus",
    "decode_payload",
    "partition",
]
