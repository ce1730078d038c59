from .applier import RecordApplier
from .change_tracker import ChangeTracker
from .fetch import DeltaFetcher, FullFetcher
from .orchestrator import SyncOrchestrator
from .retry import RetryPolicy
from .upload import UploadPipeline

__all__ = [
    "ChangeTracker",
    "DeltaFetcher",
    "FullFetcher",
    "RecordApplier",
    "RetryPolicy",
    "SyncOrchestrator",
    "UploadPipeline",
]
