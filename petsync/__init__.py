"""Multi-device sync and sharing for pet health records."""

from .access import AccessResolver, AccessResult
from .client import PetSyncClient, SyncAllReport, SyncResult
from .errors import (
    BadRequestError,
    FailureKind,
    ForbiddenError,
    NotFoundError,
    PetSyncError,
    TokenSpaceExhaustedError,
    TransientSyncError,
)
from .local_cache import LocalCache
from .merge import MergeApplier, MergeReport
from .reconciler import SyncReconciler, SyncRequest, SyncResponse
from .record_store import RecordStore
from .records import (
    Collection,
    FeedingLog,
    InsulinLog,
    MedicationLog,
    Pet,
    Redemption,
    Schedule,
    ShareToken,
    Tier,
    VetInfo,
    WeightLog,
)
from .tokens import RedeemResult, ShareTokenManager

__all__ = [
    "AccessResolver",
    "AccessResult",
    "BadRequestError",
    "Collection",
    "FailureKind",
    "FeedingLog",
    "ForbiddenError",
    "InsulinLog",
    "LocalCache",
    "MedicationLog",
    "MergeApplier",
    "MergeReport",
    "NotFoundError",
    "Pet",
    "PetSyncClient",
    "PetSyncError",
    "RecordStore",
    "RedeemResult",
    "Redemption",
    "Schedule",
    "ShareToken",
    "ShareTokenManager",
    "SyncAllReport",
    "SyncReconciler",
    "SyncRequest",
    "SyncResponse",
    "SyncResult",
    "Tier",
    "TokenSpaceExhaustedError",
    "TransientSyncError",
    "VetInfo",
    "WeightLog",
]
