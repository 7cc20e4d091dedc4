"""
rapportlib – storage and business rules of the monthly Rapport ledger.

Submissions are immutable month snapshots per worker; week locks freeze
already approved weeks; a team-wide aggregation index keeps hours per cost
object current under resubmission.
"""
from .errors import (
    AggregationInconsistency,
    Forbidden,
    LockStoreCorrupt,
    NotFound,
    PayloadValidationError,
    PersistenceFailure,
    RapportError,
    StoreCorrupt,
)
from .ledger import SubmissionLedger
from .models import Identity

__all__ = [
    'AggregationInconsistency',
    'Forbidden',
    'Identity',
    'LockStoreCorrupt',
    'NotFound',
    'PayloadValidationError',
    'PersistenceFailure',
    'RapportError',
    'StoreCorrupt',
    'SubmissionLedger',
]
