"""
Error taxonomy for the submission ledger.

Every error carries an HTTP-ish ``status_code`` and a stable machine ``code``
so the API layer can translate it without knowing the individual classes.
"""
from typing import Any, List, Optional


class RapportError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, *, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"ok": False, "error": self.code, "detail": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class PayloadValidationError(RapportError):
    """Malformed or incomplete transmit payload. Raised before any state change."""
    status_code = 422
    code = "validation_error"

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message, details=errors or None)
        self.errors = errors or []


class Forbidden(RapportError):
    status_code = 403
    code = "forbidden"


class NotFound(RapportError):
    status_code = 404
    code = "not_found"


class StoreCorrupt(RapportError):
    """A persisted document exists but cannot be parsed. The file was moved aside."""
    status_code = 503
    code = "store_corrupt"

    def __init__(self, message: str, path: Optional[str] = None, quarantined_to: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.quarantined_to = quarantined_to


class LockStoreCorrupt(StoreCorrupt):
    code = "lock_store_corrupt"


class PersistenceFailure(RapportError):
    code = "persistence_failure"


class AggregationInconsistency(RapportError):
    code = "aggregation_inconsistency"

    def __init__(self, message: str, *, rebuild_required: bool = False):
        super().__init__(message, details={"rebuildRequired": rebuild_required})
        self.rebuild_required = rebuild_required
