from typing import Any, Dict, Optional


class MockMateError(Exception):
    """Base class for errors surfaced to callers as a terminal ``error`` event."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str = "", *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            out["detail"] = self.detail
        return out


class ValidationError(MockMateError):
    code = "validation_error"
    status_code = 400


class SessionNotFound(ValidationError):
    code = "session_not_found"
    status_code = 404


class SessionBusy(ValidationError):
    code = "session_busy"
    status_code = 409


class InsufficientBalance(MockMateError):
    code = "insufficient_balance"
    status_code = 402


class DuplicateInProgress(MockMateError):
    code = "duplicate_in_progress"
    status_code = 409


class GenerationFailure(MockMateError):
    code = "generation_failure"
    status_code = 502


class PersistenceFailure(MockMateError):
    code = "persistence_failure"
    status_code = 500


class RefundFailure(MockMateError):
    code = "refund_failure"
    status_code = 500


class LedgerStateError(MockMateError):
    code = "ledger_state_error"
    status_code = 500


class MirrorFailure(PersistenceFailure):
    """The local write landed but mirroring it failed; ``value`` is the local result."""

    value: Any = None
