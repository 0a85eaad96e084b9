"""
Engine error taxonomy

Rejected attempts are not exceptions: the ledger returns them as values.
"""


class QuizEngineError(Exception):
    """Base class for every error raised by the engine"""

    error_code = "quiz_engine_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidSubmission(QuizEngineError):
    """Submission failed input validation before touching any state"""

    error_code = "invalid_input"
    status_code = 422


class CatalogLookupError(QuizEngineError):
    """Unknown quiz or question in the catalog"""

    error_code = "catalog_lookup_failed"
    status_code = 404


class QuizClosed(QuizEngineError):
    """The quiz no longer admits new participants"""

    error_code = "quiz_closed"
    status_code = 409


class TransactionConflict(QuizEngineError):
    """Optimistic transaction kept losing the race after all retries"""

    error_code = "transaction_conflict"
    status_code = 409


class LockUnavailable(QuizEngineError):
    """Another reconciliation holds the quiz lease"""

    error_code = "locked"
    status_code = 423


class SyncError(QuizEngineError):
    """Reconciliation of a single participant failed"""

    error_code = "sync_error"

    def __init__(self, message: str, user_id: str = None):
        super().__init__(message)
        self.user_id = user_id
