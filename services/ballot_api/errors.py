"""Error taxonomy for the voting ledger."""


class LedgerError(Exception):
    """Base class for rejections raised by the ledger."""

    status_code = 500
    error_type = "ledger_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Malformed or missing input."""

    status_code = 400
    error_type = "validation_error"


class DeadlinePassed(LedgerError):
    """Mutating call issued at or after the deadline."""

    status_code = 403
    error_type = "deadline_passed"


class ProposalNotFound(LedgerError):
    """Vote references a proposal that does not exist."""

    status_code = 404
    error_type = "proposal_not_found"


class DuplicateSubmitter(LedgerError):
    """Submitter email already owns a proposal."""

    status_code = 409
    error_type = "duplicate_submitter"


class AlreadyVoted(LedgerError):
    """Voter email already has a ballot."""

    status_code = 409
    error_type = "already_voted"


class StorageUnavailable(LedgerError):
    """Backend failed or timed out; nothing was written and the call may be retried."""

    status_code = 503
    error_type = "storage_unavailable"
    retryable = True
