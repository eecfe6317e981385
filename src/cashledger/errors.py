"""
Error taxonomy.

Only PersistenceUnavailable aborts a batch. Every other failure is handled
per record: skipped, degraded to a fallback, or collected into errors[].
Duplicates, missing matches and ambiguous matches are result values, not
exceptions.
"""


class CashLedgerError(Exception):
    """Base class for all cashledger errors."""

    pass


class ParseError(CashLedgerError):
    """Raised when a raw statement row cannot be normalized."""

    pass


class OracleError(CashLedgerError):
    """Raised when the classification oracle fails or answers garbage.

    Attributes:
        tag: Short flag attached to the fallback classification
            (e.g. "llm_error", "parse_error", "timeout").
    """

    def __init__(self, message: str, tag: str = "llm_error"):
        super().__init__(message)
        self.tag = tag


class IntegrityViolation(CashLedgerError):
    """Raised when a consistency check is escalated to an error."""

    def __init__(self, message: str, check: str, severity: str = "high"):
        super().__init__(message)
        self.check = check
        self.severity = severity


class PersistenceUnavailable(CashLedgerError):
    """Raised when the state store cannot be reached at all."""

    pass


class InvalidTransition(CashLedgerError):
    """Raised when a review action is not allowed from the current state."""

    pass


class NotFoundError(CashLedgerError):
    """Raised when a referenced record does not exist for the company."""

    pass
