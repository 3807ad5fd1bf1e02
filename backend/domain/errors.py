"""
Domain-level exceptions raised by services and mapped to HTTP status codes
at the route boundary.
"""


class NotFoundError(Exception):
    """A book, page or account the caller asked for does not exist (for them)."""


class BookStateError(Exception):
    """The book is not in a state that allows the requested operation."""


class PhotoRejected(ValueError):
    """An uploaded photo has an unsupported type or size."""


class LedgerError(Exception):
    """Base class for credit ledger failures."""


class ConcurrentLedgerUpdate(LedgerError):
    """
    The balance changed between read and write. Nothing was applied; the
    caller should retry the whole operation from a fresh read.
    """

    def __init__(self, account_id: str):
        super().__init__(f"Balance of account {account_id} changed concurrently")
        self.account_id = account_id
