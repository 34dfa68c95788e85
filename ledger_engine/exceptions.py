"""
Ledger Engine Exceptions

Every error raised by the engine is a LedgerError carrying a machine-readable
code. Validation errors also subclass ValueError so that callers written
against plain ValueError keep working.

    LedgerError
    |
    +-- JournalAlreadyExists
    +-- InvalidDirection            (ValueError)
    +-- InvalidEntryValue           (ValueError)
    +-- InvalidPosting              (ValueError)
    +-- CurrencyMismatch            (ValueError)
    +-- InvalidCurrency             (ValueError)
    +-- DebitsCreditsMismatch       (ValueError)
    +-- EmptyTransactionGroup       (ValueError)
    +-- TransactionGroupClosed
    +-- CommitFailed
    +-- LedgerTypeImmutable
    +-- LedgerNotFound
    +-- JournalNotFound
    +-- PostingNotFound
    +-- PostingAlreadyDeleted
"""

from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger engine errors"""

    code: str = "LEDGER_ERROR"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class JournalAlreadyExists(LedgerError):
    """Owner already has a journal"""

    code = "JOURNAL_ALREADY_EXISTS"

    def __init__(self, owner, journal_id: Optional[str] = None):
        self.owner = owner
        self.journal_id = journal_id
        super().__init__(f"Journal already exists for {owner}")


class InvalidDirection(LedgerError, ValueError):
    """Direction must be 'debit' or 'credit'"""

    code = "INVALID_DIRECTION"

    def __init__(self, direction):
        self.direction = direction
        super().__init__(f"Invalid posting direction {direction!r}: must be 'debit' or 'credit'")


class InvalidEntryValue(LedgerError, ValueError):
    """Entry amount must be strictly positive"""

    code = "INVALID_ENTRY_VALUE"

    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Entry amount must be greater than zero, got {amount}")


class InvalidPosting(LedgerError, ValueError):
    """Posting must have exactly one of debit or credit"""

    code = "INVALID_POSTING"


class CurrencyMismatch(LedgerError, ValueError):
    """Operands carry different currencies"""

    code = "CURRENCY_MISMATCH"

    def __init__(self, expected, actual, operation: str = "combine"):
        self.expected = expected
        self.actual = actual
        expected_code = getattr(expected, "code", expected)
        actual_code = getattr(actual, "code", actual)
        super().__init__(f"Cannot {operation} {expected_code} and {actual_code}")


class InvalidCurrency(LedgerError, ValueError):
    """Unknown ISO 4217 currency code"""

    code = "INVALID_CURRENCY"

    def __init__(self, currency_code):
        self.currency_code = currency_code
        super().__init__(f"Unknown currency code {currency_code!r}")


class DebitsCreditsMismatch(LedgerError, ValueError):
    """Debits and credits in a transaction group do not balance"""

    code = "DEBITS_CREDITS_MISMATCH"

    def __init__(self, debits: int, credits: int):
        self.debits = debits
        self.credits = credits
        super().__init__(f"In this transaction, credits == {credits} and debits == {debits}")


class EmptyTransactionGroup(LedgerError, ValueError):
    """Transaction group has no staged entries"""

    code = "EMPTY_TRANSACTION_GROUP"


class TransactionGroupClosed(LedgerError):
    """Transaction group is committed or failed and accepts no further changes"""

    code = "TRANSACTION_GROUP_CLOSED"

    def __init__(self, state):
        self.state = state
        state_value = getattr(state, "value", state)
        super().__init__(f"Transaction group is {state_value}; create a new group")


class CommitFailed(LedgerError):
    """Atomic write of a transaction group failed and was rolled back"""

    code = "COMMIT_FAILED"

    def __init__(self, cause: BaseException):
        self.cause = cause
        super().__init__(f"Rolling back transaction group. Message: {cause}")


class LedgerTypeImmutable(LedgerError):
    """Ledger type is fixed at creation"""

    code = "LEDGER_TYPE_IMMUTABLE"


class LedgerNotFound(LedgerError):
    """Ledger does not exist"""

    code = "LEDGER_NOT_FOUND"

    def __init__(self, ledger_id: str):
        self.ledger_id = ledger_id
        super().__init__(f"Ledger {ledger_id} not found")


class JournalNotFound(LedgerError):
    """Journal does not exist"""

    code = "JOURNAL_NOT_FOUND"

    def __init__(self, journal_id: str):
        self.journal_id = journal_id
        super().__init__(f"Journal {journal_id} not found")


class PostingNotFound(LedgerError):
    """Posting does not exist"""

    code = "POSTING_NOT_FOUND"

    def __init__(self, posting_id: str):
        self.posting_id = posting_id
        super().__init__(f"Posting {posting_id} not found")


class PostingAlreadyDeleted(LedgerError):
    """Posting has already been soft deleted"""

    code = "POSTING_ALREADY_DELETED"

    def __init__(self, posting_id: str):
        self.posting_id = posting_id
        super().__init__(f"Posting {posting_id} is already deleted")
