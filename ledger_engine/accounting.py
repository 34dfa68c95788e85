"""
Double-Entry Transaction Groups

A TransactionGroup stages debit and credit entries against any number of
journals, checks that debits equal credits, and commits every entry as a
posting inside one atomic unit, all tagged with a shared group id.

    group = service.new_transaction_group()
    group.stage(cash, "debit", Money(10000, Currency.USD))
    group.stage(receivables, "credit", Money(10000, Currency.USD))
    group_id = group.commit()
"""

from datetime import date, datetime
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Union
from enum import Enum

from .config import LedgerConfig, load_config
from .currency import Money
from .exceptions import (
    CommitFailed, CurrencyMismatch, DebitsCreditsMismatch, EmptyTransactionGroup,
    InvalidEntryValue, LedgerError, TransactionGroupClosed
)
from .identity import EntityRef, ordered_uuid
from .journals import Direction, JournalLike, JournalManager
from .ledger import LedgerManager
from .logging_config import configure_from, get_logger, log_action
from .storage import StorageInterface, create_storage


class GroupState(Enum):
    """Lifecycle of a transaction group"""
    OPEN = "open"              # Accepting entries
    VALIDATED = "validated"    # Balanced, being written
    COMMITTED = "committed"    # All postings persisted (terminal)
    FAILED = "failed"          # Validation or write failed (terminal)


@dataclass(frozen=True)
class StagedEntry:
    """An entry waiting for commit"""
    journal_id: str
    direction: Direction
    amount: Money
    memo: Optional[str] = None
    reference: Optional[EntityRef] = None
    post_date: Optional[Union[date, datetime]] = None
    tags: FrozenSet[str] = field(default_factory=frozenset)


class TransactionGroup:
    """
    A balanced set of postings committed atomically

    One instance per group: once committed or failed it accepts nothing
    further.
    """

    def __init__(self, journals: JournalManager):
        self.journals = journals
        self.storage = journals.storage
        self.state = GroupState.OPEN
        self.group_id: Optional[str] = None
        self._pending: List[StagedEntry] = []
        self.logger = get_logger("ledger_engine.accounting")

    def stage(
        self,
        journal: JournalLike,
        direction: Union[Direction, str],
        amount: Union[Money, int],
        memo: Optional[str] = None,
        reference: Optional[EntityRef] = None,
        post_date: Optional[Union[date, datetime]] = None,
        tags: Optional[Iterable[str]] = None
    ) -> StagedEntry:
        """
        Add an entry to the group

        Nothing is written until commit(). A rejected entry leaves the group
        open and unchanged.

        Raises:
            InvalidDirection: direction is not debit/credit
            InvalidEntryValue: amount is zero or negative
            CurrencyMismatch: amount currency differs from the journal's or
                from the entries already staged
            JournalNotFound: journal does not exist
        """
        self._ensure_open()
        direction = Direction.parse(direction)
        loaded = self.journals.require_journal(journal)

        if not isinstance(amount, Money):
            amount = Money(amount, loaded.currency)
        if amount.amount <= 0:
            raise InvalidEntryValue(amount.amount)
        if amount.currency != loaded.currency:
            raise CurrencyMismatch(loaded.currency, amount.currency, "post")
        if self._pending and self._pending[0].amount.currency != amount.currency:
            raise CurrencyMismatch(self._pending[0].amount.currency, amount.currency, "group")

        entry = StagedEntry(
            journal_id=loaded.id,
            direction=direction,
            amount=amount,
            memo=memo,
            reference=reference,
            post_date=post_date,
            tags=frozenset(tags or ())
        )
        self._pending.append(entry)
        return entry

    def debit(self, journal: JournalLike, amount: Union[Money, int], **kwargs) -> StagedEntry:
        return self.stage(journal, Direction.DEBIT, amount, **kwargs)

    def credit(self, journal: JournalLike, amount: Union[Money, int], **kwargs) -> StagedEntry:
        return self.stage(journal, Direction.CREDIT, amount, **kwargs)

    def pending(self) -> List[StagedEntry]:
        """Staged entries in order"""
        return list(self._pending)

    def totals(self):
        """(debit total, credit total) in minor units"""
        debits = sum(e.amount.amount for e in self._pending if e.direction == Direction.DEBIT)
        credits = sum(e.amount.amount for e in self._pending if e.direction == Direction.CREDIT)
        return debits, credits

    def commit(self) -> str:
        """
        Validate the group and write every entry as a posting

        Returns:
            The group id shared by all created postings

        Raises:
            EmptyTransactionGroup: nothing staged
            CurrencyMismatch: entries in more than one currency
            DebitsCreditsMismatch: debits do not equal credits
            CommitFailed: a write failed; everything was rolled back
            TransactionGroupClosed: group already committed or failed
        """
        self._ensure_open()

        try:
            self._validate()
        except LedgerError as e:
            self.state = GroupState.FAILED
            log_action(
                self.logger, "warning", f"Transaction group rejected: {e}",
                action="commit_group", extra={"code": e.code, "entries": len(self._pending)}
            )
            raise

        self.state = GroupState.VALIDATED
        group_id = ordered_uuid()

        try:
            with self.storage.atomic():
                for entry in self._pending:
                    self.journals.post(
                        entry.journal_id,
                        entry.direction,
                        entry.amount,
                        memo=entry.memo,
                        post_date=entry.post_date,
                        transaction_group=group_id,
                        reference=entry.reference,
                        tags=entry.tags
                    )
        except Exception as e:
            self.state = GroupState.FAILED
            log_action(
                self.logger, "error", f"Transaction group rolled back: {e}",
                action="commit_group", correlation_id=group_id,
                extra={"entries": len(self._pending), "error": type(e).__name__}
            )
            raise CommitFailed(e) from e

        self.state = GroupState.COMMITTED
        self.group_id = group_id
        debits, _ = self.totals()
        log_action(
            self.logger, "info", "Transaction group committed",
            action="commit_group", correlation_id=group_id,
            extra={
                "entries": len(self._pending),
                "amount": debits,
                "currency": self._pending[0].amount.currency.code,
                "journals": sorted({e.journal_id for e in self._pending})
            }
        )
        return group_id

    def _validate(self) -> None:
        if not self._pending:
            raise EmptyTransactionGroup("Transaction group has no entries to commit")

        currencies = {e.amount.currency for e in self._pending}
        if len(currencies) > 1:
            first, *others = sorted(currencies, key=lambda c: c.code)
            raise CurrencyMismatch(first, others[0], "group")

        debits, credits = self.totals()
        if debits != credits:
            raise DebitsCreditsMismatch(debits, credits)

    def _ensure_open(self) -> None:
        if self.state != GroupState.OPEN:
            raise TransactionGroupClosed(self.state)


class AccountingService:
    """
    Entry point tying storage, ledgers, journals and transaction groups together
    """

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.config = config or LedgerConfig()
        self.storage = storage
        self.journals = JournalManager(storage, self.config)
        self.ledgers = LedgerManager(storage, self.journals)

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'AccountingService':
        """Build storage and logging from configuration"""
        config = config or load_config()
        configure_from(config)
        return cls(create_storage(config), config)

    def new_transaction_group(self) -> TransactionGroup:
        """Start a new double-entry transaction group"""
        return TransactionGroup(self.journals)

    def close(self) -> None:
        self.storage.close()
