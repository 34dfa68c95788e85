"""
Journals and Postings

A journal is one account instance belonging to a single owner, denominated
in one currency. Postings are immutable debit-or-credit entries against a
journal; they are only ever soft deleted, so the audit history survives.

The journal's balance is a cached value. The postings are the source of
truth: every posting create or delete re-aggregates them and rewrites the
cache inside the same atomic unit as the write, which keeps concurrent
posters from overwriting each other's balance.
"""

from datetime import date, datetime, time, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union
from enum import Enum

from .config import LedgerConfig
from .currency import Money, Currency
from .exceptions import (
    CurrencyMismatch, InvalidDirection, InvalidEntryValue, InvalidPosting,
    JournalAlreadyExists, JournalNotFound, LedgerNotFound,
    PostingAlreadyDeleted, PostingNotFound
)
from .identity import EntityRef, ordered_uuid
from .ledger import LEDGERS_TABLE
from .logging_config import get_logger, log_action
from .storage import (
    StorageInterface, StorageRecord, from_storage_datetime, to_storage_datetime
)


JOURNALS_TABLE = "journals"
POSTINGS_TABLE = "journal_postings"


class Direction(Enum):
    """Side of a posting"""
    DEBIT = "debit"
    CREDIT = "credit"

    @classmethod
    def parse(cls, value: Union['Direction', str]) -> 'Direction':
        if isinstance(value, Direction):
            return value
        if isinstance(value, str):
            try:
                return cls(value)
            except ValueError:
                pass
        raise InvalidDirection(value)


def end_of_day(value: Union[date, datetime]) -> datetime:
    """Last instant of the given day; plain dates and naive datetimes are UTC"""
    if isinstance(value, datetime):
        return datetime.combine(value.date(), time.max, tzinfo=value.tzinfo or timezone.utc)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def _as_utc_datetime(value: Optional[Union[date, datetime]]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


@dataclass
class Journal(StorageRecord):
    """
    Account instance for a single owner

    balance is the cached sum of credits minus debits over the journal's
    non-deleted postings in its currency.
    """
    owner: EntityRef
    currency: Currency
    balance: Money
    ledger_id: Optional[str] = None

    def __post_init__(self):
        if self.balance.currency != self.currency:
            raise CurrencyMismatch(self.currency, self.balance.currency, "hold a balance in")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            'owner_kind': self.owner.kind,
            'owner_id': self.owner.id,
            'currency': self.currency.code,
            'balance': self.balance.amount,
            'ledger_id': self.ledger_id,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Journal':
        currency = Currency.from_code(data['currency'])
        return cls(
            **cls.base_fields(data),
            owner=EntityRef(data['owner_kind'], data['owner_id']),
            currency=currency,
            balance=Money(int(data['balance']), currency),
            ledger_id=data.get('ledger_id')
        )


@dataclass
class Posting(StorageRecord):
    """
    One debit or credit entry against a journal

    Exactly one of debit and credit is set and it is strictly positive.
    """
    journal_id: str
    currency: Currency
    post_date: datetime
    debit: Optional[Money] = None
    credit: Optional[Money] = None
    memo: Optional[str] = None
    tags: FrozenSet[str] = field(default_factory=frozenset)
    reference: Optional[EntityRef] = None
    transaction_group: Optional[str] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self):
        if (self.debit is None) == (self.credit is None):
            raise InvalidPosting("Posting must have exactly one of debit or credit")
        if not self.amount.is_positive():
            raise InvalidEntryValue(self.amount.amount)
        if self.amount.currency != self.currency:
            raise CurrencyMismatch(self.currency, self.amount.currency, "post")
        self.tags = frozenset(self.tags or ())

    @property
    def direction(self) -> Direction:
        return Direction.DEBIT if self.debit is not None else Direction.CREDIT

    @property
    def amount(self) -> Money:
        """The non-empty side"""
        return self.debit if self.debit is not None else self.credit

    @property
    def signed_amount(self) -> Money:
        """Effect on the journal balance (credit positive, debit negative)"""
        if self.credit is not None:
            return self.credit
        return -self.debit

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result.update({
            'journal_id': self.journal_id,
            'debit': self.debit.amount if self.debit is not None else None,
            'credit': self.credit.amount if self.credit is not None else None,
            'currency': self.currency.code,
            'memo': self.memo,
            'tags': sorted(self.tags),
            'reference_kind': self.reference.kind if self.reference else None,
            'reference_id': self.reference.id if self.reference else None,
            'transaction_group': self.transaction_group,
            'post_date': to_storage_datetime(self.post_date),
            'deleted_at': to_storage_datetime(self.deleted_at) if self.deleted_at else None,
        })
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Posting':
        currency = Currency.from_code(data['currency'])
        reference = None
        if data.get('reference_kind') is not None:
            reference = EntityRef(data['reference_kind'], data['reference_id'])
        return cls(
            **cls.base_fields(data),
            journal_id=data['journal_id'],
            currency=currency,
            post_date=from_storage_datetime(data['post_date']),
            debit=Money(int(data['debit']), currency) if data.get('debit') is not None else None,
            credit=Money(int(data['credit']), currency) if data.get('credit') is not None else None,
            memo=data.get('memo'),
            tags=frozenset(data.get('tags') or ()),
            reference=reference,
            transaction_group=data.get('transaction_group'),
            deleted_at=from_storage_datetime(data.get('deleted_at'))
        )


JournalLike = Union[Journal, str]


class JournalManager:
    """
    Manages journals, the posting path and balance queries
    """

    def __init__(self, storage: StorageInterface, config: Optional[LedgerConfig] = None):
        self.storage = storage
        self.config = config or LedgerConfig()
        self.journals_table = JOURNALS_TABLE
        self.postings_table = POSTINGS_TABLE
        self.logger = get_logger("ledger_engine.journals")

    # Journals

    def init_journal(
        self,
        owner: EntityRef,
        currency: Optional[Union[Currency, str]] = None,
        ledger_id: Optional[str] = None
    ) -> Journal:
        """
        Initialize the journal for an owner

        Args:
            owner: Opaque reference to the owning entity
            currency: Journal currency; defaults to config.base_currency
            ledger_id: Optional ledger to assign the journal to

        Returns:
            New Journal with a zero balance

        Raises:
            JournalAlreadyExists: If the owner already has a journal
            LedgerNotFound: If ledger_id does not exist
        """
        currency = Currency.from_code(currency) if currency else self.config.default_currency

        with self.storage.atomic():
            existing = self.get_journal_for_owner(owner)
            if existing:
                raise JournalAlreadyExists(owner, existing.id)
            if ledger_id is not None and not self.storage.exists(LEDGERS_TABLE, ledger_id):
                raise LedgerNotFound(ledger_id)

            now = datetime.now(timezone.utc)
            journal = Journal(
                id=ordered_uuid(),
                created_at=now,
                updated_at=now,
                owner=owner,
                currency=currency,
                balance=Money.zero(currency),
                ledger_id=ledger_id
            )
            self._save_journal(journal)

        log_action(
            self.logger, "info", f"Journal initialized for {owner}",
            action="init_journal", resource=f"journal:{journal.id}",
            extra={"owner": str(owner), "currency": currency.code, "ledger_id": ledger_id}
        )
        return journal

    def get_journal(self, journal_id: str) -> Optional[Journal]:
        """Get journal by ID"""
        data = self.storage.load(self.journals_table, journal_id)
        if data:
            return Journal.from_dict(data)
        return None

    def require_journal(self, journal: JournalLike) -> Journal:
        journal_id = _journal_id(journal)
        loaded = self.get_journal(journal_id)
        if not loaded:
            raise JournalNotFound(journal_id)
        return loaded

    def get_journal_for_owner(self, owner: EntityRef) -> Optional[Journal]:
        found = self.storage.find(
            self.journals_table, {'owner_kind': owner.kind, 'owner_id': owner.id}
        )
        if found:
            return Journal.from_dict(found[0])
        return None

    def find_journals(self, ledger_id: Optional[str] = None) -> List[Journal]:
        filters = {'ledger_id': ledger_id} if ledger_id is not None else None
        return [Journal.from_dict(data) for data in self.storage.find(self.journals_table, filters)]

    def assign_to_ledger(self, journal: JournalLike, ledger_id: str) -> Journal:
        with self.storage.atomic():
            if not self.storage.exists(LEDGERS_TABLE, ledger_id):
                raise LedgerNotFound(ledger_id)
            loaded = self.require_journal(journal)
            loaded.ledger_id = ledger_id
            loaded.updated_at = datetime.now(timezone.utc)
            self._save_journal(loaded)
        return loaded

    # Posting path

    def post(
        self,
        journal: JournalLike,
        direction: Union[Direction, str],
        amount: Union[Money, int],
        memo: Optional[str] = None,
        post_date: Optional[Union[date, datetime]] = None,
        transaction_group: Optional[str] = None,
        reference: Optional[EntityRef] = None,
        tags: Optional[Iterable[str]] = None
    ) -> Posting:
        """
        Create a posting and recompute the journal balance

        This is the only path that creates postings. The amount is taken as
        an absolute value; a plain int is read as minor units of the
        journal's currency.

        Raises:
            InvalidDirection: direction is not debit/credit
            InvalidEntryValue: amount is zero
            CurrencyMismatch: amount currency differs from the journal's
            JournalNotFound: journal does not exist
        """
        direction = Direction.parse(direction)

        with self.storage.atomic():
            loaded = self.require_journal(journal)

            if isinstance(amount, Money):
                money = amount.absolute()
            else:
                money = Money(abs(amount), loaded.currency)
            if money.currency != loaded.currency:
                raise CurrencyMismatch(loaded.currency, money.currency, "post")
            if money.is_zero():
                raise InvalidEntryValue(money.amount)

            now = datetime.now(timezone.utc)
            posting = Posting(
                id=ordered_uuid(),
                created_at=now,
                updated_at=now,
                journal_id=loaded.id,
                currency=money.currency,
                post_date=_as_utc_datetime(post_date),
                debit=money if direction == Direction.DEBIT else None,
                credit=money if direction == Direction.CREDIT else None,
                memo=memo,
                tags=frozenset(tags or ()),
                reference=reference,
                transaction_group=transaction_group
            )
            self.storage.save(self.postings_table, posting.id, posting.to_dict())
            balance = self.recompute_balance(loaded.id)

        log_action(
            self.logger, "info", f"Posted {direction.value} {money.to_string()}",
            action="post", resource=f"journal:{loaded.id}",
            correlation_id=transaction_group,
            extra={
                "posting_id": posting.id,
                "direction": direction.value,
                "amount": money.amount,
                "currency": money.currency.code,
                "balance": balance.amount,
                "reference": str(reference) if reference else None
            }
        )
        return posting

    def credit(
        self,
        journal: JournalLike,
        amount: Union[Money, int],
        memo: Optional[str] = None,
        post_date: Optional[Union[date, datetime]] = None,
        transaction_group: Optional[str] = None,
        reference: Optional[EntityRef] = None,
        tags: Optional[Iterable[str]] = None
    ) -> Posting:
        """Create a credit posting"""
        return self.post(journal, Direction.CREDIT, amount, memo, post_date,
                         transaction_group, reference, tags)

    def debit(
        self,
        journal: JournalLike,
        amount: Union[Money, int],
        memo: Optional[str] = None,
        post_date: Optional[Union[date, datetime]] = None,
        transaction_group: Optional[str] = None,
        reference: Optional[EntityRef] = None,
        tags: Optional[Iterable[str]] = None
    ) -> Posting:
        """Create a debit posting"""
        return self.post(journal, Direction.DEBIT, amount, memo, post_date,
                         transaction_group, reference, tags)

    def delete_posting(self, posting_id: str) -> Posting:
        """
        Soft delete a posting and recompute its journal's balance

        The record is kept with deleted_at set and drops out of every
        balance aggregate.
        """
        with self.storage.atomic():
            posting = self.get_posting(posting_id)
            if not posting:
                raise PostingNotFound(posting_id)
            if posting.is_deleted:
                raise PostingAlreadyDeleted(posting_id)

            now = datetime.now(timezone.utc)
            posting.deleted_at = now
            posting.updated_at = now
            self.storage.save(self.postings_table, posting.id, posting.to_dict())
            balance = self.recompute_balance(posting.journal_id)

        log_action(
            self.logger, "info", f"Posting deleted: {posting.id}",
            action="delete_posting", resource=f"journal:{posting.journal_id}",
            correlation_id=posting.transaction_group,
            extra={"posting_id": posting.id, "balance": balance.amount}
        )
        return posting

    # Balances

    def recompute_balance(self, journal: JournalLike) -> Money:
        """
        Re-aggregate the journal's postings into its cached balance

        Full recomputation, not an incremental delta; calling it twice in a
        row yields the same value.
        """
        with self.storage.atomic():
            loaded = self.require_journal(journal)
            balance = self._aggregate(loaded, as_of=None)
            if balance != loaded.balance:
                loaded.balance = balance
                loaded.updated_at = datetime.now(timezone.utc)
                self._save_journal(loaded)
        return balance

    def total_balance(self, journal: JournalLike) -> Money:
        """Credits minus debits over all non-deleted postings, including future-dated ones"""
        return self._aggregate(self.require_journal(journal), as_of=None)

    def debit_balance_on(self, journal: JournalLike, as_of: Union[date, datetime]) -> Money:
        """Debit-only total of postings dated on or before the end of as_of"""
        loaded = self.require_journal(journal)
        total = self.sum_postings('debit', [loaded.id], loaded.currency, as_of)
        return Money(total, loaded.currency)

    def credit_balance_on(self, journal: JournalLike, as_of: Union[date, datetime]) -> Money:
        """Credit-only total of postings dated on or before the end of as_of"""
        loaded = self.require_journal(journal)
        total = self.sum_postings('credit', [loaded.id], loaded.currency, as_of)
        return Money(total, loaded.currency)

    def balance_as_of(self, journal: JournalLike, as_of: Union[date, datetime]) -> Money:
        """Balance of the journal for a given day (inclusive)"""
        with self.storage.atomic():
            return self.credit_balance_on(journal, as_of) - self.debit_balance_on(journal, as_of)

    def current_balance(self, journal: JournalLike) -> Money:
        """Balance today, excluding postings dated after today"""
        return self.balance_as_of(journal, datetime.now(timezone.utc))

    def sum_postings(
        self,
        field_name: str,
        journal_ids: Optional[List[str]],
        currency: Currency,
        as_of: Optional[Union[date, datetime]] = None
    ) -> int:
        """
        Sum the debit or credit column over non-deleted postings

        Args:
            field_name: "debit" or "credit"
            journal_ids: Restrict to these journals; None means every journal
            currency: Only postings in this currency
            as_of: Only postings dated on or before the end of this day
        """
        if field_name not in ('debit', 'credit'):
            raise InvalidDirection(field_name)
        filters: Dict[str, Any] = {
            'currency': currency.code,
            'deleted_at__isnull': True,
        }
        if journal_ids is not None:
            filters['journal_id__in'] = list(journal_ids)
        if as_of is not None:
            filters['post_date__lte'] = end_of_day(as_of)
        return self.storage.sum(self.postings_table, field_name, filters)

    def _aggregate(self, journal: Journal, as_of) -> Money:
        credits = self.sum_postings('credit', [journal.id], journal.currency, as_of)
        debits = self.sum_postings('debit', [journal.id], journal.currency, as_of)
        return Money(credits - debits, journal.currency)

    # Posting queries

    def get_posting(self, posting_id: str) -> Optional[Posting]:
        data = self.storage.load(self.postings_table, posting_id)
        if data:
            return Posting.from_dict(data)
        return None

    def get_postings(self, journal: JournalLike, include_deleted: bool = False) -> List[Posting]:
        """Postings of a journal in creation order"""
        return self._find_postings({'journal_id': _journal_id(journal)}, include_deleted)

    def postings_for_group(self, transaction_group: str, include_deleted: bool = False) -> List[Posting]:
        return self._find_postings({'transaction_group': transaction_group}, include_deleted)

    def postings_referencing(self, reference: EntityRef, include_deleted: bool = False) -> List[Posting]:
        """Postings whose reference is the given entity"""
        return self._find_postings(
            {'reference_kind': reference.kind, 'reference_id': reference.id}, include_deleted
        )

    def _find_postings(self, filters: Dict[str, Any], include_deleted: bool) -> List[Posting]:
        if not include_deleted:
            filters = dict(filters, deleted_at__isnull=True)
        postings = [Posting.from_dict(data) for data in self.storage.find(self.postings_table, filters)]
        postings.sort(key=lambda posting: posting.id)
        return postings

    def _save_journal(self, journal: Journal) -> None:
        self.storage.save(self.journals_table, journal.id, journal.to_dict())


def _journal_id(journal: JournalLike) -> str:
    return journal.id if isinstance(journal, Journal) else journal
