"""
Chart of Accounts

Ledgers are account-type buckets (asset, liability, equity, income,
expense) that aggregate journals. A ledger's balance is derived from the
postings of its journals using the normal-balance rule of its type; it is
never stored.
"""

from datetime import date, datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union, TYPE_CHECKING
from enum import Enum

from .currency import Money, Currency
from .exceptions import LedgerNotFound, LedgerTypeImmutable
from .identity import ordered_uuid
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

if TYPE_CHECKING:
    from .journals import Journal, JournalManager


LEDGERS_TABLE = "ledgers"


class LedgerType(Enum):
    """Standard accounting account types"""
    ASSET = "asset"           # Debit normal balance
    EXPENSE = "expense"       # Debit normal balance
    LIABILITY = "liability"   # Credit normal balance
    EQUITY = "equity"         # Credit normal balance, aka capital
    INCOME = "income"         # Credit normal balance, aka revenue

    @property
    def is_debit_normal(self) -> bool:
        return self in (LedgerType.ASSET, LedgerType.EXPENSE)

    def normal_balance(self, debits: int, credits: int) -> int:
        """
        Apply the normal-balance sign rule to one-sided totals

        Assets and expenses grow with debits; liabilities, equity and
        income grow with credits.
        """
        if self.is_debit_normal:
            return debits - credits
        return credits - debits


@dataclass
class Ledger(StorageRecord):
    """A named account-type bucket. The type is fixed at creation."""
    name: str
    ledger_type: LedgerType

    def __setattr__(self, name, value):
        if name == 'ledger_type':
            if not isinstance(value, LedgerType):
                value = LedgerType(value)
            current = self.__dict__.get('ledger_type')
            if current is not None and current != value:
                raise LedgerTypeImmutable(
                    f"Ledger type is fixed at creation ({current.value}); cannot change to {value.value}"
                )
        super().__setattr__(name, value)

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['name'] = self.name
        result['ledger_type'] = self.ledger_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Ledger':
        return cls(
            **cls.base_fields(data),
            name=data['name'],
            ledger_type=LedgerType(data['ledger_type'])
        )


@dataclass
class TrialBalance:
    """Normal-sign balances per ledger plus the overall debit/credit check"""
    currency: Currency
    balances: Dict[str, Money] = field(default_factory=dict)
    total_debits: int = 0
    total_credits: int = 0

    @property
    def is_balanced(self) -> bool:
        return self.total_debits == self.total_credits


class LedgerManager:
    """
    Manages ledgers and derives their balances from journal postings
    """

    def __init__(self, storage: StorageInterface, journals: 'JournalManager'):
        self.storage = storage
        self.journals = journals
        self.table_name = LEDGERS_TABLE
        self.logger = get_logger("ledger_engine.ledger")

    def create_ledger(self, name: str, ledger_type: Union[LedgerType, str]) -> Ledger:
        """
        Create a new ledger

        Args:
            name: Display name, e.g. "Company Assets"
            ledger_type: LedgerType or its value ("asset", "income", ...)

        Returns:
            Created Ledger
        """
        if not name:
            raise ValueError("Ledger name must be non-empty")
        now = datetime.now(timezone.utc)
        ledger = Ledger(
            id=ordered_uuid(),
            created_at=now,
            updated_at=now,
            name=name,
            ledger_type=LedgerType(ledger_type)
        )
        self._save_ledger(ledger)

        log_action(
            self.logger, "info", f"Ledger created: {name}",
            action="create_ledger", resource=f"ledger:{ledger.id}",
            extra={"ledger_type": ledger.ledger_type.value}
        )
        return ledger

    def get_ledger(self, ledger_id: str) -> Optional[Ledger]:
        """Get ledger by ID"""
        data = self.storage.load(self.table_name, ledger_id)
        if data:
            return Ledger.from_dict(data)
        return None

    def require_ledger(self, ledger_id: str) -> Ledger:
        ledger = self.get_ledger(ledger_id)
        if not ledger:
            raise LedgerNotFound(ledger_id)
        return ledger

    def list_ledgers(self, ledger_type: Optional[LedgerType] = None) -> List[Ledger]:
        filters = {'ledger_type': LedgerType(ledger_type)} if ledger_type else None
        return [Ledger.from_dict(data) for data in self.storage.find(self.table_name, filters)]

    def rename_ledger(self, ledger_id: str, name: str) -> Ledger:
        if not name:
            raise ValueError("Ledger name must be non-empty")
        with self.storage.atomic():
            ledger = self.require_ledger(ledger_id)
            ledger.name = name
            ledger.updated_at = datetime.now(timezone.utc)
            self._save_ledger(ledger)
        return ledger

    def add_journal(self, ledger_id: str, journal: Union['Journal', str]) -> 'Journal':
        """Assign a journal to this ledger"""
        self.require_ledger(ledger_id)
        return self.journals.assign_to_ledger(journal, ledger_id)

    def get_journals(self, ledger_id: str) -> List['Journal']:
        self.require_ledger(ledger_id)
        return self.journals.find_journals(ledger_id=ledger_id)

    def current_balance(self, ledger_id: str, currency: Union[Currency, str]) -> Money:
        """
        Balance over all non-deleted postings of the ledger's journals

        No date filter: future-dated postings are included. Sign follows the
        ledger type's normal balance.
        """
        return self._balance(ledger_id, Currency.from_code(currency), as_of=None)

    def balance_on(
        self,
        ledger_id: str,
        currency: Union[Currency, str],
        as_of: Union[date, datetime]
    ) -> Money:
        """Ledger balance from postings dated on or before the end of as_of"""
        return self._balance(ledger_id, Currency.from_code(currency), as_of=as_of)

    def _balance(self, ledger_id: str, currency: Currency, as_of) -> Money:
        ledger = self.require_ledger(ledger_id)
        journal_ids = [journal.id for journal in self.journals.find_journals(ledger_id=ledger.id)]
        if not journal_ids:
            return Money.zero(currency)

        debits = self.journals.sum_postings('debit', journal_ids, currency, as_of)
        credits = self.journals.sum_postings('credit', journal_ids, currency, as_of)
        return Money(ledger.ledger_type.normal_balance(debits, credits), currency)

    def trial_balance(
        self,
        currency: Union[Currency, str],
        as_of: Optional[Union[date, datetime]] = None
    ) -> TrialBalance:
        """
        Generate trial balance for all ledgers

        Args:
            currency: Currency for balances
            as_of: Restrict to postings dated on or before this day

        Returns:
            TrialBalance with per-ledger balances and the debit/credit totals
            across every journal, ledger-assigned or not
        """
        currency = Currency.from_code(currency)
        result = TrialBalance(currency=currency)

        with self.storage.atomic():
            for ledger in self.list_ledgers():
                result.balances[ledger.id] = self._balance(ledger.id, currency, as_of)
            result.total_debits = self.journals.sum_postings('debit', None, currency, as_of)
            result.total_credits = self.journals.sum_postings('credit', None, currency, as_of)

        if not result.is_balanced:
            log_action(
                self.logger, "warning", "Trial balance does not balance",
                action="trial_balance",
                extra={
                    "currency": currency.code,
                    "total_debits": result.total_debits,
                    "total_credits": result.total_credits
                }
            )
        return result

    def _save_ledger(self, ledger: Ledger) -> None:
        self.storage.save(self.table_name, ledger.id, ledger.to_dict())
