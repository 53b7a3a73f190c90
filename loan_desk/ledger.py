"""
Loan Ledger Module

Append-only record of payments and penalties attached to a loan. Entries are
immutable once appended and are never removed; corrections are new entries.
The loan's cached counters (EMIs paid/remaining, total penalty) are updated
only here and can be reconciled against the entries at any time.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterator, List, Optional, Tuple, Union, TYPE_CHECKING
from enum import Enum
import uuid

from .amounts import ZERO, AmountLike, to_amount
from .errors import InvalidTransition, LedgerIntegrityError, ValidationError

if TYPE_CHECKING:
    from .loans import Loan


class PaymentMode(Enum):
    """How an EMI was paid"""
    CASH = "cash"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_amount(value: AmountLike, field_name: str) -> Decimal:
    try:
        return to_amount(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be a number", {"field": field_name, "value": str(value)})


def _parse_date(value: Union[date, str, None], default: date) -> date:
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid date: {value}", {"value": value})


@dataclass(frozen=True)
class PaymentEntry:
    """One collected EMI"""
    id: str
    amount: Decimal
    payment_mode: PaymentMode
    payment_date: date
    collected_by: str
    transaction_id: Optional[str] = None
    payment_proof: Optional[str] = None
    penalty: Decimal = ZERO
    created_at: datetime = field(default_factory=_utcnow)

    kind: ClassVar[str] = "payment"

    def __post_init__(self):
        if not isinstance(self.payment_mode, PaymentMode):
            raise ValidationError(f"Invalid payment mode: {self.payment_mode}")
        if self.amount <= ZERO:
            raise ValidationError("Payment amount must be greater than zero",
                                  {"amount": str(self.amount)})
        if self.penalty < ZERO:
            raise ValidationError("Payment penalty offset cannot be negative",
                                  {"penalty": str(self.penalty)})
        if not self.collected_by:
            raise ValidationError("Payment must record who collected it")

    @classmethod
    def create(
        cls,
        amount: AmountLike,
        payment_mode: Union[PaymentMode, str],
        collected_by: str,
        payment_date: Union[date, str, None] = None,
        transaction_id: Optional[str] = None,
        payment_proof: Optional[str] = None,
        penalty: AmountLike = ZERO,
        now: Optional[datetime] = None
    ) -> 'PaymentEntry':
        """
        Build a validated payment entry from loosely typed input

        Args:
            amount: Amount collected, must be positive
            payment_mode: PaymentMode or its string value
            collected_by: Identity of the collecting actor
            payment_date: Date of payment (defaults to today)
            transaction_id: External transaction reference
            payment_proof: Stored reference to a receipt image
            penalty: Penalty amount settled with this payment
            now: Creation timestamp (defaults to current UTC time)
        """
        now = now or _utcnow()
        if isinstance(payment_mode, str):
            try:
                payment_mode = PaymentMode(payment_mode)
            except ValueError:
                raise ValidationError(
                    f"Invalid payment mode: {payment_mode}",
                    {"allowed": [m.value for m in PaymentMode]}
                )
        return cls(
            id=str(uuid.uuid4()),
            amount=_parse_amount(amount, "amount"),
            payment_mode=payment_mode,
            payment_date=_parse_date(payment_date, now.date()),
            collected_by=collected_by,
            transaction_id=transaction_id,
            payment_proof=payment_proof,
            penalty=_parse_amount(penalty if penalty is not None else ZERO, "penalty"),
            created_at=now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'id': self.id,
            'amount': str(self.amount),
            'payment_mode': self.payment_mode.value,
            'payment_date': self.payment_date.isoformat(),
            'collected_by': self.collected_by,
            'transaction_id': self.transaction_id,
            'payment_proof': self.payment_proof,
            'penalty': str(self.penalty),
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentEntry':
        return cls(
            id=data['id'],
            amount=Decimal(data['amount']),
            payment_mode=PaymentMode(data['payment_mode']),
            payment_date=date.fromisoformat(data['payment_date']),
            collected_by=data['collected_by'],
            transaction_id=data.get('transaction_id'),
            payment_proof=data.get('payment_proof'),
            penalty=Decimal(data.get('penalty', '0.00')),
            created_at=datetime.fromisoformat(data['created_at'])
        )


@dataclass(frozen=True)
class PenaltyEntry:
    """A penalty charged against a loan"""
    id: str
    amount: Decimal
    reason: str
    applied_date: date
    applied_at: datetime = field(default_factory=_utcnow)

    kind: ClassVar[str] = "penalty"

    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValidationError("Penalty amount must be greater than zero",
                                  {"amount": str(self.amount)})
        if not self.reason:
            raise ValidationError("Penalty reason is required")

    @classmethod
    def create(
        cls,
        amount: AmountLike,
        reason: str,
        now: Optional[datetime] = None
    ) -> 'PenaltyEntry':
        now = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            amount=_parse_amount(amount, "amount"),
            reason=reason,
            applied_date=now.date(),
            applied_at=now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'id': self.id,
            'amount': str(self.amount),
            'reason': self.reason,
            'applied_date': self.applied_date.isoformat(),
            'applied_at': self.applied_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PenaltyEntry':
        return cls(
            id=data['id'],
            amount=Decimal(data['amount']),
            reason=data['reason'],
            applied_date=date.fromisoformat(data['applied_date']),
            applied_at=datetime.fromisoformat(data['applied_at'])
        )


LedgerEntry = Union[PaymentEntry, PenaltyEntry]

_ENTRY_TYPES = {
    PaymentEntry.kind: PaymentEntry,
    PenaltyEntry.kind: PenaltyEntry,
}


class LoanLedger:
    """
    Ordered, append-only sequence of ledger entries.

    Insertion order is display order. There is no update or delete.
    """

    def __init__(self, entries: Optional[List[LedgerEntry]] = None):
        self._entries: List[LedgerEntry] = []
        for entry in entries or []:
            self.append(entry)

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        if not isinstance(entry, (PaymentEntry, PenaltyEntry)):
            raise TypeError(f"Not a ledger entry: {entry!r}")
        if any(existing.id == entry.id for existing in self._entries):
            raise ValidationError(f"Ledger entry {entry.id} already recorded")
        self._entries.append(entry)
        return entry

    @property
    def entries(self) -> Tuple[LedgerEntry, ...]:
        return tuple(self._entries)

    @property
    def payments(self) -> Tuple[PaymentEntry, ...]:
        return tuple(e for e in self._entries if isinstance(e, PaymentEntry))

    @property
    def penalties(self) -> Tuple[PenaltyEntry, ...]:
        return tuple(e for e in self._entries if isinstance(e, PenaltyEntry))

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.entries)

    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self.payments), ZERO)

    def total_penalty(self) -> Decimal:
        """Full recompute of penalties from the entries"""
        return sum((p.amount for p in self.penalties), ZERO)

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    @classmethod
    def from_list(cls, data: List[Dict[str, Any]]) -> 'LoanLedger':
        entries = []
        for item in data:
            entry_type = _ENTRY_TYPES.get(item.get('kind'))
            if entry_type is None:
                raise ValueError(f"Unknown ledger entry kind: {item.get('kind')}")
            entries.append(entry_type.from_dict(item))
        return cls(entries)


def post_payment(loan: 'Loan', entry: PaymentEntry) -> PaymentEntry:
    """
    Append a payment and move the EMI counters by one installment.

    Status is not touched here; the lifecycle decides the resulting status.
    """
    if loan.emis_remaining <= 0:
        raise InvalidTransition(
            f"Loan {loan.loan_id} has no EMIs remaining",
            {"loan_id": loan.loan_id, "emis_remaining": loan.emis_remaining}
        )
    loan.ledger.append(entry)
    loan.emis_paid += 1
    loan.emis_remaining -= 1
    loan.last_payment_date = entry.payment_date
    return entry


def post_penalty(loan: 'Loan', entry: PenaltyEntry) -> PenaltyEntry:
    """Append a penalty and accumulate the loan's total penalty"""
    loan.ledger.append(entry)
    loan.total_penalty = loan.total_penalty + entry.amount
    return entry


def reconcile(loan: 'Loan') -> List[str]:
    """
    Compare the loan's cached counters against a recompute from the ledger

    Returns:
        Human-readable discrepancies; empty when the loan is consistent
    """
    problems = []
    payment_count = len(loan.ledger.payments)
    if loan.emis_paid != payment_count:
        problems.append(f"emis_paid={loan.emis_paid} but ledger holds {payment_count} payments")
    if loan.emis_remaining < 0:
        problems.append(f"emis_remaining is negative ({loan.emis_remaining})")
    if loan.emis_paid + loan.emis_remaining != loan.terms.tenure:
        problems.append(
            f"emis_paid + emis_remaining = {loan.emis_paid + loan.emis_remaining}, "
            f"tenure is {loan.terms.tenure}"
        )
    recomputed = loan.ledger.total_penalty()
    if loan.total_penalty != recomputed:
        problems.append(f"total_penalty={loan.total_penalty} but penalties sum to {recomputed}")
    return problems


def verify_ledger(loan: 'Loan') -> None:
    """Raise LedgerIntegrityError if cached counters disagree with the ledger"""
    problems = reconcile(loan)
    if problems:
        raise LedgerIntegrityError(
            f"Ledger inconsistency on loan {loan.loan_id}",
            {"loan_id": loan.loan_id, "problems": problems}
        )
