"""
Loan Record Module

The Loan aggregate: applicant, guarantor, product, banking and financial data,
lifecycle fields, cached counters and the embedded ledger. The whole aggregate
is stored as one document so a ledger append and its counter updates commit
together.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, date
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Mapping, Optional, Union
from enum import Enum

from .amounts import AMOUNT_QUANTUM, ZERO, to_amount
from .errors import ValidationError
from .ledger import LoanLedger
from .storage import StorageRecord


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"        # Application submitted
    VERIFIED = "Verified"      # Documents checked by a verifier
    APPROVED = "Approved"      # Approved by an administrator
    ACTIVE = "Active"          # Repayments in progress
    OVERDUE = "Overdue"        # Penalised for a missed EMI
    PAID = "Paid"              # All EMIs collected
    REJECTED = "Rejected"      # Application refused


TERMINAL_STATUSES = frozenset({LoanStatus.PAID, LoanStatus.REJECTED})


class KYCStatus(Enum):
    """Identity verification status, independent of loan status"""
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ApplicationMode(Enum):
    """Who filled in the application"""
    SELF = "self"
    ASSISTED = "assisted"


ADDRESS_PARTS = (
    ("houseNo", "house_no"),
    ("galiNo", "street"),
    ("colony", "colony"),
    ("city", "city"),
    ("state", "state"),
)


def format_address(value: Union[Mapping[str, Any], str, None], default: str = "N/A") -> str:
    """
    Collapse a structured address into the single display string.

    Format: ``houseNo, street, colony, city, state - pincode`` with missing
    parts left empty. Plain strings pass through unchanged.
    """
    if value is None or value == "":
        return default
    if isinstance(value, str):
        return value

    def part(*keys: str) -> str:
        for key in keys:
            if value.get(key):
                return str(value[key])
        return ""

    head = ", ".join(part(*keys) for keys in ADDRESS_PARTS)
    return f"{head} - {part('pincode', 'pin_code')}"


def calculate_emi(loan_amount: Decimal, interest_rate: Decimal, tenure: int) -> Decimal:
    """
    Equal monthly installment for an annual interest rate fraction

    Standard formula: P * [c(1+c)^n] / [(1+c)^n - 1] with c = rate / 12
    """
    if tenure <= 0:
        raise ValidationError("Tenure must be at least one month", {"tenure": tenure})
    if loan_amount <= ZERO:
        return ZERO

    periodic_rate = interest_rate / Decimal('12')
    num_payments = Decimal(tenure)
    if periodic_rate == Decimal('0'):
        payment = loan_amount / num_payments
    else:
        factor = (Decimal('1') + periodic_rate) ** tenure
        payment = loan_amount * (periodic_rate * factor) / (factor - Decimal('1'))

    return payment.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    return Decimal(value) if value not in (None, "") else None


def _date_or_none(value: Any) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _plain(obj: Any) -> Dict[str, Any]:
    """asdict with Decimal and date values rendered as strings"""
    result = asdict(obj)
    for key, value in result.items():
        if isinstance(value, Decimal):
            result[key] = str(value)
        elif isinstance(value, date):
            result[key] = value.isoformat()
    return result


def _known(cls: type, data: Mapping[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class Applicant:
    """Loan applicant (the client)"""
    name: str
    phone: str
    national_id: str
    address: str
    father_or_spouse_name: Optional[str] = None
    gender: Optional[str] = None
    working_address: Optional[str] = None
    tax_id: Optional[str] = None
    email: Optional[str] = None
    photo: Optional[str] = None
    national_id_front_image: Optional[str] = None
    national_id_back_image: Optional[str] = None
    tax_id_image: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Applicant':
        return cls(**_known(cls, data))


@dataclass
class Guarantor:
    """Optional guarantor, mirroring the applicant fields"""
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    national_id: Optional[str] = None
    relationship: Optional[str] = None
    gender: Optional[str] = None
    working_address: Optional[str] = None
    reference_name: Optional[str] = None
    reference_number: Optional[str] = None
    photo: Optional[str] = None
    national_id_front_image: Optional[str] = None
    national_id_back_image: Optional[str] = None
    tax_id_image: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Guarantor':
        return cls(**_known(cls, data))


@dataclass
class Product:
    """Financed product"""
    category: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None
    price: Optional[Decimal] = None
    serial_number: Optional[str] = None
    down_payment: Optional[Decimal] = None
    file_charge: Optional[Decimal] = None
    image: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Product':
        values = _known(cls, data)
        for name in ('price', 'down_payment', 'file_charge'):
            values[name] = _decimal_or_none(values.get(name))
        return cls(**values)


@dataclass
class BankDetails:
    """Repayment bank account"""
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    routing_code: Optional[str] = None  # IFSC
    branch_name: Optional[str] = None
    payment_mode: Optional[str] = None
    passbook_image: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'BankDetails':
        return cls(**_known(cls, data))


@dataclass
class LoanTerms:
    """Financial terms fixed at application time"""
    loan_amount: Decimal
    interest_rate: Decimal              # Annual fraction, e.g. 0.0375
    tenure: int                         # Number of monthly EMIs
    emi_amount: Decimal
    emi_start_date: date

    def __post_init__(self):
        if self.loan_amount < ZERO:
            raise ValidationError("Loan amount cannot be negative",
                                  {"loan_amount": str(self.loan_amount)})
        if self.interest_rate < Decimal('0'):
            raise ValidationError("Interest rate cannot be negative",
                                  {"interest_rate": str(self.interest_rate)})
        if self.tenure <= 0:
            raise ValidationError("Tenure must be at least one month", {"tenure": self.tenure})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LoanTerms':
        return cls(
            loan_amount=Decimal(data['loan_amount']),
            interest_rate=Decimal(data['interest_rate']),
            tenure=int(data['tenure']),
            emi_amount=Decimal(data['emi_amount']),
            emi_start_date=date.fromisoformat(data['emi_start_date'])
        )


@dataclass
class StatusChange:
    """One recorded lifecycle step"""
    action: str
    from_status: str
    to_status: str
    actor_id: str
    actor_role: str
    at: datetime
    comment: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['at'] = self.at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'StatusChange':
        values = _known(cls, data)
        values['at'] = datetime.fromisoformat(values['at'])
        return cls(**values)


@dataclass
class LoanDocument:
    """Reference to an uploaded supporting document"""
    type: str
    url: str
    uploaded_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'url': self.url, 'uploaded_at': self.uploaded_at.isoformat()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'LoanDocument':
        return cls(
            type=data['type'],
            url=data['url'],
            uploaded_at=datetime.fromisoformat(data['uploaded_at'])
        )


@dataclass
class Loan(StorageRecord):
    """Loan application and account with its ledger"""
    loan_id: str                        # Human-readable reference, e.g. LN12345678
    shopkeeper_id: str                  # Owning agent
    applicant: Applicant
    product: Product
    bank: BankDetails
    terms: LoanTerms
    applied_date: date
    guarantor: Optional[Guarantor] = None
    customer_id: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING
    kyc_status: KYCStatus = KYCStatus.PENDING

    # Lifecycle stamps
    verified_date: Optional[date] = None
    approved_date: Optional[date] = None
    rejected_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    next_due_date: Optional[date] = None
    kyc_verified_by: Optional[str] = None
    kyc_verified_date: Optional[date] = None

    # Comments
    verifier_comment: Optional[str] = None
    admin_comment: Optional[str] = None
    rejection_reason: Optional[str] = None
    status_comment: Optional[str] = None
    comment_date: Optional[datetime] = None

    # Cached counters, moved only by ledger postings
    emis_paid: int = 0
    emis_remaining: Optional[int] = None
    total_penalty: Decimal = ZERO
    ledger: LoanLedger = field(default_factory=LoanLedger)

    documents: List[LoanDocument] = field(default_factory=list)
    status_history: List[StatusChange] = field(default_factory=list)
    submitted_by: Optional[str] = None
    updated_by: Optional[str] = None
    application_mode: ApplicationMode = ApplicationMode.ASSISTED
    version: int = 0

    def __post_init__(self):
        if self.emis_remaining is None:
            self.emis_remaining = self.terms.tenure - self.emis_paid
        self.total_penalty = to_amount(self.total_penalty)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def client_name(self) -> str:
        return self.applicant.name

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the stored document"""
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'shopkeeper_id': self.shopkeeper_id,
            'customer_id': self.customer_id,
            'applicant': _plain(self.applicant),
            'guarantor': _plain(self.guarantor) if self.guarantor else None,
            'product': _plain(self.product),
            'bank': _plain(self.bank),
            'terms': _plain(self.terms),
            'status': self.status.value,
            'kyc_status': self.kyc_status.value,
            'applied_date': self.applied_date.isoformat(),
            'verified_date': self.verified_date.isoformat() if self.verified_date else None,
            'approved_date': self.approved_date.isoformat() if self.approved_date else None,
            'rejected_date': self.rejected_date.isoformat() if self.rejected_date else None,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'kyc_verified_by': self.kyc_verified_by,
            'kyc_verified_date': self.kyc_verified_date.isoformat() if self.kyc_verified_date else None,
            'verifier_comment': self.verifier_comment,
            'admin_comment': self.admin_comment,
            'rejection_reason': self.rejection_reason,
            'status_comment': self.status_comment,
            'comment_date': self.comment_date.isoformat() if self.comment_date else None,
            'emis_paid': self.emis_paid,
            'emis_remaining': self.emis_remaining,
            'total_penalty': str(self.total_penalty),
            'ledger': self.ledger.to_list(),
            'documents': [d.to_dict() for d in self.documents],
            'status_history': [s.to_dict() for s in self.status_history],
            'submitted_by': self.submitted_by,
            'updated_by': self.updated_by,
            'application_mode': self.application_mode.value,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Rebuild a loan from its stored document"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            shopkeeper_id=data['shopkeeper_id'],
            customer_id=data.get('customer_id'),
            applicant=Applicant.from_dict(data['applicant']),
            guarantor=Guarantor.from_dict(data['guarantor']) if data.get('guarantor') else None,
            product=Product.from_dict(data.get('product') or {}),
            bank=BankDetails.from_dict(data.get('bank') or {}),
            terms=LoanTerms.from_dict(data['terms']),
            status=LoanStatus(data['status']),
            kyc_status=KYCStatus(data.get('kyc_status', KYCStatus.PENDING.value)),
            applied_date=date.fromisoformat(data['applied_date']),
            verified_date=_date_or_none(data.get('verified_date')),
            approved_date=_date_or_none(data.get('approved_date')),
            rejected_date=_date_or_none(data.get('rejected_date')),
            last_payment_date=_date_or_none(data.get('last_payment_date')),
            next_due_date=_date_or_none(data.get('next_due_date')),
            kyc_verified_by=data.get('kyc_verified_by'),
            kyc_verified_date=_date_or_none(data.get('kyc_verified_date')),
            verifier_comment=data.get('verifier_comment'),
            admin_comment=data.get('admin_comment'),
            rejection_reason=data.get('rejection_reason'),
            status_comment=data.get('status_comment'),
            comment_date=datetime.fromisoformat(data['comment_date']) if data.get('comment_date') else None,
            emis_paid=data.get('emis_paid', 0),
            emis_remaining=data.get('emis_remaining'),
            total_penalty=Decimal(data.get('total_penalty', '0.00')),
            ledger=LoanLedger.from_list(data.get('ledger', [])),
            documents=[LoanDocument.from_dict(d) for d in data.get('documents', [])],
            status_history=[StatusChange.from_dict(s) for s in data.get('status_history', [])],
            submitted_by=data.get('submitted_by'),
            updated_by=data.get('updated_by'),
            application_mode=ApplicationMode(data.get('application_mode', ApplicationMode.ASSISTED.value)),
            version=data.get('version', 0)
        )

    def display_view(self) -> Dict[str, Any]:
        """
        Read-only camelCase projection for legacy screens.

        The ``customer*`` keys repeat applicant data; they are computed here
        and never stored.
        """
        applicant = self.applicant
        guarantor = self.guarantor or Guarantor()

        def iso(value: Optional[Union[date, datetime]]) -> Optional[str]:
            return value.isoformat() if value else None

        def money(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            '_id': self.id,
            'loanId': self.loan_id,
            'clientName': applicant.name,
            'clientPhone': applicant.phone,
            'clientAadharNumber': applicant.national_id,
            'clientAddress': applicant.address,
            'clientFatherOrSpouseName': applicant.father_or_spouse_name,
            'clientGender': applicant.gender,
            'clientWorkingAddress': applicant.working_address,
            'clientPanNumber': applicant.tax_id,
            'customerName': applicant.name,
            'customerPhone': applicant.phone,
            'customerEmail': applicant.email,
            'customerAddress': applicant.address,
            'customerAadhaar': applicant.national_id,
            'customerPan': applicant.tax_id,
            'customerPhoto': applicant.photo,
            'aadhaarFrontImage': applicant.national_id_front_image,
            'aadhaarBackImage': applicant.national_id_back_image,
            'panFrontImage': applicant.tax_id_image,
            'guarantorName': guarantor.name,
            'guarantorPhone': guarantor.phone,
            'guarantorEmail': guarantor.email,
            'guarantorAddress': guarantor.address,
            'guarantorAadhaar': guarantor.national_id,
            'guarantorRelationship': guarantor.relationship,
            'guarantorGender': guarantor.gender,
            'guarantorWorkingAddress': guarantor.working_address,
            'guarantorPhoto': guarantor.photo,
            'guarantorAadhaarFrontImage': guarantor.national_id_front_image,
            'guarantorAadhaarBackImage': guarantor.national_id_back_image,
            'guarantorPanImage': guarantor.tax_id_image,
            'referenceName': guarantor.reference_name,
            'referenceNumber': guarantor.reference_number,
            'productName': self.product.name,
            'productCategory': self.product.category,
            'productCompany': self.product.company,
            'productPrice': money(self.product.price),
            'price': money(self.product.price),
            'serialNumber': self.product.serial_number,
            'productImage': self.product.image,
            'downPayment': money(self.product.down_payment),
            'fileCharge': money(self.product.file_charge),
            'bankName': self.bank.bank_name,
            'accountNumber': self.bank.account_number,
            'ifscCode': self.bank.routing_code,
            'branchName': self.bank.branch_name,
            'paymentMode': self.bank.payment_mode,
            'passbookImage': self.bank.passbook_image,
            'loanAmount': str(self.terms.loan_amount),
            'interestRate': str(self.terms.interest_rate),
            'tenure': self.terms.tenure,
            'emiAmount': str(self.terms.emi_amount),
            'emiStartDate': iso(self.terms.emi_start_date),
            'status': self.status.value,
            'kycStatus': self.kyc_status.value,
            'appliedDate': iso(self.applied_date),
            'verifiedDate': iso(self.verified_date),
            'approvedDate': iso(self.approved_date),
            'rejectedDate': iso(self.rejected_date),
            'nextDueDate': iso(self.next_due_date),
            'lastPaymentDate': iso(self.last_payment_date),
            'kycVerifiedBy': self.kyc_verified_by,
            'kycVerifiedDate': iso(self.kyc_verified_date),
            'statusComment': self.status_comment,
            'verifierComment': self.verifier_comment,
            'adminComment': self.admin_comment,
            'rejectionReason': self.rejection_reason,
            'commentDate': iso(self.comment_date),
            'emisPaid': self.emis_paid,
            'emisRemaining': self.emis_remaining,
            'totalPenalty': str(self.total_penalty),
            'payments': [p.to_dict() for p in self.ledger.payments],
            'penalties': [p.to_dict() for p in self.ledger.penalties],
            'documents': [d.to_dict() for d in self.documents],
            'submittedBy': self.submitted_by,
            'updatedBy': self.updated_by,
            'shopkeeperId': self.shopkeeper_id,
            'customerId': self.customer_id,
            'applicationMode': self.application_mode.value,
            'createdAt': iso(self.created_at),
            'updatedAt': iso(self.updated_at),
        }
