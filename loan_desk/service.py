"""
Loan Service Module

Application layer for the loan back-office: creation, listing, status
transitions, payment collection, penalties and statistics. Every mutation of
an existing loan is a load, apply, compare-and-swap cycle on the loan
document, retried on version conflict. Events are published only after the
write commits.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Union
import logging
import math
import uuid

from .access import Actor, Permission, Role, require_permission
from .amounts import ZERO, to_amount, to_rate
from .config import LoanDeskConfig, get_config
from .directories import CustomerDirectory, ShopkeeperDirectory
from .errors import (
    AccessDenied, ConcurrencyConflict, NotFoundError, ValidationError
)
from .events import DomainEvent, EventDispatcher
from .ledger import LedgerEntry, PaymentEntry, PenaltyEntry, verify_ledger
from .lifecycle import LoanAction, LoanStateMachine, TransitionResult, loan_event, parse_status
from .loans import (
    Applicant, ApplicationMode, BankDetails, Guarantor, KYCStatus, Loan,
    LoanDocument, LoanStatus, LoanTerms, Product, calculate_emi, format_address
)
from .logging_config import log_action
from .schemas import (
    AddressInput, DueDateRequest, KycUpdateRequest, LoanApplication, LoanFilter,
    PaymentRequest, PenaltyRequest, StatusUpdateRequest, parse_input
)
from .storage import StorageInterface
from .uploads import ImageStore, resolve_upload


logger = logging.getLogger("loan_desk.service")

LOANS_TABLE = "loans"
LOAN_IDS_TABLE = "loan_ids"
LOAN_NUMBER_SPACE = 100_000_000

InputData = Union[Dict[str, Any], Any]


@dataclass
class LoanPage:
    """One page of a loan listing"""
    loans: List[Loan]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loans': [loan.display_view() for loan in self.loans],
            'totalPages': self.total_pages,
            'currentPage': self.page,
            'total': self.total,
        }


@dataclass
class LoanStatistics:
    """Loan counts per status and penalty total for one actor's view"""
    total_loans: int = 0
    by_status: Dict[str, int] = field(default_factory=lambda: {s.value: 0 for s in LoanStatus})
    total_penalties: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {
            'totalLoans': self.total_loans,
            'pendingLoans': self.by_status[LoanStatus.PENDING.value],
            'verifiedLoans': self.by_status[LoanStatus.VERIFIED.value],
            'approvedLoans': self.by_status[LoanStatus.APPROVED.value],
            'activeLoans': self.by_status[LoanStatus.ACTIVE.value],
            'overdueLoans': self.by_status[LoanStatus.OVERDUE.value],
            'completedLoans': self.by_status[LoanStatus.PAID.value],
            'rejectedLoans': self.by_status[LoanStatus.REJECTED.value],
            'totalPenalties': str(self.total_penalties),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _address(value: Union[AddressInput, str, None], default: str) -> str:
    if isinstance(value, AddressInput):
        return format_address(value.as_mapping(), default)
    return format_address(value, default)


class LoanService:
    """
    Loan operations on behalf of an authenticated actor

    Args:
        storage: Document store holding the loans table
        state_machine: Lifecycle rules
        events: Dispatcher receiving events after each committed write
        config: Defaults and policies (global configuration if omitted)
        shopkeepers: Directory used for token balance and display summaries
        customers: Directory used for display summaries
        image_store: Stores raw uploads carried by applications and payments
        clock: Source of the current UTC time
    """

    def __init__(
        self,
        storage: StorageInterface,
        state_machine: LoanStateMachine,
        events: EventDispatcher,
        config: Optional[LoanDeskConfig] = None,
        shopkeepers: Optional[ShopkeeperDirectory] = None,
        customers: Optional[CustomerDirectory] = None,
        image_store: Optional[ImageStore] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.storage = storage
        self.state_machine = state_machine
        self.events = events
        self.config = config or get_config()
        self.shopkeepers = shopkeepers
        self.customers = customers
        self.image_store = image_store
        self.clock = clock or _utcnow
        self._last_loan_number = -1

    # Creation

    def _reserve_loan_id(self, record_id: str) -> str:
        """
        Claim the next free human-readable loan id

        Candidates are the prefix plus the last eight digits of the
        millisecond clock, bumped past the last id this service issued.
        A claim is an insert-only write to the reservation table, so services
        sharing one store never hand out the same id. Must run inside the
        creation transaction so a failed insert releases the claim.
        """
        millis = int(self.clock().timestamp() * 1000)
        number = max(int(str(millis)[-8:]), self._last_loan_number + 1)
        for _ in range(LOAN_NUMBER_SPACE):
            number %= LOAN_NUMBER_SPACE
            candidate = f"{self.config.loan_id_prefix}{number:08d}"
            reservation = {'id': candidate, 'loan': record_id, 'version': 1}
            if self.storage.compare_and_swap(LOAN_IDS_TABLE, candidate, reservation, None):
                self._last_loan_number = number
                return candidate
            number += 1
        raise ConcurrencyConflict(
            "No free loan id left", {"prefix": self.config.loan_id_prefix}
        )

    def _upload(self, field_name: str, value: Any) -> Optional[str]:
        return resolve_upload(self.image_store, field_name, value)

    def _validate_application(self, application: LoanApplication) -> None:
        if not application.client_name:
            raise ValidationError("Client name is required", {"field": "clientName"})
        if not application.client_aadhar_number:
            raise ValidationError("Client Aadhar number is required", {"field": "clientAadharNumber"})
        if not application.phone:
            raise ValidationError("Client phone number is required", {"field": "clientPhone"})

    def _build_terms(self, application: LoanApplication, applied: date) -> LoanTerms:
        price = to_amount(application.price) if application.price is not None else None
        down_payment = to_amount(application.down_payment) if application.down_payment is not None else ZERO

        if application.loan_amount is not None:
            loan_amount = to_amount(application.loan_amount)
        else:
            loan_amount = (price or ZERO) - down_payment
        if loan_amount < ZERO:
            raise ValidationError(
                "Loan amount cannot be negative; down payment exceeds price",
                {"price": str(price), "down_payment": str(down_payment)}
            )

        interest_rate = (
            to_rate(application.interest_rate) if application.interest_rate is not None
            else to_rate(self.config.default_interest_rate)
        )
        tenure = application.tenure or self.config.default_tenure_months
        if application.emi_amount:
            emi_amount = to_amount(application.emi_amount)
        else:
            emi_amount = calculate_emi(loan_amount, interest_rate, tenure)

        return LoanTerms(
            loan_amount=loan_amount,
            interest_rate=interest_rate,
            tenure=tenure,
            emi_amount=emi_amount,
            emi_start_date=application.emi_start_date or applied
        )

    def _build_guarantor(self, application: LoanApplication) -> Optional[Guarantor]:
        data = application.guarantor
        if data is None:
            return None
        return Guarantor(
            name=data.name,
            phone=data.mobile,
            email=data.email,
            address=_address(data.address, ""),
            national_id=data.aadhar_number,
            relationship=data.relation,
            gender=data.gender,
            working_address=data.working_address,
            reference_name=data.reference_name,
            reference_number=data.reference_number,
            photo=self._upload("guarantorPhoto", data.photo),
            national_id_front_image=self._upload("guarantorAadhaarFrontImage", data.aadhaar_front_image),
            national_id_back_image=self._upload("guarantorAadhaarBackImage", data.aadhaar_back_image),
            tax_id_image=self._upload("guarantorPanImage", data.pan_image)
        )

    def _owner_for(self, application: LoanApplication, actor: Actor) -> str:
        if actor.role is Role.ADMIN and application.shopkeeper_id:
            return application.shopkeeper_id
        return actor.id

    def create_loan(self, application: InputData, actor: Actor) -> Loan:
        """
        Submit a new loan application

        Shopkeepers spend application tokens when the balance policy is on;
        the debit and the loan insert commit together.

        Raises:
            ValidationError: Required applicant data missing or malformed
            InsufficientBalance: Shopkeeper has too few tokens
            AccessDenied: Actor's role cannot create loans
        """
        require_permission(actor, Permission.CREATE_LOAN)
        application = parse_input(LoanApplication, application)
        self._validate_application(application)

        now = self.clock()
        applied = now.date()
        terms = self._build_terms(application, applied)

        if application.application_mode:
            try:
                mode = ApplicationMode(application.application_mode)
            except ValueError:
                raise ValidationError(
                    f"Invalid application mode: {application.application_mode}",
                    {"allowed": [m.value for m in ApplicationMode]}
                )
        else:
            mode = ApplicationMode.ASSISTED

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id="",
            shopkeeper_id=self._owner_for(application, actor),
            customer_id=application.customer_id,
            applicant=Applicant(
                name=application.client_name,
                phone=application.phone,
                national_id=application.client_aadhar_number,
                address=_address(application.client_address, "N/A"),
                father_or_spouse_name=application.client_father_or_spouse_name,
                gender=application.client_gender,
                working_address=application.client_working_address,
                tax_id=application.client_pan_number,
                email=application.client_email,
                photo=self._upload("clientPhoto", application.client_photo),
                national_id_front_image=self._upload("aadhaarFrontImage", application.aadhaar_front_image),
                national_id_back_image=self._upload("aadhaarBackImage", application.aadhaar_back_image),
                tax_id_image=self._upload("panFrontImage", application.pan_front_image)
            ),
            guarantor=self._build_guarantor(application),
            product=Product(
                category=application.product_category,
                name=application.product_name,
                company=application.product_company,
                price=to_amount(application.price) if application.price is not None else None,
                serial_number=application.serial_number,
                down_payment=to_amount(application.down_payment) if application.down_payment is not None else None,
                file_charge=to_amount(application.file_charge) if application.file_charge is not None else None,
                image=self._upload("productImage", application.product_image)
            ),
            bank=BankDetails(
                bank_name=application.bank_name,
                account_number=application.account_number,
                routing_code=application.ifsc_code,
                branch_name=application.branch_name,
                payment_mode=application.payment_mode,
                passbook_image=self._upload("passbookImage", application.passbook_image)
            ),
            terms=terms,
            applied_date=applied,
            documents=[LoanDocument(type=d.type, url=d.url, uploaded_at=now) for d in application.documents],
            submitted_by=actor.id,
            updated_by=actor.role.value,
            application_mode=mode,
            version=1
        )

        charge_tokens = (
            self.config.enforce_token_balance
            and actor.role is Role.SHOPKEEPER
            and self.shopkeepers is not None
        )
        with self.storage.atomic():
            if charge_tokens:
                self.shopkeepers.debit_tokens(actor.id, self.config.application_token_cost)
            loan.loan_id = self._reserve_loan_id(loan.id)
            if not self.storage.compare_and_swap(LOANS_TABLE, loan.id, loan.to_dict(), None):
                raise ConcurrencyConflict(f"Loan record {loan.id} already exists", {"id": loan.id})

        log_action(
            logger, "info",
            f"Loan {loan.loan_id} created for {loan.applicant.name} ({terms.loan_amount})",
            actor_id=actor.id, actor_role=actor.role.value,
            action="create_loan", loan_id=loan.loan_id
        )
        self.events.publish(loan_event(loan, DomainEvent.LOAN_CREATED, actor))
        return loan

    # Reads

    def _load(self, loan_ref: str) -> Loan:
        """Load by internal id, falling back to the human-readable loan id"""
        data = self.storage.load(LOANS_TABLE, loan_ref)
        if data is None:
            matches = self.storage.find(LOANS_TABLE, {'loan_id': loan_ref})
            data = matches[0] if matches else None
        if data is None:
            raise NotFoundError(f"Loan {loan_ref} not found", {"loan": loan_ref})
        return Loan.from_dict(data)

    @staticmethod
    def _check_visible(loan: Loan, actor: Actor) -> None:
        field_name = actor.scope_field
        if field_name and getattr(loan, field_name) != actor.id:
            raise AccessDenied(
                "Access denied",
                {"loan_id": loan.loan_id, "role": actor.role.value}
            )

    def get_loan(self, loan_ref: str, actor: Actor) -> Loan:
        """
        Raises:
            NotFoundError: No such loan
            AccessDenied: Owner-scoped actor does not own the loan
        """
        require_permission(actor, Permission.VIEW_LOAN)
        loan = self._load(loan_ref)
        self._check_visible(loan, actor)
        return loan

    def get_loan_view(self, loan_ref: str, actor: Actor) -> Dict[str, Any]:
        """Legacy display projection with shopkeeper and customer summaries"""
        loan = self.get_loan(loan_ref, actor)
        view = loan.display_view()

        shopkeeper = self.shopkeepers.get_summary(loan.shopkeeper_id) if self.shopkeepers else None
        view['shopkeeper'] = shopkeeper.to_dict() if shopkeeper else None

        customer = None
        if loan.customer_id and self.customers:
            customer = self.customers.get_summary(loan.customer_id)
        view['customer'] = customer.to_dict() if customer else None
        return view

    def get_ledger(self, loan_ref: str, actor: Actor) -> List[LedgerEntry]:
        """Ledger entries in insertion order"""
        return list(self.get_loan(loan_ref, actor).ledger.entries)

    def _scoped_loans(self, actor: Actor, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        query = dict(filters or {})
        query.update(actor.scope_filters())
        return self.storage.find(LOANS_TABLE, query)

    def list_loans(self, filters: InputData, actor: Actor) -> LoanPage:
        """
        List loans newest first

        Owner-scoped roles only see their own loans.
        """
        require_permission(actor, Permission.VIEW_LOAN)
        loan_filter = parse_input(LoanFilter, filters)

        query: Dict[str, Any] = {}
        if loan_filter.status:
            query['status'] = parse_status(loan_filter.status).value
        if loan_filter.kyc_status:
            try:
                query['kyc_status'] = KYCStatus(loan_filter.kyc_status).value
            except ValueError:
                raise ValidationError(
                    f"Invalid KYC status: {loan_filter.kyc_status}",
                    {"allowed": [s.value for s in KYCStatus]}
                )

        limit = min(loan_filter.limit or self.config.default_page_size, self.config.max_page_size)
        records = self._scoped_loans(actor, query)
        records.sort(key=lambda r: r['created_at'], reverse=True)

        start = (loan_filter.page - 1) * limit
        page = [Loan.from_dict(r) for r in records[start:start + limit]]
        return LoanPage(loans=page, total=len(records), page=loan_filter.page, limit=limit)

    def get_statistics(self, actor: Actor) -> LoanStatistics:
        """Counts per status plus total penalties over the loans the actor can see"""
        require_permission(actor, Permission.VIEW_STATISTICS)
        stats = LoanStatistics()
        for record in self._scoped_loans(actor):
            stats.total_loans += 1
            stats.by_status[record['status']] += 1
            stats.total_penalties += Decimal(record.get('total_penalty', '0.00'))
        return stats

    # Mutations

    def _mutate(
        self,
        loan_ref: str,
        actor: Actor,
        action: str,
        apply: Callable[[Loan], TransitionResult]
    ) -> TransitionResult:
        """
        Run one lifecycle operation with optimistic concurrency.

        The loan is reloaded on every attempt so the operation always applies
        to the latest committed version.
        """
        attempts = self.config.max_write_retries
        for attempt in range(1, attempts + 1):
            loan = self._load(loan_ref)
            self._check_visible(loan, actor)
            expected_version = loan.version

            result = apply(loan)
            verify_ledger(loan)
            loan.version = expected_version + 1

            if self.storage.compare_and_swap(LOANS_TABLE, loan.id, loan.to_dict(), expected_version):
                log_action(
                    logger, "info",
                    f"Loan {loan.loan_id} {action}: {result.from_status.value} -> {result.to_status.value}",
                    actor_id=actor.id, actor_role=actor.role.value,
                    action=action, loan_id=loan.loan_id
                )
                self.events.publish_all(result.events)
                return result

            log_action(
                logger, "warning",
                f"Version conflict on loan {loan.loan_id} during {action} (attempt {attempt}/{attempts})",
                actor_id=actor.id, actor_role=actor.role.value,
                action=action, loan_id=loan.loan_id
            )

        raise ConcurrencyConflict(
            f"Loan {loan_ref} was modified concurrently; {action} not applied",
            {"loan": loan_ref, "action": action, "attempts": attempts}
        )

    def update_status(
        self,
        loan_ref: str,
        status: Union[LoanStatus, str],
        actor: Actor,
        comment: Optional[str] = None
    ) -> Loan:
        """Verify, approve or reject a loan"""
        require_permission(actor, Permission.UPDATE_LOAN_STATUS)
        if not isinstance(status, LoanStatus):
            request = parse_input(StatusUpdateRequest, {"status": status, "comment": comment})
            status, comment = request.status, request.comment
        target = parse_status(status)
        result = self._mutate(
            loan_ref, actor, "update_status",
            lambda loan: self.state_machine.transition_to(loan, target, actor, comment)
        )
        return result.loan

    def update_kyc_status(self, loan_ref: str, kyc_status: Union[KYCStatus, str], actor: Actor) -> Loan:
        require_permission(actor, Permission.UPDATE_KYC_STATUS)
        if not isinstance(kyc_status, KYCStatus):
            kyc_status = parse_input(KycUpdateRequest, {"kycStatus": kyc_status}).kyc_status
        result = self._mutate(
            loan_ref, actor, "update_kyc_status",
            lambda loan: self.state_machine.update_kyc_status(loan, kyc_status, actor)
        )
        return result.loan

    def collect_payment(self, loan_ref: str, payment: InputData, actor: Actor) -> TransitionResult:
        """
        Record one EMI payment

        Returns:
            TransitionResult holding the updated loan and the new PaymentEntry

        Raises:
            InvalidTransition: Loan is not in a payable status, or fully paid
            ValidationError: Amount or payment mode invalid
        """
        require_permission(actor, Permission.COLLECT_PAYMENT)
        request = parse_input(PaymentRequest, payment)
        entry = PaymentEntry.create(
            amount=request.amount,
            payment_mode=request.payment_mode,
            collected_by=actor.id,
            payment_date=request.payment_date,
            transaction_id=request.transaction_id,
            penalty=request.penalty if request.penalty is not None else ZERO,
            now=self.clock()
        )
        if request.payment_proof:
            # Refused payments must not leave a stored receipt behind
            loan = self._load(loan_ref)
            self._check_visible(loan, actor)
            self.state_machine.require_allowed(loan, LoanAction.COLLECT_PAYMENT)
            entry = replace(entry, payment_proof=self._upload("paymentProof", request.payment_proof))
        return self._mutate(
            loan_ref, actor, "collect_payment",
            lambda loan: self.state_machine.collect_payment(loan, entry, actor)
        )

    def apply_penalty(self, loan_ref: str, actor: Actor, penalty: InputData = None) -> TransitionResult:
        """Charge a penalty; amount and reason default from configuration"""
        require_permission(actor, Permission.APPLY_PENALTY)
        request = parse_input(PenaltyRequest, penalty)
        entry = PenaltyEntry.create(
            amount=request.amount if request.amount is not None else self.config.default_penalty_amount,
            reason=request.reason or self.config.default_penalty_reason,
            now=self.clock()
        )
        return self._mutate(
            loan_ref, actor, "apply_penalty",
            lambda loan: self.state_machine.apply_penalty(loan, entry, actor)
        )

    def set_next_due_date(self, loan_ref: str, due_date: Union[date, str], actor: Actor) -> Loan:
        require_permission(actor, Permission.SET_DUE_DATE)
        if not isinstance(due_date, date):
            due_date = parse_input(DueDateRequest, {"nextDueDate": due_date}).next_due_date
        result = self._mutate(
            loan_ref, actor, "set_next_due_date",
            lambda loan: self.state_machine.set_next_due_date(loan, due_date, actor)
        )
        return result.loan

    def delete_loan(self, loan_ref: str, actor: Actor) -> None:
        """
        Remove a loan together with its ledger

        Raises:
            AccessDenied: Actor is neither an administrator nor the owning shopkeeper
        """
        require_permission(actor, Permission.DELETE_LOAN)
        loan = self._load(loan_ref)
        self._check_visible(loan, actor)

        if not self.storage.delete(LOANS_TABLE, loan.id):
            raise NotFoundError(f"Loan {loan_ref} not found", {"loan": loan_ref})

        log_action(
            logger, "info",
            f"Loan {loan.loan_id} deleted",
            actor_id=actor.id, actor_role=actor.role.value,
            action="delete_loan", loan_id=loan.loan_id
        )
        self.events.publish(loan_event(loan, DomainEvent.LOAN_DELETED, actor))
