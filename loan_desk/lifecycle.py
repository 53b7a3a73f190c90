"""
Loan Lifecycle Module

Central state machine for loan status. Every status change goes through
LoanStateMachine, which checks the transition table, stamps dates and
comments, records status history and returns the domain events the change
produced. It never talks to storage or notification channels.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Union
from enum import Enum
import logging

from .access import Actor
from .errors import InvalidTransition, ValidationError
from .events import DomainEvent, EventPayload
from .ledger import LedgerEntry, PaymentEntry, PenaltyEntry, post_payment, post_penalty
from .loans import KYCStatus, Loan, LoanStatus, StatusChange, TERMINAL_STATUSES


logger = logging.getLogger("loan_desk.lifecycle")


class LoanAction(Enum):
    """Operations that act on a loan's lifecycle"""
    VERIFY = "verify"
    APPROVE = "approve"
    REJECT = "reject"
    COLLECT_PAYMENT = "collect_payment"
    APPLY_PENALTY = "apply_penalty"
    SET_DUE_DATE = "set_due_date"
    UPDATE_KYC = "update_kyc"


NON_TERMINAL = frozenset(s for s in LoanStatus if s not in TERMINAL_STATUSES)

DEFAULT_PAYABLE_STATUSES = frozenset({
    LoanStatus.VERIFIED, LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.OVERDUE
})

# Statuses each action may start from. Payment is filled in per machine.
TRANSITIONS: Dict[LoanAction, FrozenSet[LoanStatus]] = {
    LoanAction.VERIFY: frozenset({LoanStatus.PENDING}),
    LoanAction.APPROVE: frozenset({LoanStatus.VERIFIED}),
    LoanAction.REJECT: frozenset({LoanStatus.PENDING, LoanStatus.VERIFIED}),
    LoanAction.APPLY_PENALTY: frozenset({LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.OVERDUE}),
    LoanAction.SET_DUE_DATE: NON_TERMINAL,
    LoanAction.UPDATE_KYC: frozenset(LoanStatus),
}

# Status targets that may be requested directly; the rest follow from ledger postings
STATUS_TARGETS: Dict[LoanStatus, LoanAction] = {
    LoanStatus.VERIFIED: LoanAction.VERIFY,
    LoanStatus.APPROVED: LoanAction.APPROVE,
    LoanStatus.REJECTED: LoanAction.REJECT,
}


@dataclass
class TransitionResult:
    """Outcome of one lifecycle operation"""
    loan: Loan
    action: LoanAction
    from_status: LoanStatus
    to_status: LoanStatus
    events: List[EventPayload] = field(default_factory=list)
    entry: Optional[LedgerEntry] = None

    @property
    def status_changed(self) -> bool:
        return self.from_status != self.to_status


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def loan_event(
    loan: Loan,
    event_type: DomainEvent,
    actor: Actor,
    **data: Any
) -> EventPayload:
    """Build an event carrying the loan summary every subscriber needs"""
    payload = {
        'loan_id': loan.loan_id,
        'client_name': loan.applicant.name,
        'client_phone': loan.applicant.phone,
        'loan_amount': str(loan.terms.loan_amount),
        'shopkeeper_id': loan.shopkeeper_id,
        'customer_id': loan.customer_id,
        'status': loan.status.value,
    }
    payload.update(data)
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data=payload,
        actor_id=actor.id,
        actor_role=actor.role.value
    )


def parse_status(value: Union[LoanStatus, str]) -> LoanStatus:
    """Accept a LoanStatus or its display value"""
    if isinstance(value, LoanStatus):
        return value
    try:
        return LoanStatus(value)
    except ValueError:
        raise ValidationError(
            f"Invalid status: {value}",
            {"allowed": [s.value for s in LoanStatus]}
        )


class LoanStateMachine:
    """
    Loan status transition table and side effects.

    Args:
        payable_statuses: Statuses in which a payment may be collected
        require_rejection_reason: Reject without a comment raises instead of warning
        clock: Source of the current UTC time
    """

    def __init__(
        self,
        payable_statuses: Optional[Iterable[Union[LoanStatus, str]]] = None,
        require_rejection_reason: bool = False,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if payable_statuses is None:
            payable = DEFAULT_PAYABLE_STATUSES
        else:
            payable = frozenset(parse_status(s) for s in payable_statuses)
        if payable & TERMINAL_STATUSES:
            raise ValueError("Terminal statuses cannot accept payments")
        self.transitions: Dict[LoanAction, FrozenSet[LoanStatus]] = dict(TRANSITIONS)
        self.transitions[LoanAction.COLLECT_PAYMENT] = payable
        self.require_rejection_reason = require_rejection_reason
        self.clock = clock or _utcnow

    @property
    def payable_statuses(self) -> FrozenSet[LoanStatus]:
        return self.transitions[LoanAction.COLLECT_PAYMENT]

    def can(self, loan: Loan, action: LoanAction) -> bool:
        return loan.status in self.transitions[action]

    def allowed_actions(self, loan: Loan) -> List[LoanAction]:
        """Actions permitted from the loan's current status"""
        return [action for action in LoanAction if self.can(loan, action)]

    def require_allowed(self, loan: Loan, action: LoanAction) -> None:
        """Raise InvalidTransition unless the action is permitted from the loan's status"""
        if not self.can(loan, action):
            raise InvalidTransition(
                f"Cannot {action.value.replace('_', ' ')} loan {loan.loan_id} in status {loan.status.value}",
                {
                    "loan_id": loan.loan_id,
                    "action": action.value,
                    "status": loan.status.value,
                    "allowed_from": sorted(s.value for s in self.transitions[action])
                }
            )

    def _record(
        self,
        loan: Loan,
        action: LoanAction,
        from_status: LoanStatus,
        actor: Actor,
        now: datetime,
        comment: Optional[str] = None
    ) -> None:
        loan.status_history.append(StatusChange(
            action=action.value,
            from_status=from_status.value,
            to_status=loan.status.value,
            actor_id=actor.id,
            actor_role=actor.role.value,
            at=now,
            comment=comment
        ))
        if comment:
            loan.status_comment = comment
            loan.comment_date = now
        loan.updated_by = actor.role.value
        loan.updated_at = now

    def transition_to(
        self,
        loan: Loan,
        target: Union[LoanStatus, str],
        actor: Actor,
        comment: Optional[str] = None
    ) -> TransitionResult:
        """
        Move a loan to a requested status.

        Only Verified, Approved and Rejected can be requested directly;
        Active, Overdue and Paid follow from payments and penalties.
        """
        target = parse_status(target)
        action = STATUS_TARGETS.get(target)
        if action is None:
            raise InvalidTransition(
                f"Status {target.value} cannot be set directly",
                {
                    "loan_id": loan.loan_id,
                    "target": target.value,
                    "settable": [s.value for s in STATUS_TARGETS]
                }
            )
        if action is LoanAction.VERIFY:
            return self.verify(loan, actor, comment)
        if action is LoanAction.APPROVE:
            return self.approve(loan, actor, comment)
        return self.reject(loan, actor, comment)

    def verify(self, loan: Loan, actor: Actor, comment: Optional[str] = None) -> TransitionResult:
        self.require_allowed(loan, LoanAction.VERIFY)
        now = self.clock()
        from_status = loan.status

        loan.status = LoanStatus.VERIFIED
        loan.verified_date = now.date()
        if comment:
            loan.verifier_comment = comment
        self._record(loan, LoanAction.VERIFY, from_status, actor, now, comment)

        return TransitionResult(
            loan=loan, action=LoanAction.VERIFY,
            from_status=from_status, to_status=loan.status,
            events=[loan_event(loan, DomainEvent.LOAN_VERIFIED, actor,
                               from_status=from_status.value, comment=comment)]
        )

    def approve(self, loan: Loan, actor: Actor, comment: Optional[str] = None) -> TransitionResult:
        self.require_allowed(loan, LoanAction.APPROVE)
        now = self.clock()
        from_status = loan.status

        loan.status = LoanStatus.APPROVED
        loan.approved_date = now.date()
        if comment:
            loan.admin_comment = comment
        self._record(loan, LoanAction.APPROVE, from_status, actor, now, comment)

        return TransitionResult(
            loan=loan, action=LoanAction.APPROVE,
            from_status=from_status, to_status=loan.status,
            events=[loan_event(loan, DomainEvent.LOAN_APPROVED, actor,
                               from_status=from_status.value, comment=comment)]
        )

    def reject(self, loan: Loan, actor: Actor, comment: Optional[str] = None) -> TransitionResult:
        """Reject a loan; the comment becomes the rejection reason"""
        self.require_allowed(loan, LoanAction.REJECT)
        if not comment:
            if self.require_rejection_reason:
                raise ValidationError(
                    "A rejection reason is required",
                    {"loan_id": loan.loan_id, "field": "comment"}
                )
            logger.warning(f"Loan {loan.loan_id} rejected without a reason by {actor.role.value}:{actor.id}")

        now = self.clock()
        from_status = loan.status

        loan.status = LoanStatus.REJECTED
        loan.rejected_date = now.date()
        loan.rejection_reason = comment or None
        self._record(loan, LoanAction.REJECT, from_status, actor, now, comment)

        return TransitionResult(
            loan=loan, action=LoanAction.REJECT,
            from_status=from_status, to_status=loan.status,
            events=[loan_event(loan, DomainEvent.LOAN_REJECTED, actor,
                               from_status=from_status.value, comment=comment)]
        )

    def collect_payment(self, loan: Loan, entry: PaymentEntry, actor: Actor) -> TransitionResult:
        """
        Post a payment and derive the resulting status.

        The last EMI moves the loan to Paid from any payable status;
        otherwise the loan is Active.
        """
        self.require_allowed(loan, LoanAction.COLLECT_PAYMENT)
        now = self.clock()
        from_status = loan.status

        post_payment(loan, entry)
        loan.status = LoanStatus.PAID if loan.emis_remaining == 0 else LoanStatus.ACTIVE
        self._record(loan, LoanAction.COLLECT_PAYMENT, from_status, actor, now)

        events = [loan_event(
            loan, DomainEvent.PAYMENT_COLLECTED, actor,
            from_status=from_status.value,
            entry=entry.to_dict(),
            emis_paid=loan.emis_paid,
            emis_remaining=loan.emis_remaining
        )]
        if loan.status is LoanStatus.PAID:
            events.append(loan_event(loan, DomainEvent.LOAN_PAID, actor, from_status=from_status.value))

        return TransitionResult(
            loan=loan, action=LoanAction.COLLECT_PAYMENT,
            from_status=from_status, to_status=loan.status,
            events=events, entry=entry
        )

    def apply_penalty(self, loan: Loan, entry: PenaltyEntry, actor: Actor) -> TransitionResult:
        """Post a penalty; an Active loan becomes Overdue, other statuses are kept"""
        self.require_allowed(loan, LoanAction.APPLY_PENALTY)
        now = self.clock()
        from_status = loan.status

        post_penalty(loan, entry)
        if loan.status is LoanStatus.ACTIVE:
            loan.status = LoanStatus.OVERDUE
        self._record(loan, LoanAction.APPLY_PENALTY, from_status, actor, now)

        return TransitionResult(
            loan=loan, action=LoanAction.APPLY_PENALTY,
            from_status=from_status, to_status=loan.status,
            events=[loan_event(
                loan, DomainEvent.PENALTY_APPLIED, actor,
                from_status=from_status.value,
                entry=entry.to_dict(),
                total_penalty=str(loan.total_penalty)
            )],
            entry=entry
        )

    def set_next_due_date(self, loan: Loan, due_date: date, actor: Actor) -> TransitionResult:
        self.require_allowed(loan, LoanAction.SET_DUE_DATE)
        now = self.clock()

        loan.next_due_date = due_date
        loan.updated_by = actor.role.value
        loan.updated_at = now

        return TransitionResult(
            loan=loan, action=LoanAction.SET_DUE_DATE,
            from_status=loan.status, to_status=loan.status,
            events=[loan_event(loan, DomainEvent.DUE_DATE_SET, actor,
                               next_due_date=due_date.isoformat())]
        )

    def update_kyc_status(
        self,
        loan: Loan,
        kyc_status: Union[KYCStatus, str],
        actor: Actor
    ) -> TransitionResult:
        """KYC moves independently of loan status"""
        if not isinstance(kyc_status, KYCStatus):
            try:
                kyc_status = KYCStatus(kyc_status)
            except ValueError:
                raise ValidationError(
                    f"Invalid KYC status: {kyc_status}",
                    {"allowed": [s.value for s in KYCStatus]}
                )
        now = self.clock()
        previous = loan.kyc_status

        loan.kyc_status = kyc_status
        loan.kyc_verified_by = actor.role.value
        if kyc_status is KYCStatus.VERIFIED:
            loan.kyc_verified_date = now.date()
        loan.updated_by = actor.role.value
        loan.updated_at = now

        return TransitionResult(
            loan=loan, action=LoanAction.UPDATE_KYC,
            from_status=loan.status, to_status=loan.status,
            events=[loan_event(loan, DomainEvent.KYC_STATUS_CHANGED, actor,
                               previous_kyc_status=previous.value,
                               kyc_status=kyc_status.value)]
        )
