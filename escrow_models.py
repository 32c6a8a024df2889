"""
Escrow domain model.

Defines the transaction aggregate, its milestones and dispute record, the
status state machine guards and the error taxonomy shared by every escrow
service. Nothing in this module touches the database or the network.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, Dict, Any, FrozenSet


MONEY_PLACES = Decimal('0.01')
AMOUNT_TOLERANCE = Decimal('0.01')

MIN_TITLE_LENGTH = 3
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_NOTE_LENGTH = 1000
MAX_REASON_LENGTH = 2000
MAX_AGREEMENT_TERMS_LENGTH = 50000


# ==================== ERRORS ====================

class EscrowError(Exception):
    """Base exception for escrow-related errors."""
    pass


class ValidationError(EscrowError):
    """Raised when input is malformed or out of range."""
    pass


class TransactionNotFoundError(ValidationError):
    """Raised when a transaction id does not resolve."""
    pass


class AuthorizationError(EscrowError):
    """Raised when the actor is not allowed to perform an action."""
    pass


class InvalidTransitionError(EscrowError):
    """Raised when the current status does not allow the requested action."""
    pass


class ConcurrentModificationError(InvalidTransitionError):
    """Raised when another writer committed first (version mismatch)."""
    pass


class PayoutAccountMissing(EscrowError):
    """Raised when the seller has no connected payout account."""
    pass


class ReconciliationConflict(EscrowError):
    """
    Raised when an external money movement executed but local state diverged.

    The external effect has already been recorded on the transaction; the
    conflict must be reviewed by an operator.
    """

    def __init__(self, transaction_id: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.transaction_id = transaction_id
        self.details = details or {}


# ==================== ENUMS ====================

class TransactionStatus(str, Enum):
    """Enumeration of escrow transaction statuses."""
    PENDING = "pending"        # Created, waiting for the counterparty
    ACCEPTED = "accepted"      # Counterparty accepted, waiting for funding
    FUNDED = "funded"          # Buyer's payment captured and held
    DELIVERED = "delivered"    # Seller delivered, inspection window running
    COMPLETED = "completed"    # All funds released to the seller
    DISPUTED = "disputed"      # Dispute raised, waiting for an admin
    CANCELLED = "cancelled"    # Cancelled before any funds were captured
    REFUNDED = "refunded"      # Funds returned to the buyer


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
})

ACTIVE_STATUSES = frozenset({
    TransactionStatus.ACCEPTED,
    TransactionStatus.FUNDED,
    TransactionStatus.DELIVERED,
    TransactionStatus.DISPUTED,
})


class MilestoneStatus(str, Enum):
    """Enumeration of milestone statuses."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    RELEASED = "released"


class DisputeStatus(str, Enum):
    """Enumeration of dispute statuses."""
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"


class DisputeAction(str, Enum):
    """Resolution actions available to an admin."""
    RELEASE_SELLER = "release_seller"
    REFUND_BUYER = "refund_buyer"


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class SettlementKind(str, Enum):
    TRANSFER = "transfer"
    REFUND = "refund"


class TransactionEvent(str, Enum):
    """Events that drive the transaction state machine."""
    ACCEPT = "accept"
    FUND = "fund"
    DELIVER = "deliver"
    RELEASE = "release"
    RELEASE_MILESTONE = "release_milestone"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CANCEL = "cancel"
    AUTO_RELEASE = "auto_release"


# Statuses from which each event may fire
ALLOWED_STATUSES: Dict[TransactionEvent, FrozenSet[TransactionStatus]] = {
    TransactionEvent.ACCEPT: frozenset({TransactionStatus.PENDING}),
    TransactionEvent.FUND: frozenset({TransactionStatus.ACCEPTED}),
    TransactionEvent.DELIVER: frozenset({TransactionStatus.FUNDED}),
    TransactionEvent.RELEASE: frozenset({TransactionStatus.DELIVERED}),
    TransactionEvent.RELEASE_MILESTONE: frozenset({
        TransactionStatus.FUNDED, TransactionStatus.DELIVERED,
    }),
    TransactionEvent.DISPUTE: frozenset({
        TransactionStatus.FUNDED, TransactionStatus.DELIVERED,
    }),
    TransactionEvent.RESOLVE: frozenset({TransactionStatus.DISPUTED}),
    TransactionEvent.CANCEL: frozenset({
        TransactionStatus.PENDING, TransactionStatus.ACCEPTED,
    }),
    TransactionEvent.AUTO_RELEASE: frozenset({TransactionStatus.DELIVERED}),
}


# ==================== MONEY & TIME HELPERS ====================

def to_money(value: Any) -> Decimal:
    """Coerce a number to a two-place Decimal."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a money amount to integer minor units (cents)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_minor_units(minor: int) -> Decimal:
    return (Decimal(minor) / 100).quantize(MONEY_PLACES)


def amounts_match(a: Decimal, b: Decimal) -> bool:
    return abs(to_money(a) - to_money(b)) < AMOUNT_TOLERANCE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_in(value: Any) -> Optional[datetime]:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ==================== ENTITIES ====================

@dataclass
class Principal:
    """Authenticated actor as supplied by the identity provider."""
    id: str
    role: UserRole = UserRole.USER
    email: Optional[str] = None
    is_suspended: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


SYSTEM_ACTOR = Principal(id='system', role=UserRole.ADMIN, email=None)


@dataclass
class UserAccount:
    """User record as seen by the escrow engine."""
    id: str
    email: str
    role: UserRole = UserRole.USER
    is_suspended: bool = False
    trust_score: int = 100
    payout_account_id: Optional[str] = None
    payout_onboarded: bool = False
    telegram_chat_id: Optional[int] = None
    total_completed: int = 0
    total_disputed: int = 0
    total_cancelled: int = 0
    total_volume: Decimal = Decimal('0.00')

    def as_principal(self) -> Principal:
        return Principal(
            id=self.id, role=self.role, email=self.email, is_suspended=self.is_suspended
        )


@dataclass
class Deliverable:
    """Checklist item inside a milestone."""
    title: str
    id: str = field(default_factory=new_id)
    completed: bool = False
    completed_at: Optional[datetime] = None
    completed_by: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'completed': self.completed,
            'completed_at': _dt_out(self.completed_at),
            'completed_by': self.completed_by,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'Deliverable':
        return cls(
            id=data['id'],
            title=data['title'],
            completed=bool(data.get('completed')),
            completed_at=_dt_in(data.get('completed_at')),
            completed_by=data.get('completed_by'),
        )


@dataclass
class MilestoneNote:
    content: str
    author_id: str
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'content': self.content,
            'author_id': self.author_id,
            'created_at': _dt_out(self.created_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'MilestoneNote':
        return cls(
            id=data['id'],
            content=data['content'],
            author_id=data['author_id'],
            created_at=_dt_in(data.get('created_at')),
        )


@dataclass
class Milestone:
    """Independently releasable slice of a transaction."""
    title: str
    amount: Decimal
    id: str = field(default_factory=new_id)
    description: str = ''
    status: MilestoneStatus = MilestoneStatus.PENDING
    due_date: Optional[datetime] = None
    deliverables: List[Deliverable] = field(default_factory=list)
    notes: List[MilestoneNote] = field(default_factory=list)
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    released_at: Optional[datetime] = None

    @property
    def is_released(self) -> bool:
        return self.status == MilestoneStatus.RELEASED

    def find_deliverable(self, deliverable_id: str) -> Deliverable:
        for deliverable in self.deliverables:
            if deliverable.id == deliverable_id:
                return deliverable
        raise ValidationError(f"Deliverable not found: {deliverable_id}")

    def to_json(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'amount': str(self.amount),
            'status': self.status.value,
            'due_date': _dt_out(self.due_date),
            'deliverables': [d.to_json() for d in self.deliverables],
            'notes': [n.to_json() for n in self.notes],
            'submitted_at': _dt_out(self.submitted_at),
            'approved_at': _dt_out(self.approved_at),
            'approved_by': self.approved_by,
            'released_at': _dt_out(self.released_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'Milestone':
        return cls(
            id=data['id'],
            title=data['title'],
            description=data.get('description') or '',
            amount=to_money(data['amount']),
            status=MilestoneStatus(data.get('status', 'pending')),
            due_date=_dt_in(data.get('due_date')),
            deliverables=[Deliverable.from_json(d) for d in data.get('deliverables') or []],
            notes=[MilestoneNote.from_json(n) for n in data.get('notes') or []],
            submitted_at=_dt_in(data.get('submitted_at')),
            approved_at=_dt_in(data.get('approved_at')),
            approved_by=data.get('approved_by'),
            released_at=_dt_in(data.get('released_at')),
        )


@dataclass
class Dispute:
    reason: str
    raised_by: str
    status: DisputeStatus = DisputeStatus.OPEN
    created_at: datetime = field(default_factory=utcnow)
    action: Optional[DisputeAction] = None
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status == DisputeStatus.RESOLVED

    def to_json(self) -> Dict[str, Any]:
        return {
            'reason': self.reason,
            'raised_by': self.raised_by,
            'status': self.status.value,
            'created_at': _dt_out(self.created_at),
            'action': self.action.value if self.action else None,
            'resolution': self.resolution,
            'resolved_by': self.resolved_by,
            'resolved_at': _dt_out(self.resolved_at),
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'Dispute':
        return cls(
            reason=data['reason'],
            raised_by=data['raised_by'],
            status=DisputeStatus(data.get('status', 'open')),
            created_at=_dt_in(data.get('created_at')),
            action=DisputeAction(data['action']) if data.get('action') else None,
            resolution=data.get('resolution'),
            resolved_by=data.get('resolved_by'),
            resolved_at=_dt_in(data.get('resolved_at')),
        )


@dataclass
class ProcessorRefs:
    """Payment processor identifiers; each is written once per settlement cycle."""
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    transfer_ids: List[str] = field(default_factory=list)
    refund_id: Optional[str] = None
    # Executed transfers that could not be applied to the ledger; need operator review
    unreconciled_transfer_ids: List[str] = field(default_factory=list)

    @property
    def transfer_id(self) -> Optional[str]:
        return self.transfer_ids[-1] if self.transfer_ids else None


@dataclass
class Fees:
    """Fees frozen at funding time."""
    platform_fee: Decimal = Decimal('0.00')
    processor_fee: Decimal = Decimal('0.00')
    platform_fee_collected: Decimal = Decimal('0.00')

    @property
    def is_set(self) -> bool:
        return self.platform_fee > 0 or self.processor_fee > 0


@dataclass
class PendingSettlement:
    """Reservation of an external money movement that is in flight."""
    kind: SettlementKind
    amount: Decimal
    idempotency_key: str
    reserved_at: datetime
    reserved_by: str
    milestone_id: Optional[str] = None

    def is_stale(self, now: datetime, ttl_minutes: int) -> bool:
        return now - self.reserved_at > timedelta(minutes=ttl_minutes)

    def to_json(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'amount': str(self.amount),
            'idempotency_key': self.idempotency_key,
            'reserved_at': _dt_out(self.reserved_at),
            'reserved_by': self.reserved_by,
            'milestone_id': self.milestone_id,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'PendingSettlement':
        return cls(
            kind=SettlementKind(data['kind']),
            amount=to_money(data['amount']),
            idempotency_key=data['idempotency_key'],
            reserved_at=_dt_in(data['reserved_at']),
            reserved_by=data['reserved_by'],
            milestone_id=data.get('milestone_id'),
        )


@dataclass
class Transaction:
    """Escrow transaction aggregate root."""
    id: str
    title: str
    amount: Decimal
    buyer_id: str
    initiated_by: str
    currency: str = 'npr'
    description: str = ''
    seller_id: Optional[str] = None
    seller_email: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    milestones: List[Milestone] = field(default_factory=list)
    inspection_period: int = 14
    inspection_ends_at: Optional[datetime] = None
    dispute: Optional[Dispute] = None
    processor: ProcessorRefs = field(default_factory=ProcessorRefs)
    fees: Fees = field(default_factory=Fees)
    amount_released: Decimal = Decimal('0.00')
    amount_paid_out: Decimal = Decimal('0.00')
    pending_settlement: Optional[PendingSettlement] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    version: int = 0

    # ---- parties ----

    def is_buyer(self, user_id: str) -> bool:
        return self.buyer_id == user_id

    def is_seller(self, user_id: str) -> bool:
        return self.seller_id is not None and self.seller_id == user_id

    def is_party(self, user_id: str) -> bool:
        return self.is_buyer(user_id) or self.is_seller(user_id)

    def counterparty_of(self, user_id: str) -> Optional[str]:
        if self.is_buyer(user_id):
            return self.seller_id
        if self.is_seller(user_id):
            return self.buyer_id
        return None

    # ---- money ----

    @property
    def remaining_amount(self) -> Decimal:
        return to_money(self.amount - self.amount_released)

    @property
    def is_fully_released(self) -> bool:
        return amounts_match(self.amount_released, self.amount)

    @property
    def has_milestones(self) -> bool:
        return bool(self.milestones)

    def find_milestone(self, milestone_id: str) -> Milestone:
        for milestone in self.milestones:
            if milestone.id == milestone_id:
                return milestone
        raise ValidationError(f"Milestone not found: {milestone_id}")

    def unreleased_milestones(self) -> List[Milestone]:
        return [m for m in self.milestones if not m.is_released]

    # ---- persistence ----

    def to_record(self) -> Dict[str, Any]:
        """Flatten into the column layout of ``escrow_transactions``."""
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'amount': self.amount,
            'currency': self.currency,
            'buyer_id': self.buyer_id,
            'seller_id': self.seller_id,
            'seller_email': self.seller_email,
            'initiated_by': self.initiated_by,
            'status': self.status.value,
            'milestones': [m.to_json() for m in self.milestones],
            'inspection_period': self.inspection_period,
            'inspection_ends_at': self.inspection_ends_at,
            'dispute': self.dispute.to_json() if self.dispute else None,
            'payment_intent_id': self.processor.payment_intent_id,
            'charge_id': self.processor.charge_id,
            'transfer_ids': list(self.processor.transfer_ids),
            'unreconciled_transfer_ids': list(self.processor.unreconciled_transfer_ids),
            'refund_id': self.processor.refund_id,
            'platform_fee': self.fees.platform_fee,
            'processor_fee': self.fees.processor_fee,
            'platform_fee_collected': self.fees.platform_fee_collected,
            'amount_released': self.amount_released,
            'amount_paid_out': self.amount_paid_out,
            'pending_settlement': (
                self.pending_settlement.to_json() if self.pending_settlement else None
            ),
            'cancellation_reason': self.cancellation_reason,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'funded_at': self.funded_at,
            'delivered_at': self.delivered_at,
            'completed_at': self.completed_at,
            'cancelled_at': self.cancelled_at,
            'refunded_at': self.refunded_at,
            'version': self.version,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> 'Transaction':
        dispute = row.get('dispute')
        pending = row.get('pending_settlement')
        return cls(
            id=row['id'],
            title=row['title'],
            description=row.get('description') or '',
            amount=to_money(row['amount']),
            currency=row.get('currency') or 'npr',
            buyer_id=row['buyer_id'],
            seller_id=row.get('seller_id'),
            seller_email=row.get('seller_email'),
            initiated_by=row['initiated_by'],
            status=TransactionStatus(row['status']),
            milestones=[Milestone.from_json(m) for m in row.get('milestones') or []],
            inspection_period=int(row.get('inspection_period') or 14),
            inspection_ends_at=_dt_in(row.get('inspection_ends_at')),
            dispute=Dispute.from_json(dispute) if dispute else None,
            processor=ProcessorRefs(
                payment_intent_id=row.get('payment_intent_id'),
                charge_id=row.get('charge_id'),
                transfer_ids=list(row.get('transfer_ids') or []),
                unreconciled_transfer_ids=list(row.get('unreconciled_transfer_ids') or []),
                refund_id=row.get('refund_id'),
            ),
            fees=Fees(
                platform_fee=to_money(row.get('platform_fee') or 0),
                processor_fee=to_money(row.get('processor_fee') or 0),
                platform_fee_collected=to_money(row.get('platform_fee_collected') or 0),
            ),
            amount_released=to_money(row.get('amount_released') or 0),
            amount_paid_out=to_money(row.get('amount_paid_out') or 0),
            pending_settlement=PendingSettlement.from_json(pending) if pending else None,
            cancellation_reason=row.get('cancellation_reason'),
            created_at=_dt_in(row.get('created_at')),
            updated_at=_dt_in(row.get('updated_at')),
            funded_at=_dt_in(row.get('funded_at')),
            delivered_at=_dt_in(row.get('delivered_at')),
            completed_at=_dt_in(row.get('completed_at')),
            cancelled_at=_dt_in(row.get('cancelled_at')),
            refunded_at=_dt_in(row.get('refunded_at')),
            version=int(row.get('version') or 0),
        )


@dataclass
class AgreementAcceptance:
    user_id: str
    accepted_at: datetime


@dataclass
class Agreement:
    """Versioned terms attached to a transaction."""
    transaction_id: str
    version: int
    terms: str
    created_by: str
    title: str = 'Transaction Agreement'
    id: str = field(default_factory=new_id)
    accepted_by: List[AgreementAcceptance] = field(default_factory=list)
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def has_accepted(self, user_id: str) -> bool:
        return any(a.user_id == user_id for a in self.accepted_by)


@dataclass
class AuditEntry:
    """Append-only audit record."""
    action: str
    category: str
    actor_id: Optional[str] = None
    transaction_id: Optional[str] = None
    status: str = 'success'
    severity: str = 'info'
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ServiceResult:
    """Outcome of an orchestration call."""
    transaction: Transaction
    message: str
    refund_triggered: bool = False
    details: Dict[str, Any] = field(default_factory=dict)


# ==================== GUARDS ====================

def check_transition(txn: Transaction, event: TransactionEvent) -> None:
    """
    Verify the transaction's status allows ``event``.

    Raises:
        InvalidTransitionError: If the status is not in the allowed set
    """
    allowed = ALLOWED_STATUSES[event]
    if txn.status not in allowed:
        raise InvalidTransitionError(
            f"Cannot {event.value.replace('_', ' ')} transaction {txn.id}: "
            f"status is '{txn.status.value}', allowed: {sorted(s.value for s in allowed)}"
        )


def ensure_active_principal(principal: Principal) -> None:
    if principal.is_suspended:
        raise AuthorizationError("Account is suspended")


def ensure_party(txn: Transaction, principal: Principal) -> None:
    if not txn.is_party(principal.id):
        raise AuthorizationError("Only the buyer or seller can perform this action")


def ensure_can_accept(txn: Transaction, principal: Principal) -> None:
    """Only the invited counterparty may accept, never the initiator."""
    if principal.id == txn.initiated_by:
        raise AuthorizationError("The initiator cannot accept their own transaction")

    if txn.initiated_by == txn.buyer_id:
        if txn.seller_id is not None:
            invited = txn.seller_id == principal.id
        else:
            invited = bool(principal.email) and bool(txn.seller_email) and (
                principal.email.lower() == txn.seller_email.lower()
            )
    else:
        invited = txn.buyer_id == principal.id

    if not invited:
        raise AuthorizationError("Only the invited counterparty can accept this transaction")

    check_transition(txn, TransactionEvent.ACCEPT)


def ensure_can_deliver(txn: Transaction, principal: Principal) -> None:
    if not txn.is_seller(principal.id):
        raise AuthorizationError("Only the seller can mark a transaction as delivered")
    check_transition(txn, TransactionEvent.DELIVER)


def ensure_can_release(txn: Transaction, principal: Principal) -> None:
    if not txn.is_buyer(principal.id):
        raise AuthorizationError("Only the buyer can release funds")
    check_transition(txn, TransactionEvent.RELEASE)


def ensure_can_release_milestone(txn: Transaction, principal: Principal) -> None:
    if not txn.is_buyer(principal.id):
        raise AuthorizationError("Only the buyer can release a milestone")
    check_transition(txn, TransactionEvent.RELEASE_MILESTONE)


def ensure_can_dispute(txn: Transaction, principal: Principal) -> None:
    ensure_party(txn, principal)
    check_transition(txn, TransactionEvent.DISPUTE)


def ensure_can_cancel(txn: Transaction, principal: Principal) -> None:
    if not (txn.is_party(principal.id) or principal.id == txn.initiated_by):
        raise AuthorizationError("Only the buyer, seller or initiator can cancel")
    check_transition(txn, TransactionEvent.CANCEL)


def ensure_can_resolve(txn: Transaction, principal: Principal) -> None:
    if not principal.is_admin:
        raise AuthorizationError("Only an admin can resolve disputes")
    check_transition(txn, TransactionEvent.RESOLVE)
    if txn.dispute is None:
        raise InvalidTransitionError(f"Transaction {txn.id} has no dispute record")
    if txn.dispute.is_resolved:
        raise InvalidTransitionError(f"Dispute on transaction {txn.id} is already resolved")


def ensure_nothing_in_flight(txn: Transaction, now: datetime, ttl_minutes: int) -> None:
    """
    Reject when a fresh settlement reservation exists.

    A stale reservation does not block; the caller finishes or resumes it.
    """
    pending = txn.pending_settlement
    if pending is not None and not pending.is_stale(now, ttl_minutes):
        raise InvalidTransitionError(
            f"A {pending.kind.value} of {pending.amount} is already in progress "
            f"for transaction {txn.id}"
        )
