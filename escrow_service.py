"""
Escrow Service Module

This module provides the escrow orchestration layer. It drives the full
lifecycle of an escrow transaction: creation and acceptance, funding,
delivery, release (full or per milestone), disputes, cancellation and the
automatic release of stalled inspections.

Features:
    - Guarded status transitions per role and prior status
    - Per-transaction single-writer sections (in-process lock plus
      optimistic version check at commit)
    - Reserve / call / commit settlement so no lock is held across a
      payment processor call
    - Reconciliation alerts when an executed payout or refund no longer
      matches local state
    - Trust score, notification and audit side effects after commit

Dependencies:
    - escrow_database.py: Persistence
    - settlement_service.py: Payment processor money movements
    - notifications.py / audit_trail.py / trust_service.py: Side effects
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Tuple, Union

from config import ConfigError, EscrowSettings
from escrow_models import (
    Transaction, TransactionStatus, TransactionEvent, Milestone, MilestoneStatus,
    MilestoneNote, Deliverable, Dispute, DisputeStatus, DisputeAction, Principal,
    PendingSettlement, SettlementKind, ServiceResult, Agreement, AuditEntry,
    UserAccount, SYSTEM_ACTOR, TERMINAL_STATUSES,
    EscrowError, ValidationError, TransactionNotFoundError, AuthorizationError,
    InvalidTransitionError, ConcurrentModificationError, PayoutAccountMissing,
    ReconciliationConflict,
    check_transition, ensure_active_principal, ensure_party, ensure_can_accept,
    ensure_can_deliver, ensure_can_release, ensure_can_release_milestone,
    ensure_can_dispute, ensure_can_cancel, ensure_can_resolve, ensure_nothing_in_flight,
    to_money, amounts_match, utcnow, new_id,
    MIN_TITLE_LENGTH, MAX_TITLE_LENGTH, MAX_DESCRIPTION_LENGTH, MAX_NOTE_LENGTH,
    MAX_REASON_LENGTH, MAX_AGREEMENT_TERMS_LENGTH,
)
from settlement_service import (
    FundSettlementService, TransferOutcome, RefundOutcome,
    compute_fees, settlement_idempotency_key,
)
from trust_service import TrustScoreService, TrustEvent
from audit_trail import AuditTrail
from notifications import NotificationDispatcher
from payment_processor import TerminalProcessorError
from utils import format_currency, sanitize_input

logger = logging.getLogger(__name__)

COMMIT_RETRIES = 3


class SettlementPurpose(str, Enum):
    """Why a payout or refund is being made."""
    RELEASE = "release"
    MILESTONE_RELEASE = "milestone_release"
    AUTO_RELEASE = "auto_release"
    DISPUTE_RELEASE = "dispute_release"
    DISPUTE_REFUND = "dispute_refund"
    CANCEL_REFUND = "cancel_refund"
    RECOVERY = "recovery"


# Status the transaction must still have when a settlement result is committed
COMMIT_STATUSES = {
    SettlementPurpose.RELEASE: frozenset({TransactionStatus.DELIVERED}),
    SettlementPurpose.MILESTONE_RELEASE: frozenset({
        TransactionStatus.FUNDED, TransactionStatus.DELIVERED,
    }),
    SettlementPurpose.AUTO_RELEASE: frozenset({TransactionStatus.DELIVERED}),
    SettlementPurpose.DISPUTE_RELEASE: frozenset({TransactionStatus.DISPUTED}),
    SettlementPurpose.DISPUTE_REFUND: frozenset({TransactionStatus.DISPUTED}),
    SettlementPurpose.CANCEL_REFUND: frozenset({TransactionStatus.ACCEPTED}),
    SettlementPurpose.RECOVERY: frozenset({
        TransactionStatus.ACCEPTED, TransactionStatus.FUNDED,
        TransactionStatus.DELIVERED, TransactionStatus.DISPUTED,
    }),
}


@dataclass
class SettlementPlan:
    purpose: SettlementPurpose
    kind: SettlementKind
    amount: Decimal
    milestone_id: Optional[str] = None


Outcome = Union[TransferOutcome, RefundOutcome]
Finalizer = Callable[[Transaction, datetime], None]


class EscrowService:
    """
    Core escrow orchestration service.

    Attributes:
        store: EscrowDatabase (or any object with the same coroutine API)
        settlement: FundSettlementService for processor calls
        notifier: NotificationDispatcher for fire-and-forget messages
        audit: AuditTrail for the append-only log
        trust: TrustScoreService for reputation side effects
        default_settings: Environment settings overlaid by system_settings rows
        clock: Callable returning the current aware UTC datetime
    """

    def __init__(
        self,
        store,
        settlement: FundSettlementService,
        notifier: NotificationDispatcher,
        audit: Optional[AuditTrail] = None,
        trust: Optional[TrustScoreService] = None,
        default_settings: Optional[EscrowSettings] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.settlement = settlement
        self.notifier = notifier
        self.audit = audit or AuditTrail(store, notifier)
        self.trust = trust or TrustScoreService(store)
        self.default_settings = default_settings or EscrowSettings()
        self.clock = clock or utcnow
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        logger.info("EscrowService initialized successfully")

    # ==================== INTERNALS ====================

    def _now(self) -> datetime:
        return self.clock()

    def _lock_for(self, transaction_id: str) -> asyncio.Lock:
        lock = self._locks.get(transaction_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[transaction_id] = lock
        return lock

    async def load_settings(self) -> EscrowSettings:
        """Resolve the settings snapshot for one operation."""
        try:
            overrides = await self.store.fetch_settings()
        except Exception as e:
            logger.warning(f"Could not load system settings, using defaults: {e}")
            return self.default_settings
        try:
            return self.default_settings.with_overrides(overrides)
        except ConfigError as e:
            logger.warning(f"Ignoring invalid system settings, using defaults: {e}")
            return self.default_settings

    async def _load(self, transaction_id: str) -> Transaction:
        txn = await self.store.get_transaction(transaction_id)
        if txn is None:
            raise TransactionNotFoundError(f"Transaction not found: {transaction_id}")
        return txn

    async def _commit(self, txn: Transaction) -> Transaction:
        txn.updated_at = self._now()
        return await self.store.save_transaction(txn, txn.version)

    def _notify(
        self,
        recipient_id: Optional[str],
        title: str,
        body: str,
        txn: Transaction,
        category: str = 'transaction'
    ) -> None:
        self.notifier.dispatch(recipient_id, title, body, category, {'transaction_id': txn.id})

    def _money(self, txn: Transaction, amount: Decimal) -> str:
        return format_currency(amount, txn.currency)

    # ==================== CREATION & ACCEPTANCE ====================

    async def create_transaction(
        self,
        initiator: Principal,
        title: str,
        amount: Any,
        counterparty_email: str,
        currency: Optional[str] = None,
        initiator_role: str = 'buyer',
        inspection_period_days: Optional[int] = None,
        milestones: Optional[List[Dict[str, Any]]] = None,
        description: str = ''
    ) -> ServiceResult:
        """
        Create a transaction in ``pending``.

        The initiator is the buyer (inviting a seller by email, who may not
        have an account yet) or the seller (inviting an existing buyer).

        Args:
            initiator: Acting user
            title: 3-200 characters
            amount: Total amount, within the configured limits
            counterparty_email: Email of the invited party
            currency: Three-letter currency code (defaults to settings)
            initiator_role: 'buyer' or 'seller'
            inspection_period_days: 1-30, defaults to settings
            milestones: Optional list of {title, amount, description, due_date, deliverables}
            description: Up to 2000 characters

        Raises:
            ValidationError: On malformed input or a suspended counterparty
            AuthorizationError: If the initiator is suspended
        """
        ensure_active_principal(initiator)
        settings = await self.load_settings()

        title = sanitize_input(title, MAX_TITLE_LENGTH + 1)
        if not MIN_TITLE_LENGTH <= len(title) <= MAX_TITLE_LENGTH:
            raise ValidationError(
                f"Title must be between {MIN_TITLE_LENGTH} and {MAX_TITLE_LENGTH} characters"
            )
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            raise ValidationError(f"Description cannot exceed {MAX_DESCRIPTION_LENGTH} characters")
        description = sanitize_input(description, MAX_DESCRIPTION_LENGTH)

        amount = self._parse_amount(amount)
        if amount < settings.min_transaction_amount:
            raise ValidationError(
                f"Amount must be at least {format_currency(settings.min_transaction_amount, settings.currency)}"
            )
        if amount > settings.max_transaction_amount:
            raise ValidationError(
                f"Amount must be at most {format_currency(settings.max_transaction_amount, settings.currency)}"
            )

        currency = (currency or settings.currency).lower()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code: {currency}")

        if inspection_period_days is None:
            inspection_period_days = settings.default_inspection_days
        if not settings.min_inspection_days <= int(inspection_period_days) <= settings.max_inspection_days:
            raise ValidationError(
                f"Inspection period must be between {settings.min_inspection_days} "
                f"and {settings.max_inspection_days} days"
            )

        if not counterparty_email or '@' not in counterparty_email:
            raise ValidationError("A valid counterparty email is required")
        counterparty_email = counterparty_email.strip().lower()
        if initiator.email and initiator.email.lower() == counterparty_email:
            raise ValidationError("Cannot create transaction with yourself")

        counterparty = await self.store.find_user_by_email(counterparty_email)

        if initiator_role == 'buyer':
            buyer_id = initiator.id
            seller_id = counterparty.id if counterparty else None
            seller_email = counterparty_email
        elif initiator_role == 'seller':
            if counterparty is None:
                raise ValidationError("Buyer not found")
            buyer_id = counterparty.id
            seller_id = initiator.id
            seller_email = initiator.email.lower() if initiator.email else None
        else:
            raise ValidationError("initiator_role must be 'buyer' or 'seller'")

        if counterparty is not None:
            if counterparty.id == initiator.id:
                raise ValidationError("Cannot create transaction with yourself")
            if counterparty.is_suspended:
                party = 'Seller' if initiator_role == 'buyer' else 'Buyer'
                raise ValidationError(
                    f"{party} account is suspended. Transaction cannot be created."
                )

        parsed_milestones = self._parse_milestones(milestones or [], amount)

        txn = Transaction(
            id=new_id(),
            title=title,
            description=description,
            amount=amount,
            currency=currency,
            buyer_id=buyer_id,
            seller_id=seller_id,
            seller_email=seller_email,
            initiated_by=initiator.id,
            milestones=parsed_milestones,
            inspection_period=int(inspection_period_days),
            created_at=self._now(),
        )
        txn = await self.store.insert_transaction(txn)

        logger.info(
            f"Transaction {txn.id} created by {initiator.id} as {initiator_role}: "
            f"{self._money(txn, amount)}, {len(parsed_milestones)} milestones"
        )

        recipient = counterparty.id if counterparty else None
        self._notify(
            recipient,
            'New Transaction',
            f'You have been invited to a transaction: "{title}" for {self._money(txn, amount)}',
            txn,
        )

        if amount >= settings.high_value_threshold:
            self.notifier.notify_admins(
                'High Value Transaction',
                f"A high value transaction of {self._money(txn, amount)} has been "
                f"initiated by {initiator.email or initiator.id}.",
                category='info',
                metadata={'transaction_id': txn.id},
            )

        await self.audit.record(
            initiator.id, 'transaction_created', 'transaction',
            metadata={'transaction_id': txn.id, 'amount': amount, 'currency': currency},
        )

        return ServiceResult(
            transaction=txn,
            message=f"Transaction created. Waiting for {counterparty_email} to accept.",
        )

    def _parse_amount(self, value: Any) -> Decimal:
        try:
            amount = to_money(value)
        except (InvalidOperation, ValueError, TypeError) as e:
            raise ValidationError(f"Invalid amount: {value!r}") from e
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("Amount must be a positive number")
        return amount

    def _parse_milestones(self, items: List[Dict[str, Any]], total: Decimal) -> List[Milestone]:
        milestones: List[Milestone] = []
        for index, item in enumerate(items, start=1):
            title = sanitize_input(item.get('title'), MAX_TITLE_LENGTH)
            if not title:
                raise ValidationError(f"Milestone {index} needs a title")
            amount = self._parse_amount(item.get('amount'))
            due_date = item.get('due_date')
            if isinstance(due_date, str):
                try:
                    due_date = datetime.fromisoformat(due_date)
                except ValueError as e:
                    raise ValidationError(f"Milestone {index} has an invalid due date") from e
            milestones.append(Milestone(
                title=title,
                amount=amount,
                description=sanitize_input(item.get('description'), MAX_DESCRIPTION_LENGTH),
                due_date=due_date,
                deliverables=[
                    Deliverable(title=sanitize_input(d, MAX_TITLE_LENGTH))
                    for d in item.get('deliverables') or []
                ],
            ))

        if milestones:
            milestone_total = sum((m.amount for m in milestones), Decimal('0'))
            if not amounts_match(milestone_total, total):
                raise ValidationError(
                    f"Milestone amounts ({milestone_total}) must equal total transaction amount ({total})"
                )
        return milestones

    async def accept_transaction(self, transaction_id: str, principal: Principal) -> ServiceResult:
        """
        Accept a pending transaction as the invited counterparty.

        Raises:
            AuthorizationError: If the actor is not the invited counterparty
            InvalidTransitionError: If the transaction is not pending
        """
        ensure_active_principal(principal)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            ensure_can_accept(txn, principal)

            if txn.seller_id is None:
                txn.seller_id = principal.id
            txn.status = TransactionStatus.ACCEPTED
            txn = await self._commit(txn)

        logger.info(f"Transaction {txn.id} accepted by {principal.id}")

        self._notify(
            txn.initiated_by,
            'Transaction Accepted',
            f'Your transaction "{txn.title}" has been accepted.',
            txn,
        )
        await self.audit.record(
            principal.id, 'transaction_accepted', 'transaction',
            metadata={'transaction_id': txn.id},
        )

        return ServiceResult(transaction=txn, message="Transaction accepted. Waiting for the buyer to fund escrow.")

    # ==================== PAYMENT FLOW ====================

    async def initiate_funding(self, transaction_id: str, principal: Principal) -> ServiceResult:
        """
        Create (or reuse) the payment intent the buyer pays into escrow.

        The result's ``details`` carry ``payment_intent_id`` and
        ``client_secret``.
        """
        ensure_active_principal(principal)
        settings = await self.load_settings()

        txn = await self._load(transaction_id)
        if not txn.is_buyer(principal.id):
            raise AuthorizationError("Only the buyer can initiate payment")
        check_transition(txn, TransactionEvent.FUND)

        if txn.processor.payment_intent_id:
            intent = await self.settlement.retrieve_payment_intent(txn.processor.payment_intent_id)
            logger.info(f"Reusing payment intent {intent['id']} for {txn.id}")
            return ServiceResult(
                transaction=txn,
                message="Payment already initiated. Complete the card payment to fund escrow.",
                details={'payment_intent_id': intent['id'], 'client_secret': intent.get('client_secret')},
            )

        # Intent creation is keyed on the transaction id, so racing callers share one intent
        intent = await self.settlement.create_funding(txn)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            check_transition(txn, TransactionEvent.FUND)
            existing = txn.processor.payment_intent_id
            if existing and existing != intent['id']:
                raise InvalidTransitionError(
                    f"Transaction {txn.id} is already bound to payment intent {existing}"
                )
            if not existing:
                fees = compute_fees(txn.amount, settings)
                txn.processor.payment_intent_id = intent['id']
                txn.fees.platform_fee = fees.platform_fee
                txn.fees.processor_fee = fees.processor_fee
                txn = await self._commit(txn)

        await self.audit.record(
            principal.id, 'payment_intent_created', 'payment',
            metadata={'transaction_id': txn.id, 'amount': txn.amount, 'payment_intent_id': intent['id']},
        )

        return ServiceResult(
            transaction=txn,
            message="Payment initiated. Complete the card payment to fund escrow.",
            details={'payment_intent_id': intent['id'], 'client_secret': intent.get('client_secret')},
        )

    async def confirm_payment(
        self,
        transaction_id: str,
        principal: Principal,
        payment_intent_id: str
    ) -> ServiceResult:
        """Synchronously confirm funding after the buyer completes payment."""
        ensure_active_principal(principal)
        txn = await self._load(transaction_id)
        if not txn.is_buyer(principal.id):
            raise AuthorizationError("Only the buyer can confirm payment")
        if txn.processor.payment_intent_id != payment_intent_id:
            raise ValidationError("Payment intent does not belong to this transaction")

        intent = await self.settlement.retrieve_payment_intent(payment_intent_id)
        if intent.get('status') != 'succeeded':
            return ServiceResult(
                transaction=txn,
                message=f"Payment not completed yet (status: {intent.get('status')}).",
            )

        funded = await self.mark_funded(transaction_id, intent)
        if funded is None:
            txn = await self._load(transaction_id)
            return ServiceResult(transaction=txn, message="Payment already recorded.")
        return ServiceResult(transaction=funded, message="Payment confirmed. Funds are held in escrow.")

    async def mark_funded(
        self,
        transaction_id: str,
        payment_intent: Dict[str, Any]
    ) -> Optional[Transaction]:
        """
        Record a succeeded payment intent (``accepted -> funded``).

        Idempotent: duplicate or out-of-order confirmations are no-ops.

        Returns:
            The funded transaction, or None when nothing changed
        """
        intent_id = payment_intent.get('id')
        settings = await self.load_settings()

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)

            if txn.status != TransactionStatus.ACCEPTED:
                if txn.status == TransactionStatus.CANCELLED:
                    conflict_on = txn
                elif txn.status == TransactionStatus.REFUNDED:
                    logger.info(f"Payment {intent_id} for {txn.id} already refunded")
                    return None
                else:
                    logger.info(
                        f"Payment {intent_id} ignored: transaction {txn.id} is {txn.status.value}"
                    )
                    return None
            elif txn.pending_settlement is not None:
                logger.warning(
                    f"Payment {intent_id} ignored: transaction {txn.id} has a "
                    f"{txn.pending_settlement.kind.value} in flight"
                )
                return None
            elif txn.processor.payment_intent_id and txn.processor.payment_intent_id != intent_id:
                logger.warning(
                    f"Payment {intent_id} does not match intent "
                    f"{txn.processor.payment_intent_id} on transaction {txn.id}"
                )
                return None
            else:
                conflict_on = None
                txn.status = TransactionStatus.FUNDED
                txn.funded_at = self._now()
                txn.processor.payment_intent_id = intent_id
                txn.processor.charge_id = payment_intent.get('latest_charge') or txn.processor.charge_id
                if not txn.fees.is_set:
                    fees = compute_fees(txn.amount, settings)
                    txn.fees.platform_fee = fees.platform_fee
                    txn.fees.processor_fee = fees.processor_fee
                txn = await self._commit(txn)

        if conflict_on is not None:
            await self.audit.alert_reconciliation(
                conflict_on.id,
                "Payment captured for a cancelled transaction; refund required",
                {'payment_intent_id': intent_id},
            )
            return None

        logger.info(f"Transaction {txn.id} funded by payment intent {intent_id}")

        self._notify(
            txn.seller_id,
            'Payment Received',
            f'Payment of {self._money(txn, txn.amount)} received for "{txn.title}". You can now deliver.',
            txn, 'payment',
        )
        self._notify(
            txn.buyer_id,
            'Payment Successful',
            f'Your payment of {self._money(txn, txn.amount)} for "{txn.title}" is now in escrow.',
            txn, 'payment',
        )
        await self.audit.record(
            txn.buyer_id, 'payment_successful', 'payment',
            metadata={'transaction_id': txn.id, 'amount': txn.amount, 'payment_intent_id': intent_id},
        )
        return txn

    # ==================== DELIVERY FLOW ====================

    async def mark_delivered(self, transaction_id: str, principal: Principal) -> ServiceResult:
        """Seller marks delivery; starts the inspection window."""
        ensure_active_principal(principal)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            ensure_can_deliver(txn, principal)

            now = self._now()
            txn.status = TransactionStatus.DELIVERED
            txn.delivered_at = now
            txn.inspection_ends_at = now + timedelta(days=txn.inspection_period)
            txn = await self._commit(txn)

        logger.info(f"Transaction {txn.id} delivered; inspection ends {txn.inspection_ends_at.isoformat()}")

        self._notify(
            txn.buyer_id,
            'Delivery Confirmed',
            f'The seller marked "{txn.title}" as delivered. Inspect it and release funds or '
            f'raise a dispute by {txn.inspection_ends_at:%Y-%m-%d %H:%M} UTC; funds are '
            f'released automatically after that.',
            txn,
        )
        await self.audit.record(
            principal.id, 'transaction_delivered', 'transaction',
            metadata={'transaction_id': txn.id},
        )

        return ServiceResult(
            transaction=txn,
            message=f"Marked as delivered. Inspection period of {txn.inspection_period} days started.",
        )

    # ==================== RELEASE FLOW ====================

    async def release_funds(self, transaction_id: str, principal: Principal) -> ServiceResult:
        """
        Release the whole undisbursed balance to the seller.

        Unreleased milestones are marked released. Completes the transaction.
        """
        ensure_active_principal(principal)

        def guard(txn: Transaction) -> SettlementPlan:
            ensure_can_release(txn, principal)
            return SettlementPlan(SettlementPurpose.RELEASE, SettlementKind.TRANSFER, txn.remaining_amount)

        txn, outcome = await self._settle(transaction_id, principal, guard, self._finalize_release)
        await self._after_release(txn, outcome, principal)

        return ServiceResult(
            transaction=txn,
            message=(
                f"Released {self._money(txn, outcome.gross_amount)} to the seller "
                f"({self._money(txn, outcome.net_amount)} after fees)."
            ),
        )

    async def release_milestone(
        self,
        transaction_id: str,
        principal: Principal,
        milestone_id: str
    ) -> ServiceResult:
        """Release one milestone's amount to the seller."""
        ensure_active_principal(principal)

        def guard(txn: Transaction) -> SettlementPlan:
            ensure_can_release_milestone(txn, principal)
            milestone = txn.find_milestone(milestone_id)
            if milestone.is_released:
                raise InvalidTransitionError(f"Milestone {milestone_id} is already released")
            # The last milestone absorbs any rounding remainder
            if len(txn.unreleased_milestones()) == 1:
                amount = txn.remaining_amount
            else:
                amount = milestone.amount
            if amount > txn.remaining_amount:
                raise InvalidTransitionError(
                    f"Milestone amount {amount} exceeds undisbursed balance {txn.remaining_amount}"
                )
            return SettlementPlan(
                SettlementPurpose.MILESTONE_RELEASE, SettlementKind.TRANSFER, amount, milestone_id
            )

        txn, outcome = await self._settle(transaction_id, principal, guard, self._finalize_release)
        await self._after_release(txn, outcome, principal)

        milestone = txn.find_milestone(milestone_id)
        message = (
            f'Milestone "{milestone.title}" released: {self._money(txn, outcome.gross_amount)} '
            f'({self._money(txn, outcome.net_amount)} after fees).'
        )
        if txn.status == TransactionStatus.COMPLETED:
            message += " All funds released; transaction completed."
        return ServiceResult(transaction=txn, message=message)

    async def auto_release(self, transaction_id: str) -> Optional[ServiceResult]:
        """
        Release a delivered transaction whose inspection window elapsed.

        Returns None when the transaction is no longer eligible.
        """
        now = self._now()

        def guard(txn: Transaction) -> SettlementPlan:
            check_transition(txn, TransactionEvent.AUTO_RELEASE)
            if txn.inspection_ends_at is None or txn.inspection_ends_at > now:
                raise _NotEligible(f"inspection window still open until {txn.inspection_ends_at}")
            if txn.is_fully_released:
                raise _NotEligible("already fully released")
            return SettlementPlan(SettlementPurpose.AUTO_RELEASE, SettlementKind.TRANSFER, txn.remaining_amount)

        try:
            txn, outcome = await self._settle(transaction_id, SYSTEM_ACTOR, guard, self._finalize_release)
        except (_NotEligible, InvalidTransitionError) as e:
            logger.info(f"Skipping auto-release of {transaction_id}: {e}")
            return None

        await self._after_release(txn, outcome, SYSTEM_ACTOR, notify_buyer=False)

        self._notify(
            txn.buyer_id,
            'Auto-Release',
            f'The inspection period for "{txn.title}" ended, so '
            f'{self._money(txn, outcome.gross_amount)} was released to the seller automatically.',
            txn,
        )
        await self.audit.record(
            'system', 'auto_release', 'system',
            metadata={'transaction_id': txn.id, 'amount': outcome.gross_amount},
        )

        return ServiceResult(transaction=txn, message="Funds released automatically after inspection period.")

    def _finalize_release(self, txn: Transaction, now: datetime) -> None:
        if txn.is_fully_released:
            txn.status = TransactionStatus.COMPLETED
            txn.completed_at = now

    async def _after_release(
        self,
        txn: Transaction,
        outcome: TransferOutcome,
        actor: Principal,
        notify_buyer: bool = True
    ) -> None:
        completed = txn.status == TransactionStatus.COMPLETED

        converted = f" (paid out in {outcome.payout_currency.upper()})" if outcome.converted else ""
        self._notify(
            txn.seller_id,
            'Funds Released',
            f'Funds of {self._money(txn, outcome.net_amount)} have been released to your account'
            f'{converted}.',
            txn, 'payment',
        )

        if completed:
            await self.trust.record(txn.buyer_id, TrustEvent.COMPLETED, txn.amount)
            await self.trust.record(txn.seller_id, TrustEvent.COMPLETED, txn.amount)
        if completed and notify_buyer:
            self._notify(
                txn.buyer_id,
                'Transaction Completed',
                f'"{txn.title}" is complete. All funds have been released to the seller.',
                txn,
            )

        await self.audit.record(
            actor.id, 'funds_released', 'payment',
            metadata={
                'transaction_id': txn.id,
                'amount': outcome.gross_amount,
                'platform_fee': outcome.platform_fee,
                'net_amount': outcome.net_amount,
                'transfer_id': outcome.transfer_id,
                'completed': completed,
            },
        )

    # ==================== DISPUTE FLOW ====================

    async def raise_dispute(self, transaction_id: str, principal: Principal, reason: str) -> ServiceResult:
        """Freeze a funded or delivered transaction pending admin review."""
        ensure_active_principal(principal)
        reason = sanitize_input(reason, MAX_REASON_LENGTH)
        if not reason:
            raise ValidationError("A dispute reason is required")

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            ensure_can_dispute(txn, principal)

            txn.dispute = Dispute(reason=reason, raised_by=principal.id, created_at=self._now())
            txn.status = TransactionStatus.DISPUTED
            txn = await self._commit(txn)

        logger.info(f"Dispute raised on {txn.id} by {principal.id}")

        self._notify(
            txn.counterparty_of(principal.id),
            'Dispute Raised',
            f'A dispute was raised on "{txn.title}": {reason}',
            txn, 'dispute',
        )
        self.notifier.notify_admins(
            'Dispute Raised',
            f'Transaction {txn.id} ("{txn.title}", {self._money(txn, txn.amount)}) needs review.',
            category='dispute',
            metadata={'transaction_id': txn.id},
        )
        await self.audit.record(
            principal.id, 'dispute_raised', 'transaction',
            metadata={'transaction_id': txn.id, 'reason': reason},
        )

        return ServiceResult(
            transaction=txn,
            message="Dispute raised. No refund has been triggered; funds stay in escrow until an admin resolves it.",
        )

    async def resolve_dispute(
        self,
        transaction_id: str,
        admin: Principal,
        action: str,
        resolution: str
    ) -> ServiceResult:
        """
        Resolve an open dispute (admin only).

        ``release_seller`` pays out the remaining balance and completes the
        transaction; ``refund_buyer`` refunds the remaining balance. The
        losing party loses trust.
        """
        try:
            decision = DisputeAction(action)
        except ValueError as e:
            valid = [a.value for a in DisputeAction]
            raise ValidationError(f"Invalid action. Must be one of: {valid}") from e

        resolution = sanitize_input(resolution, MAX_REASON_LENGTH)
        if not resolution:
            raise ValidationError("A resolution note is required")

        def finalize(txn: Transaction, now: datetime) -> None:
            txn.dispute.status = DisputeStatus.RESOLVED
            txn.dispute.action = decision
            txn.dispute.resolution = resolution
            txn.dispute.resolved_by = admin.id
            txn.dispute.resolved_at = now
            if decision == DisputeAction.RELEASE_SELLER:
                self._finalize_release(txn, now)
            else:
                txn.status = TransactionStatus.REFUNDED
                txn.refunded_at = now

        def guard(txn: Transaction) -> SettlementPlan:
            ensure_can_resolve(txn, admin)
            txn.dispute.status = DisputeStatus.UNDER_REVIEW
            txn.dispute.action = decision
            if decision == DisputeAction.RELEASE_SELLER:
                return SettlementPlan(
                    SettlementPurpose.DISPUTE_RELEASE, SettlementKind.TRANSFER, txn.remaining_amount
                )
            return SettlementPlan(
                SettlementPurpose.DISPUTE_REFUND, SettlementKind.REFUND, txn.remaining_amount
            )

        await self._finish_stale_settlement(transaction_id, admin, guard, await self.load_settings())

        # A payout that landed while the dispute was raised leaves nothing to move
        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            ensure_can_resolve(txn, admin)
            settled_already = txn.is_fully_released
            if settled_already:
                if decision == DisputeAction.REFUND_BUYER:
                    raise InvalidTransitionError(
                        f"Transaction {txn.id} was already paid out in full; nothing left to refund"
                    )
                finalize(txn, self._now())
                txn = await self._commit(txn)

        if not settled_already:
            txn, outcome = await self._settle(transaction_id, admin, guard, finalize)
            settled_amount = outcome.gross_amount if isinstance(outcome, TransferOutcome) else outcome.amount
        else:
            settled_amount = Decimal('0.00')

        if decision == DisputeAction.RELEASE_SELLER:
            loser = txn.buyer_id
            outcome_text = (
                f"Dispute resolved in favour of the seller. {self._money(txn, settled_amount)} "
                f"was released to the seller; no refund was triggered."
            )
            refund_triggered = False
        else:
            loser = txn.seller_id
            outcome_text = (
                f"Dispute resolved in favour of the buyer. A refund of "
                f"{self._money(txn, settled_amount)} was issued to the buyer."
            )
            refund_triggered = True

        await self.trust.record(loser, TrustEvent.DISPUTED_LOST)

        for party in (txn.buyer_id, txn.seller_id):
            self._notify(party, 'Dispute Resolved', f'"{txn.title}": {outcome_text} {resolution}', txn, 'dispute')

        await self.audit.record(
            admin.id, 'dispute_resolved', 'admin',
            metadata={'transaction_id': txn.id, 'action': decision.value, 'resolution': resolution},
        )

        return ServiceResult(transaction=txn, message=outcome_text, refund_triggered=refund_triggered)

    # ==================== CANCELLATION ====================

    async def cancel_transaction(
        self,
        transaction_id: str,
        principal: Principal,
        reason: Optional[str] = None
    ) -> ServiceResult:
        """
        Cancel a pending or accepted transaction.

        If the buyer's payment was already captured (webhook not yet
        processed) the funds are refunded and the transaction ends
        ``refunded``; otherwise any open payment intent is cancelled.
        """
        ensure_active_principal(principal)
        reason = sanitize_input(reason, MAX_REASON_LENGTH) or None

        txn = await self._load(transaction_id)
        ensure_can_cancel(txn, principal)

        captured = False
        intent_id = txn.processor.payment_intent_id
        if txn.status == TransactionStatus.ACCEPTED and intent_id:
            intent = await self.settlement.retrieve_payment_intent(intent_id)
            intent_status = intent.get('status')
            if intent_status == 'succeeded':
                captured = True
            elif intent_status != 'canceled':
                await self.settlement.cancel_payment_intent(intent_id)

        if not captured:
            async with self._lock_for(transaction_id):
                txn = await self._load(transaction_id)
                ensure_can_cancel(txn, principal)
                if txn.processor.payment_intent_id != intent_id:
                    raise ConcurrentModificationError(
                        f"Payment for transaction {txn.id} changed while cancelling; retry"
                    )
                now = self._now()
                txn.status = TransactionStatus.CANCELLED
                txn.cancelled_at = now
                txn.cancellation_reason = reason
                txn = await self._commit(txn)

        if captured:
            def guard(current: Transaction) -> SettlementPlan:
                ensure_can_cancel(current, principal)
                return SettlementPlan(
                    SettlementPurpose.CANCEL_REFUND, SettlementKind.REFUND, current.remaining_amount
                )

            def finalize(current: Transaction, now: datetime) -> None:
                current.status = TransactionStatus.REFUNDED
                current.refunded_at = now
                current.cancelled_at = now
                current.cancellation_reason = reason

            txn, outcome = await self._settle(transaction_id, principal, guard, finalize)
            message = (
                f"Transaction cancelled. The buyer's payment had already been captured, so "
                f"{self._money(txn, outcome.amount)} was refunded."
            )
        else:
            message = "Transaction cancelled. No funds were captured, so no refund was needed."

        await self.trust.record(principal.id, TrustEvent.CANCELLED)

        self._notify(
            txn.counterparty_of(principal.id),
            'Transaction Cancelled',
            f'"{txn.title}" was cancelled.' + (f" Reason: {reason}" if reason else ""),
            txn,
        )
        await self.audit.record(
            principal.id, 'transaction_cancelled', 'transaction',
            metadata={'transaction_id': txn.id, 'reason': reason, 'refunded': captured},
        )

        return ServiceResult(transaction=txn, message=message, refund_triggered=captured)

    # ==================== SETTLEMENT ENGINE ====================

    async def _settle(
        self,
        transaction_id: str,
        actor: Principal,
        guard: Callable[[Transaction], SettlementPlan],
        finalize: Finalizer
    ) -> Tuple[Transaction, Outcome]:
        """
        Reserve, execute and commit one external money movement.

        0. A stale reservation for a different movement is finished first.
        1. Under the lock: validate via ``guard``, write the reservation.
        2. Without the lock: call the processor with a deterministic
           idempotency key.
        3. Under the lock: reload, record the effect, apply ``finalize`` if
           the status still qualifies; otherwise raise ReconciliationConflict.
        """
        settings = await self.load_settings()
        await self._finish_stale_settlement(transaction_id, actor, guard, settings)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            plan = guard(txn)
            if plan.amount <= 0:
                raise InvalidTransitionError(f"Nothing left to settle on transaction {txn.id}")

            now = self._now()
            ensure_nothing_in_flight(txn, now, settings.reservation_ttl_minutes)
            stale = txn.pending_settlement
            if stale is not None:
                if not self._same_settlement(txn, stale, plan):
                    raise InvalidTransitionError(
                        f"An unfinished {stale.kind.value} of {stale.amount} on transaction {txn.id} "
                        f"must be reconciled first"
                    )
                logger.warning(
                    f"Taking over stale {stale.kind.value} reservation on {txn.id} "
                    f"from {stale.reserved_by} (reserved {stale.reserved_at.isoformat()})"
                )

            seller: Optional[UserAccount] = None
            if plan.kind == SettlementKind.TRANSFER:
                seller = await self.store.get_user(txn.seller_id) if txn.seller_id else None
                if seller is None or not seller.payout_account_id:
                    raise PayoutAccountMissing(
                        f"Seller of transaction {txn.id} has no connected payout account"
                    )

            reservation = PendingSettlement(
                kind=plan.kind,
                amount=plan.amount,
                idempotency_key=settlement_idempotency_key(txn, plan.kind, plan.amount),
                reserved_at=now,
                reserved_by=actor.id,
                milestone_id=plan.milestone_id,
            )
            txn.pending_settlement = reservation
            txn = await self._commit(txn)

        logger.info(
            f"Reserved {plan.kind.value} of {plan.amount} on {txn.id} "
            f"for {plan.purpose.value} (key {reservation.idempotency_key})"
        )

        try:
            if plan.kind == SettlementKind.TRANSFER:
                outcome: Outcome = await self.settlement.transfer_to_seller(
                    txn, seller, plan.amount, reservation.idempotency_key
                )
            else:
                outcome = await self.settlement.refund_buyer(
                    txn, plan.amount, reservation.idempotency_key
                )
        except Exception as e:
            logger.error(f"{plan.purpose.value} of {plan.amount} failed for {txn.id}: {e}")
            await self._clear_reservation(transaction_id, reservation.idempotency_key)
            await self.audit.record(
                actor.id, f'{plan.purpose.value}_failed', 'payment',
                status='failure', severity='error',
                metadata={'transaction_id': transaction_id, 'amount': plan.amount, 'error': str(e)},
            )
            raise

        return await self._record_outcome(transaction_id, plan, reservation, outcome, finalize)

    @staticmethod
    def _same_settlement(txn: Transaction, pending: PendingSettlement, plan: SettlementPlan) -> bool:
        return (
            pending.kind == plan.kind
            and pending.amount == plan.amount
            and pending.milestone_id == plan.milestone_id
            and pending.idempotency_key == settlement_idempotency_key(txn, plan.kind, plan.amount)
        )

    async def _finish_stale_settlement(
        self,
        transaction_id: str,
        actor: Principal,
        guard: Callable[[Transaction], SettlementPlan],
        settings: EscrowSettings
    ) -> None:
        """
        Complete an abandoned reservation before a different settlement is planned.

        The reserved call is repeated with its stored idempotency key, so the
        processor hands back the original object if the first attempt went
        through, and the effect is recorded before anything new is reserved.
        A reservation matching the caller's own plan is left for ``_settle``
        to take over.
        """
        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            pending = txn.pending_settlement
            now = self._now()
            if pending is None or not pending.is_stale(now, settings.reservation_ttl_minutes):
                return

            try:
                plan: Optional[SettlementPlan] = guard(await self._load(transaction_id))
            except AuthorizationError:
                raise
            except EscrowError:
                plan = None
            if plan is not None and self._same_settlement(txn, pending, plan):
                return

            logger.warning(
                f"Finishing stale {pending.kind.value} of {pending.amount} on {txn.id} "
                f"reserved by {pending.reserved_by} at {pending.reserved_at.isoformat()} "
                f"(key {pending.idempotency_key})"
            )

            seller: Optional[UserAccount] = None
            if pending.kind == SettlementKind.TRANSFER:
                seller = await self.store.get_user(txn.seller_id) if txn.seller_id else None
                if seller is None or not seller.payout_account_id:
                    raise PayoutAccountMissing(
                        f"Cannot finish stale transfer on {txn.id}: seller has no connected payout account"
                    )

            pending.reserved_at = now
            txn = await self._commit(txn)
            reservation = txn.pending_settlement

        recovery = SettlementPlan(
            SettlementPurpose.RECOVERY, reservation.kind, reservation.amount, reservation.milestone_id
        )
        try:
            if reservation.kind == SettlementKind.TRANSFER:
                outcome: Outcome = await self.settlement.transfer_to_seller(
                    txn, seller, reservation.amount, reservation.idempotency_key
                )
            else:
                outcome = await self.settlement.refund_buyer(
                    txn, reservation.amount, reservation.idempotency_key
                )
        except (TerminalProcessorError, ValidationError, InvalidTransitionError) as e:
            # Rejected under the original key or before any call, so it never executed
            logger.error(f"Stale {reservation.kind.value} on {transaction_id} was rejected: {e}")
            await self._clear_reservation(transaction_id, reservation.idempotency_key)
            await self.audit.record(
                actor.id, 'settlement_recovery_failed', 'payment',
                status='failure', severity='error',
                metadata={
                    'transaction_id': transaction_id,
                    'amount': reservation.amount,
                    'idempotency_key': reservation.idempotency_key,
                    'error': str(e),
                },
            )
            return

        def finalize(current: Transaction, now: datetime) -> None:
            if reservation.kind == SettlementKind.TRANSFER:
                if current.status in (TransactionStatus.FUNDED, TransactionStatus.DELIVERED):
                    self._finalize_release(current, now)
                return
            if current.status == TransactionStatus.DISPUTED and current.dispute is not None:
                current.dispute.status = DisputeStatus.RESOLVED
                current.dispute.action = DisputeAction.REFUND_BUYER
                current.dispute.resolved_by = reservation.reserved_by
                current.dispute.resolved_at = now
            else:
                current.cancelled_at = now
            current.status = TransactionStatus.REFUNDED
            current.refunded_at = now

        txn, outcome = await self._record_outcome(transaction_id, recovery, reservation, outcome, finalize)

        await self.audit.record(
            actor.id, 'settlement_recovered', 'payment',
            metadata={
                'transaction_id': txn.id,
                'kind': reservation.kind.value,
                'amount': reservation.amount,
                'idempotency_key': reservation.idempotency_key,
                'reserved_by': reservation.reserved_by,
            },
        )
        if isinstance(outcome, TransferOutcome):
            await self._after_release(txn, outcome, actor)
        else:
            self._notify(
                txn.buyer_id,
                'Refund Issued',
                f'A refund of {self._money(txn, outcome.amount)} for "{txn.title}" was issued.',
                txn, 'payment',
            )

    async def _clear_reservation(self, transaction_id: str, idempotency_key: str) -> None:
        for _ in range(COMMIT_RETRIES):
            async with self._lock_for(transaction_id):
                txn = await self._load(transaction_id)
                pending = txn.pending_settlement
                if pending is None or pending.idempotency_key != idempotency_key:
                    return
                txn.pending_settlement = None
                try:
                    await self._commit(txn)
                    return
                except ConcurrentModificationError:
                    continue
        logger.error(f"Could not clear settlement reservation on {transaction_id}")

    async def _record_outcome(
        self,
        transaction_id: str,
        plan: SettlementPlan,
        reservation: PendingSettlement,
        outcome: Outcome,
        finalize: Finalizer
    ) -> Tuple[Transaction, Outcome]:
        last_error: Optional[Exception] = None

        for _ in range(COMMIT_RETRIES):
            async with self._lock_for(transaction_id):
                txn = await self._load(transaction_id)

                if self._already_recorded(txn, outcome):
                    logger.info(f"Settlement result already recorded on {txn.id}")
                    return txn, outcome

                now = self._now()
                conflict = self._apply_outcome(txn, plan, outcome, now)
                if conflict is None and txn.status not in COMMIT_STATUSES[plan.purpose]:
                    conflict = (
                        f"{plan.kind.value} of {plan.amount} executed for {plan.purpose.value} "
                        f"but transaction is now '{txn.status.value}'"
                    )
                if conflict is None:
                    finalize(txn, now)

                if txn.pending_settlement is not None and \
                        txn.pending_settlement.idempotency_key == reservation.idempotency_key:
                    txn.pending_settlement = None

                try:
                    txn = await self._commit(txn)
                except ConcurrentModificationError as e:
                    last_error = e
                    continue

            if conflict is not None:
                details = {
                    'purpose': plan.purpose.value,
                    'amount': plan.amount,
                    'status': txn.status.value,
                    'external_id': getattr(outcome, 'transfer_id', None) or getattr(outcome, 'refund_id', None),
                }
                await self.audit.alert_reconciliation(txn.id, conflict, details)
                raise ReconciliationConflict(txn.id, conflict, details)

            logger.info(f"{plan.purpose.value} of {plan.amount} committed on {txn.id} ({txn.status.value})")
            return txn, outcome

        message = f"Could not record executed {plan.kind.value} after {COMMIT_RETRIES} attempts"
        await self.audit.alert_reconciliation(transaction_id, message, {'error': str(last_error)})
        raise ReconciliationConflict(transaction_id, message)

    def _already_recorded(self, txn: Transaction, outcome: Outcome) -> bool:
        if isinstance(outcome, TransferOutcome):
            return outcome.transfer_id in txn.processor.transfer_ids
        return txn.processor.refund_id == outcome.refund_id

    def _apply_outcome(
        self,
        txn: Transaction,
        plan: SettlementPlan,
        outcome: Outcome,
        now: datetime
    ) -> Optional[str]:
        """Record the executed external effect; returns a conflict description if it cannot fit."""
        if isinstance(outcome, RefundOutcome):
            txn.processor.refund_id = outcome.refund_id
            return None

        if txn.amount_released + outcome.gross_amount > txn.amount:
            if outcome.transfer_id not in txn.processor.unreconciled_transfer_ids:
                txn.processor.unreconciled_transfer_ids.append(outcome.transfer_id)
            return (
                f"transfer {outcome.transfer_id} of {outcome.gross_amount} would exceed the "
                f"transaction amount (already released {txn.amount_released})"
            )

        txn.amount_released = to_money(txn.amount_released + outcome.gross_amount)
        txn.amount_paid_out = to_money(txn.amount_paid_out + outcome.net_amount)
        txn.fees.platform_fee_collected = to_money(txn.fees.platform_fee_collected + outcome.platform_fee)
        txn.processor.transfer_ids.append(outcome.transfer_id)
        txn.processor.charge_id = txn.processor.charge_id or outcome.charge_id

        if plan.milestone_id:
            self._mark_milestone_released(txn.find_milestone(plan.milestone_id), now)
        if txn.is_fully_released:
            for milestone in txn.unreleased_milestones():
                self._mark_milestone_released(milestone, now)
        return None

    @staticmethod
    def _mark_milestone_released(milestone: Milestone, now: datetime) -> None:
        milestone.status = MilestoneStatus.RELEASED
        milestone.released_at = now
        if milestone.approved_at is None:
            milestone.approved_at = now

    # ==================== MILESTONES ====================

    async def submit_milestone(self, transaction_id: str, principal: Principal, milestone_id: str) -> ServiceResult:
        """Seller submits a milestone's work for review."""
        ensure_active_principal(principal)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            if not txn.is_seller(principal.id):
                raise AuthorizationError("Only the seller can submit a milestone")
            check_transition(txn, TransactionEvent.RELEASE_MILESTONE)
            milestone = txn.find_milestone(milestone_id)
            if milestone.is_released:
                raise InvalidTransitionError(f"Milestone {milestone_id} is already released")

            milestone.status = MilestoneStatus.SUBMITTED
            milestone.submitted_at = self._now()
            txn = await self._commit(txn)

        self._notify(
            txn.buyer_id,
            'Milestone Submitted',
            f'Milestone "{milestone.title}" of "{txn.title}" was submitted for your review.',
            txn,
        )
        await self.audit.record(
            principal.id, 'milestone_submitted', 'transaction',
            metadata={'transaction_id': txn.id, 'milestone_id': milestone_id},
        )
        return ServiceResult(transaction=txn, message=f'Milestone "{milestone.title}" submitted for review.')

    async def approve_milestone(self, transaction_id: str, principal: Principal, milestone_id: str) -> ServiceResult:
        """Buyer approves a submitted milestone."""
        ensure_active_principal(principal)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            if not txn.is_buyer(principal.id):
                raise AuthorizationError("Only the buyer can approve a milestone")
            check_transition(txn, TransactionEvent.RELEASE_MILESTONE)
            milestone = txn.find_milestone(milestone_id)
            if milestone.status != MilestoneStatus.SUBMITTED:
                raise InvalidTransitionError(
                    f"Milestone must be submitted before approval (status: {milestone.status.value})"
                )

            milestone.status = MilestoneStatus.APPROVED
            milestone.approved_at = self._now()
            milestone.approved_by = principal.id
            txn = await self._commit(txn)

        self._notify(
            txn.seller_id,
            'Milestone Approved',
            f'Milestone "{milestone.title}" of "{txn.title}" was approved.',
            txn,
        )
        await self.audit.record(
            principal.id, 'milestone_approved', 'transaction',
            metadata={'transaction_id': txn.id, 'milestone_id': milestone_id},
        )
        return ServiceResult(transaction=txn, message=f'Milestone "{milestone.title}" approved.')

    async def add_milestone_note(
        self,
        transaction_id: str,
        principal: Principal,
        milestone_id: str,
        content: str
    ) -> ServiceResult:
        ensure_active_principal(principal)
        if not content or not content.strip():
            raise ValidationError("Note content is required")
        if len(content) > MAX_NOTE_LENGTH:
            raise ValidationError(f"Note cannot exceed {MAX_NOTE_LENGTH} characters")
        content = sanitize_input(content, MAX_NOTE_LENGTH)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            ensure_party(txn, principal)
            milestone = txn.find_milestone(milestone_id)
            milestone.notes.append(
                MilestoneNote(content=content, author_id=principal.id, created_at=self._now())
            )
            txn = await self._commit(txn)

        self._notify(
            txn.counterparty_of(principal.id),
            'Milestone Note',
            f'New note on milestone "{milestone.title}": {content}',
            txn,
        )
        return ServiceResult(transaction=txn, message="Note added.")

    async def toggle_deliverable(
        self,
        transaction_id: str,
        principal: Principal,
        milestone_id: str,
        deliverable_id: str
    ) -> ServiceResult:
        ensure_active_principal(principal)

        async with self._lock_for(transaction_id):
            txn = await self._load(transaction_id)
            ensure_party(txn, principal)
            milestone = txn.find_milestone(milestone_id)
            deliverable = milestone.find_deliverable(deliverable_id)

            deliverable.completed = not deliverable.completed
            if deliverable.completed:
                deliverable.completed_at = self._now()
                deliverable.completed_by = principal.id
                if milestone.status == MilestoneStatus.PENDING:
                    milestone.status = MilestoneStatus.IN_PROGRESS
            else:
                deliverable.completed_at = None
                deliverable.completed_by = None
            txn = await self._commit(txn)

        state = 'completed' if deliverable.completed else 'reopened'
        return ServiceResult(transaction=txn, message=f'Deliverable "{deliverable.title}" {state}.')

    # ==================== QUERIES ====================

    async def get_transaction(self, transaction_id: str, requester: Principal) -> Transaction:
        txn = await self._load(transaction_id)
        if not (txn.is_party(requester.id) or requester.is_admin):
            raise AuthorizationError("Not authorized to view this transaction")
        return txn

    async def list_user_transactions(
        self,
        principal: Principal,
        status: Optional[str] = None
    ) -> List[Transaction]:
        if status is not None:
            try:
                status = TransactionStatus(status).value
            except ValueError as e:
                raise ValidationError(f"Unknown status: {status}") from e
        return await self.store.list_user_transactions(principal.id, status)

    async def get_transaction_stats(self, principal: Principal) -> Dict[str, Any]:
        return await self.store.get_transaction_stats(principal.id)

    async def get_audit_log(self, transaction_id: str, requester: Principal) -> List[AuditEntry]:
        """Latest 100 audit records for a transaction, newest first."""
        txn = await self._load(transaction_id)
        if not (txn.is_party(requester.id) or requester.is_admin):
            raise AuthorizationError("Not authorized to view this audit log")
        return await self.store.list_audit(transaction_id, 100)

    # ==================== AGREEMENTS ====================

    async def get_agreement(self, transaction_id: str, principal: Principal) -> Dict[str, Any]:
        txn = await self._load(transaction_id)
        if not (txn.is_party(principal.id) or principal.is_admin):
            raise AuthorizationError("Not authorized to view this agreement")
        agreement = await self.store.get_active_agreement(transaction_id)
        return {
            'agreement': agreement,
            'has_accepted': bool(agreement and agreement.has_accepted(principal.id)),
        }

    async def create_agreement(
        self,
        transaction_id: str,
        principal: Principal,
        terms: str,
        title: Optional[str] = None
    ) -> Agreement:
        """Publish a new agreement version; the creator accepts it implicitly."""
        ensure_active_principal(principal)
        if not terms or not terms.strip():
            raise ValidationError("Agreement terms are required")
        if len(terms) > MAX_AGREEMENT_TERMS_LENGTH:
            raise ValidationError(f"Agreement terms cannot exceed {MAX_AGREEMENT_TERMS_LENGTH} characters")

        txn = await self._load(transaction_id)
        ensure_party(txn, principal)
        if txn.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Cannot change the agreement of a {txn.status.value} transaction")

        agreement = await self.store.create_agreement_version(
            transaction_id,
            sanitize_input(title, MAX_TITLE_LENGTH) or 'Transaction Agreement',
            terms,
            principal.id,
            self._now(),
        )

        self._notify(
            txn.counterparty_of(principal.id),
            'Agreement Updated',
            f'Version {agreement.version} of the agreement for "{txn.title}" needs your acceptance.',
            txn,
        )
        await self.audit.record(
            principal.id, 'agreement_created', 'transaction',
            metadata={'transaction_id': txn.id, 'version': agreement.version},
        )
        return agreement

    async def accept_agreement(self, transaction_id: str, principal: Principal) -> Agreement:
        ensure_active_principal(principal)
        txn = await self._load(transaction_id)
        ensure_party(txn, principal)

        agreement = await self.store.get_active_agreement(transaction_id)
        if agreement is None:
            raise ValidationError("No active agreement for this transaction")
        if agreement.has_accepted(principal.id):
            raise ValidationError("You have already accepted this agreement")

        if not await self.store.add_agreement_acceptance(agreement.id, principal.id, self._now()):
            raise ValidationError("You have already accepted this agreement")

        agreement = await self.store.get_active_agreement(transaction_id)

        self._notify(
            txn.counterparty_of(principal.id),
            'Agreement Accepted',
            f'The agreement for "{txn.title}" (version {agreement.version}) was accepted.',
            txn,
        )
        await self.audit.record(
            principal.id, 'agreement_accepted', 'transaction',
            metadata={'transaction_id': txn.id, 'version': agreement.version},
        )
        return agreement

    # ==================== ACCOUNT ====================

    async def delete_account(self, principal: Principal) -> bool:
        """
        Delete a user's record unless they are party to a live transaction.

        Raises:
            ValidationError: While any transaction is accepted, funded,
                delivered or disputed
        """
        if await self.store.has_active_transactions(principal.id):
            raise ValidationError(
                "Cannot delete account with active transactions. Complete or cancel them first."
            )

        deleted = await self.store.delete_user(principal.id)
        await self.audit.record(
            principal.id, 'account_deleted', 'user',
            status='success' if deleted else 'failure',
        )
        return deleted

    # ==================== AUTO-RELEASE ====================

    async def get_auto_release_candidates(self, limit: int = 100) -> List[str]:
        return await self.store.get_auto_release_candidates(self._now(), limit)


class _NotEligible(EscrowError):
    """A scheduled action no longer applies to the transaction."""
    pass


# Singleton instance management
_escrow_service_instance: Optional[EscrowService] = None


async def get_escrow_service(
    store=None,
    config: Optional[Any] = None,
    notifier: Optional[NotificationDispatcher] = None
) -> EscrowService:
    """
    Get or create the escrow service singleton instance.

    Args:
        store: Connected EscrowDatabase (created from config when omitted)
        config: Config instance (optional)
        notifier: NotificationDispatcher (optional, created without a bot)

    Returns:
        EscrowService instance
    """
    global _escrow_service_instance

    if _escrow_service_instance is None:
        from config import get_config
        from payment_processor import PaymentProcessorClient

        config = config or get_config()
        if store is None:
            from escrow_database import create_escrow_db
            store = await create_escrow_db(
                config.database_url, config.db_pool_min_size, config.db_pool_max_size
            )

        processor = PaymentProcessorClient(
            config.processor_api_key,
            api_base=config.processor_api_base,
            timeout=config.api_timeout,
        )
        notifier = notifier or NotificationDispatcher(
            store, max_attempts=config.notification_max_attempts
        )
        _escrow_service_instance = EscrowService(
            store,
            FundSettlementService(processor),
            notifier,
            default_settings=config.escrow_settings,
        )

    return _escrow_service_instance


def reset_escrow_service() -> None:
    """Drop the singleton (used on shutdown and in tests)."""
    global _escrow_service_instance
    _escrow_service_instance = None
