"""
Tests for the escrow domain model: state machine guards, money helpers and
record round trips.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from escrow_models import (
    Transaction, TransactionStatus, TransactionEvent, Milestone, MilestoneStatus, Dispute,
    PendingSettlement, SettlementKind, Principal, UserRole,
    AuthorizationError, InvalidTransitionError, ValidationError,
    ALLOWED_STATUSES, TERMINAL_STATUSES,
    check_transition, ensure_can_accept, ensure_can_cancel, ensure_can_resolve,
    ensure_nothing_in_flight, to_money, to_minor_units, from_minor_units, amounts_match,
)


START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
BUYER = Principal(id='buyer-1', email='buyer@example.com')
SELLER = Principal(id='seller-1', email='seller@example.com')
ADMIN = Principal(id='admin-1', role=UserRole.ADMIN)


def make_txn(status=TransactionStatus.PENDING, **kwargs) -> Transaction:
    fields = dict(
        id='txn-1',
        title='Logo design',
        amount=Decimal('1000.00'),
        buyer_id='buyer-1',
        seller_id='seller-1',
        seller_email='seller@example.com',
        initiated_by='buyer-1',
        status=status,
        created_at=START,
    )
    fields.update(kwargs)
    return Transaction(**fields)


class TestMoney:

    def test_to_money_quantizes(self):
        assert to_money('10.005') == Decimal('10.01')
        assert to_money(0.1) == Decimal('0.10')
        assert to_money(7) == Decimal('7.00')

    def test_minor_units(self):
        assert to_minor_units(Decimal('975.00')) == 97500
        assert to_minor_units(Decimal('0.3')) == 30
        assert from_minor_units(58500) == Decimal('585.00')

    def test_amounts_match_within_a_cent(self):
        assert amounts_match(Decimal('999.999'), Decimal('1000'))
        assert not amounts_match(Decimal('999.98'), Decimal('1000'))


class TestStateMachine:

    @pytest.mark.parametrize('event, status', [
        (TransactionEvent.ACCEPT, TransactionStatus.PENDING),
        (TransactionEvent.FUND, TransactionStatus.ACCEPTED),
        (TransactionEvent.DELIVER, TransactionStatus.FUNDED),
        (TransactionEvent.RELEASE, TransactionStatus.DELIVERED),
        (TransactionEvent.RELEASE_MILESTONE, TransactionStatus.FUNDED),
        (TransactionEvent.DISPUTE, TransactionStatus.DELIVERED),
        (TransactionEvent.RESOLVE, TransactionStatus.DISPUTED),
        (TransactionEvent.CANCEL, TransactionStatus.ACCEPTED),
    ])
    def test_allowed_transitions(self, event, status):
        check_transition(make_txn(status), event)

    @pytest.mark.parametrize('status', sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_statuses_allow_nothing(self, status):
        for event in TransactionEvent:
            with pytest.raises(InvalidTransitionError):
                check_transition(make_txn(status), event)

    def test_release_from_funded_is_rejected(self):
        with pytest.raises(InvalidTransitionError, match="status is 'funded'"):
            check_transition(make_txn(TransactionStatus.FUNDED), TransactionEvent.RELEASE)

    def test_disputed_blocks_release_and_cancel(self):
        disputed = make_txn(TransactionStatus.DISPUTED)
        assert TransactionStatus.DISPUTED not in ALLOWED_STATUSES[TransactionEvent.RELEASE]
        with pytest.raises(InvalidTransitionError):
            ensure_can_cancel(disputed, BUYER)


class TestGuards:

    def test_accept_by_invited_email(self):
        txn = make_txn(seller_id=None, seller_email='NEW@example.com')
        ensure_can_accept(txn, Principal(id='new-1', email='new@example.com'))

        with pytest.raises(AuthorizationError):
            ensure_can_accept(txn, Principal(id='other', email='other@example.com'))

    def test_initiator_cannot_accept(self):
        with pytest.raises(AuthorizationError):
            ensure_can_accept(make_txn(), BUYER)

    def test_seller_initiated_is_accepted_by_buyer(self):
        txn = make_txn(initiated_by='seller-1')
        ensure_can_accept(txn, BUYER)
        with pytest.raises(AuthorizationError):
            ensure_can_accept(txn, SELLER)

    def test_resolve_requires_admin_and_open_dispute(self):
        txn = make_txn(TransactionStatus.DISPUTED, dispute=Dispute(reason='Broken', raised_by='buyer-1'))
        with pytest.raises(AuthorizationError):
            ensure_can_resolve(txn, BUYER)
        ensure_can_resolve(txn, ADMIN)

        txn.dispute = None
        with pytest.raises(InvalidTransitionError):
            ensure_can_resolve(txn, ADMIN)

    def test_fresh_reservation_blocks_until_stale(self):
        txn = make_txn(TransactionStatus.DELIVERED)
        txn.pending_settlement = PendingSettlement(
            kind=SettlementKind.TRANSFER,
            amount=Decimal('1000.00'),
            idempotency_key='txn-1:transfer:0:100000',
            reserved_at=START,
            reserved_by='buyer-1',
        )

        with pytest.raises(InvalidTransitionError, match="already in progress"):
            ensure_nothing_in_flight(txn, START + timedelta(minutes=14), 15)
        ensure_nothing_in_flight(txn, START + timedelta(minutes=16), 15)


class TestTransaction:

    def test_remaining_and_fully_released(self):
        txn = make_txn(TransactionStatus.FUNDED, amount_released=Decimal('600.00'))
        assert txn.remaining_amount == Decimal('400.00')
        assert not txn.is_fully_released

        txn.amount_released = Decimal('1000.00')
        assert txn.is_fully_released

    def test_counterparty(self):
        txn = make_txn()
        assert txn.counterparty_of('buyer-1') == 'seller-1'
        assert txn.counterparty_of('seller-1') == 'buyer-1'
        assert txn.counterparty_of('someone') is None

    def test_unknown_milestone(self):
        with pytest.raises(ValidationError):
            make_txn().find_milestone('nope')

    def test_record_round_trip_keeps_nested_state(self):
        milestone = Milestone(title='Concepts', amount=Decimal('600.00'), status=MilestoneStatus.RELEASED)
        txn = make_txn(
            TransactionStatus.DISPUTED,
            milestones=[milestone, Milestone(title='Final', amount=Decimal('400.00'))],
            dispute=Dispute(reason='Late', raised_by='buyer-1', created_at=START),
            amount_released=Decimal('600.00'),
            inspection_ends_at=START + timedelta(days=3),
            version=4,
        )
        txn.processor.transfer_ids.append('tr_1')
        txn.processor.unreconciled_transfer_ids.append('tr_2')
        txn.pending_settlement = PendingSettlement(
            kind=SettlementKind.REFUND,
            amount=Decimal('400.00'),
            idempotency_key='txn-1:refund:60000:40000',
            reserved_at=START,
            reserved_by='admin-1',
        )

        restored = Transaction.from_record(txn.to_record())

        assert restored.status == TransactionStatus.DISPUTED
        assert restored.milestones[0].status == MilestoneStatus.RELEASED
        assert [m.id for m in restored.milestones] == [m.id for m in txn.milestones]
        assert restored.dispute.raised_by == 'buyer-1'
        assert restored.processor.transfer_id == 'tr_1'
        assert restored.processor.unreconciled_transfer_ids == ['tr_2']
        assert restored.pending_settlement.kind == SettlementKind.REFUND
        assert restored.pending_settlement.reserved_at == START
        assert restored.inspection_ends_at == START + timedelta(days=3)
        assert restored.version == 4
