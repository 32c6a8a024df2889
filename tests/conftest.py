"""
Shared fixtures for the escrow settlement engine tests.

Provides an in-memory store with the same coroutine API as EscrowDatabase
(including optimistic version checks), a scripted payment processor
double, a controllable clock, and helpers that walk a transaction to a
given status.
"""

import copy
import dataclasses
import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from config import EscrowSettings
from escrow_models import (
    Agreement, AgreementAcceptance, AuditEntry, ConcurrentModificationError,
    Principal, Transaction, TransactionStatus, UserAccount, UserRole, ACTIVE_STATUSES,
)
from escrow_service import EscrowService
from notifications import NotificationDispatcher
from payment_processor import TerminalProcessorError
from settlement_service import FundSettlementService


START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemoryEscrowStore:
    """Dict-backed stand-in for EscrowDatabase."""

    def __init__(self):
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.users: Dict[str, UserAccount] = {}
        self.agreements: List[Agreement] = []
        self.audit: List[AuditEntry] = []
        self.notifications: List[Dict[str, Any]] = []
        self.settings: Dict[str, Any] = {}
        self.fail_settings = False
        self.fail_notifications = 0

    # ---- transactions ----

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        record = self.transactions.get(transaction_id)
        return Transaction.from_record(copy.deepcopy(record)) if record else None

    async def find_transaction_by_payment_intent(self, payment_intent_id: str) -> Optional[Transaction]:
        for record in self.transactions.values():
            if record['payment_intent_id'] == payment_intent_id:
                return Transaction.from_record(copy.deepcopy(record))
        return None

    async def insert_transaction(self, txn: Transaction) -> Transaction:
        self.transactions[txn.id] = copy.deepcopy(txn.to_record())
        return await self.get_transaction(txn.id)

    async def save_transaction(self, txn: Transaction, expected_version: int) -> Transaction:
        stored = self.transactions.get(txn.id)
        if stored is None or stored['version'] != expected_version:
            raise ConcurrentModificationError(
                f"Transaction {txn.id} was modified concurrently (expected version {expected_version})"
            )
        record = copy.deepcopy(txn.to_record())
        record['version'] = expected_version + 1
        self.transactions[txn.id] = record
        return await self.get_transaction(txn.id)

    async def list_user_transactions(self, user_id: str, status: Optional[str] = None, limit: int = 50):
        rows = [
            r for r in self.transactions.values()
            if user_id in (r['buyer_id'], r['seller_id']) and (status is None or r['status'] == status)
        ]
        rows.sort(key=lambda r: r['created_at'], reverse=True)
        return [Transaction.from_record(copy.deepcopy(r)) for r in rows[:limit]]

    async def get_transaction_stats(self, user_id: str) -> Dict[str, Any]:
        rows = [r for r in self.transactions.values() if user_id in (r['buyer_id'], r['seller_id'])]
        return {
            'total': len(rows),
            'total_amount': sum((r['amount'] for r in rows), Decimal('0')),
            'pending': sum(1 for r in rows if r['status'] in ('pending', 'accepted')),
            'completed': sum(1 for r in rows if r['status'] == 'completed'),
        }

    async def get_auto_release_candidates(self, now: datetime, limit: int = 100) -> List[str]:
        rows = [
            r for r in self.transactions.values()
            if r['status'] == TransactionStatus.DELIVERED.value
            and r['inspection_ends_at'] is not None
            and r['inspection_ends_at'] <= now
        ]
        rows.sort(key=lambda r: r['inspection_ends_at'])
        return [r['id'] for r in rows[:limit]]

    async def has_active_transactions(self, user_id: str) -> bool:
        active = {s.value for s in ACTIVE_STATUSES}
        return any(
            user_id in (r['buyer_id'], r['seller_id']) and r['status'] in active
            for r in self.transactions.values()
        )

    # ---- users ----

    def add_user(self, user: UserAccount) -> UserAccount:
        self.users[user.id] = user
        return user

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        user = self.users.get(user_id)
        return dataclasses.replace(user) if user else None

    async def find_user_by_email(self, email: str) -> Optional[UserAccount]:
        for user in self.users.values():
            if user.email.lower() == email.lower():
                return dataclasses.replace(user)
        return None

    async def adjust_trust_score(self, user_id: str, delta: int, counter: str, volume=Decimal('0')):
        user = self.users.get(user_id)
        if user is None:
            return None
        user.trust_score = max(0, min(100, user.trust_score + delta))
        setattr(user, counter, getattr(user, counter) + 1)
        user.total_volume += volume
        return user.trust_score

    async def set_payout_onboarded(self, payout_account_id: str) -> bool:
        for user in self.users.values():
            if user.payout_account_id == payout_account_id and not user.payout_onboarded:
                user.payout_onboarded = True
                return True
        return False

    async def delete_user(self, user_id: str) -> bool:
        return self.users.pop(user_id, None) is not None

    # ---- agreements ----

    async def get_active_agreement(self, transaction_id: str) -> Optional[Agreement]:
        for agreement in self.agreements:
            if agreement.transaction_id == transaction_id and agreement.is_active:
                return copy.deepcopy(agreement)
        return None

    async def create_agreement_version(self, transaction_id, title, terms, created_by, created_at):
        latest = 0
        for agreement in self.agreements:
            if agreement.transaction_id == transaction_id:
                latest = max(latest, agreement.version)
                agreement.is_active = False
        agreement = Agreement(
            transaction_id=transaction_id,
            version=latest + 1,
            terms=terms,
            created_by=created_by,
            title=title,
            accepted_by=[AgreementAcceptance(created_by, created_at)],
            created_at=created_at,
        )
        self.agreements.append(agreement)
        return copy.deepcopy(agreement)

    async def add_agreement_acceptance(self, agreement_id, user_id, accepted_at) -> bool:
        for agreement in self.agreements:
            if agreement.id == agreement_id:
                if agreement.has_accepted(user_id):
                    return False
                agreement.accepted_by.append(AgreementAcceptance(user_id, accepted_at))
                return True
        return False

    # ---- audit, settings, notifications ----

    async def append_audit(self, entry: AuditEntry) -> bool:
        self.audit.append(entry)
        return True

    async def list_audit(self, transaction_id: str, limit: int = 100) -> List[AuditEntry]:
        rows = [e for e in self.audit if e.transaction_id == transaction_id]
        return list(reversed(rows))[:limit]

    async def purge_audit(self, before: datetime) -> int:
        kept = [e for e in self.audit if e.created_at >= before]
        purged = len(self.audit) - len(kept)
        self.audit = kept
        return purged

    async def fetch_settings(self) -> Dict[str, Any]:
        if self.fail_settings:
            raise RuntimeError("settings table unavailable")
        return dict(self.settings)

    async def create_notification(self, recipient_id, title, body, category, metadata=None) -> bool:
        if self.fail_notifications:
            self.fail_notifications -= 1
            return False
        self.notifications.append({
            'recipient_id': recipient_id,
            'title': title,
            'body': body,
            'category': category,
            'metadata': metadata or {},
        })
        return True

    async def ping(self) -> bool:
        return True

    # ---- helpers ----

    def audit_actions(self, transaction_id: Optional[str] = None) -> List[str]:
        return [
            e.action for e in self.audit
            if transaction_id is None or e.transaction_id == transaction_id
        ]


class FakeProcessor:
    """
    Scripted payment processor.

    Mirrors the blocking PaymentProcessorClient API. Repeated calls with the
    same idempotency key return the original object, as the real API does.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.charges: Dict[str, Dict[str, Any]] = {}
        self.transfers: List[Dict[str, Any]] = []
        self.refunds: List[Dict[str, Any]] = []
        self.by_key: Dict[str, Dict[str, Any]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.settlement_currency: Optional[str] = None
        self.exchange_rate: Optional[str] = None

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _maybe_fail(self, method: str) -> None:
        self.calls.append(method)
        error = self.errors.pop(method, None)
        if error is not None:
            raise error

    def create_payment_intent(self, amount_minor, currency, metadata, transfer_group=None, idempotency_key=None):
        self._maybe_fail('create_payment_intent')
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        intent_id = self._next('pi')
        intent = {
            'id': intent_id,
            'amount': amount_minor,
            'currency': currency,
            'status': 'requires_payment_method',
            'client_secret': f'{intent_id}_secret',
            'metadata': dict(metadata),
            'latest_charge': None,
        }
        self.intents[intent_id] = intent
        if idempotency_key:
            self.by_key[idempotency_key] = intent
        return intent

    def succeed_intent(self, intent_id: str) -> Dict[str, Any]:
        """Simulate the buyer completing card payment."""
        intent = self.intents[intent_id]
        charge_id = self._next('ch')
        intent['status'] = 'succeeded'
        intent['latest_charge'] = charge_id
        self.charges[charge_id] = {
            'id': charge_id,
            'payment_intent': intent_id,
            'balance_transaction': {
                'currency': self.settlement_currency or intent['currency'],
                'exchange_rate': self.exchange_rate,
            },
        }
        return dict(intent)

    def retrieve_payment_intent(self, payment_intent_id):
        self._maybe_fail('retrieve_payment_intent')
        return dict(self.intents[payment_intent_id])

    def cancel_payment_intent(self, payment_intent_id):
        self._maybe_fail('cancel_payment_intent')
        self.intents[payment_intent_id]['status'] = 'canceled'
        return dict(self.intents[payment_intent_id])

    def retrieve_charge(self, charge_id):
        self._maybe_fail('retrieve_charge')
        if charge_id not in self.charges:
            raise TerminalProcessorError(f"No such charge: {charge_id}", 404)
        return copy.deepcopy(self.charges[charge_id])

    def create_transfer(self, amount_minor, currency, destination, source_transaction=None,
                        transfer_group=None, metadata=None, idempotency_key=None):
        self._maybe_fail('create_transfer')
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        transfer = {
            'id': self._next('tr'),
            'amount': amount_minor,
            'currency': currency,
            'destination': destination,
            'source_transaction': source_transaction,
            'transfer_group': transfer_group,
            'metadata': dict(metadata or {}),
            'idempotency_key': idempotency_key,
        }
        self.transfers.append(transfer)
        if idempotency_key:
            self.by_key[idempotency_key] = transfer
        return transfer

    def create_refund(self, payment_intent_id, amount_minor=None, metadata=None, idempotency_key=None):
        self._maybe_fail('create_refund')
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        refund = {
            'id': self._next('re'),
            'payment_intent': payment_intent_id,
            'amount': amount_minor if amount_minor is not None else self.intents[payment_intent_id]['amount'],
            'metadata': dict(metadata or {}),
            'idempotency_key': idempotency_key,
        }
        self.refunds.append(refund)
        if idempotency_key:
            self.by_key[idempotency_key] = refund
        return refund


# ==================== FIXTURES ====================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryEscrowStore()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def settings():
    return EscrowSettings()


@pytest.fixture
def notifier(store):
    return NotificationDispatcher(store, retry_delay=0)


@pytest.fixture
def service(store, processor, notifier, settings, clock):
    return EscrowService(
        store,
        FundSettlementService(processor),
        notifier,
        default_settings=settings,
        clock=clock,
    )


@pytest.fixture
def buyer(store) -> Principal:
    return store.add_user(UserAccount(id='buyer-1', email='buyer@example.com')).as_principal()


@pytest.fixture
def seller(store) -> Principal:
    return store.add_user(UserAccount(
        id='seller-1',
        email='seller@example.com',
        payout_account_id='acct_seller1',
        payout_onboarded=True,
    )).as_principal()


@pytest.fixture
def admin(store) -> Principal:
    return store.add_user(UserAccount(id='admin-1', email='admin@example.com', role=UserRole.ADMIN)).as_principal()


@pytest.fixture
def outsider(store) -> Principal:
    return store.add_user(UserAccount(id='outsider-1', email='outsider@example.com')).as_principal()


class EscrowFlow:
    """Drives a transaction through the happy path up to a requested status."""

    def __init__(self, service: EscrowService, processor: FakeProcessor, buyer: Principal, seller: Principal):
        self.service = service
        self.processor = processor
        self.buyer = buyer
        self.seller = seller

    async def create(self, amount='1000', **kwargs) -> Transaction:
        kwargs.setdefault('inspection_period_days', 3)
        result = await self.service.create_transaction(
            self.buyer, 'Logo design package', amount, self.seller.email, **kwargs
        )
        return result.transaction

    async def accepted(self, **kwargs) -> Transaction:
        txn = await self.create(**kwargs)
        return (await self.service.accept_transaction(txn.id, self.seller)).transaction

    async def pay(self, txn: Transaction) -> Transaction:
        result = await self.service.initiate_funding(txn.id, self.buyer)
        intent_id = result.details['payment_intent_id']
        self.processor.succeed_intent(intent_id)
        return (await self.service.confirm_payment(txn.id, self.buyer, intent_id)).transaction

    async def funded(self, **kwargs) -> Transaction:
        return await self.pay(await self.accepted(**kwargs))

    async def delivered(self, **kwargs) -> Transaction:
        txn = await self.funded(**kwargs)
        return (await self.service.mark_delivered(txn.id, self.seller)).transaction

    async def disputed(self, **kwargs) -> Transaction:
        txn = await self.delivered(**kwargs)
        return (await self.service.raise_dispute(txn.id, self.buyer, 'Item not as described')).transaction


@pytest.fixture
def flow(service, processor, buyer, seller):
    return EscrowFlow(service, processor, buyer, seller)
