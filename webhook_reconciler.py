"""
Payment processor webhook reconciliation.

Turns verified processor events into escrow state changes. Events are
delivered at least once and in any order, so every handler is idempotent
and tolerates events for transactions that moved on.
"""

import logging
from typing import Optional, Dict, Any

from escrow_models import Transaction
from escrow_service import EscrowService
from audit_trail import AuditTrail

logger = logging.getLogger(__name__)


class WebhookReconciler:
    """
    Dispatches processor events to the escrow service.

    Handled event types:
        - payment_intent.succeeded: funds the transaction
        - payment_intent.payment_failed: recorded for the audit log
        - account.updated: marks a seller's payout account onboarded
    """

    def __init__(self, service: EscrowService, store, audit: Optional[AuditTrail] = None):
        self.service = service
        self.store = store
        self.audit = audit or service.audit
        self.handlers = {
            'payment_intent.succeeded': self._on_payment_succeeded,
            'payment_intent.payment_failed': self._on_payment_failed,
            'account.updated': self._on_account_updated,
        }

    async def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process one verified event.

        Returns:
            Dict with ``received`` and whether the event was ``handled``

        Raises:
            Exception: Processing failures propagate so the endpoint answers
                with a server error and the processor redelivers
        """
        event_type = event.get('type')
        event_id = event.get('id')
        handler = self.handlers.get(event_type)

        if handler is None:
            logger.debug(f"Ignoring webhook event {event_id} of type {event_type}")
            return {'received': True, 'handled': False}

        obj = (event.get('data') or {}).get('object') or {}
        logger.info(f"Processing webhook event {event_id} ({event_type})")
        await handler(obj)
        return {'received': True, 'handled': True}

    async def _find_transaction(self, intent: Dict[str, Any]) -> Optional[Transaction]:
        metadata = intent.get('metadata') or {}
        transaction_id = metadata.get('transaction_id')
        if transaction_id:
            txn = await self.store.get_transaction(transaction_id)
            if txn is not None:
                return txn
        if intent.get('id'):
            return await self.store.find_transaction_by_payment_intent(intent['id'])
        return None

    async def _on_payment_succeeded(self, intent: Dict[str, Any]) -> None:
        txn = await self._find_transaction(intent)
        if txn is None:
            logger.warning(f"No transaction for payment intent {intent.get('id')}")
            return

        funded = await self.service.mark_funded(txn.id, intent)
        if funded is None:
            logger.info(f"Payment intent {intent.get('id')} already reconciled for {txn.id}")

    async def _on_payment_failed(self, intent: Dict[str, Any]) -> None:
        error = intent.get('last_payment_error') or {}
        txn = await self._find_transaction(intent)
        transaction_id = txn.id if txn else None

        logger.warning(
            f"Payment failed for intent {intent.get('id')} "
            f"(transaction {transaction_id}): {error.get('message', 'unknown error')}"
        )
        await self.audit.record(
            txn.buyer_id if txn else None,
            'payment_failed',
            'payment',
            status='failure',
            severity='warning',
            metadata={
                'transaction_id': transaction_id,
                'payment_intent_id': intent.get('id'),
                'error': error.get('message'),
            },
        )

    async def _on_account_updated(self, account: Dict[str, Any]) -> None:
        if not (account.get('charges_enabled') and account.get('payouts_enabled')):
            return
        if await self.store.set_payout_onboarded(account['id']):
            logger.info(f"Payout account {account['id']} onboarded")
