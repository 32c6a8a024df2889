"""
Audit sink for escrow events.

Every state change, settlement attempt and reconciliation alert is written
to the append-only audit log. Writing is best effort: a failed write is
logged and never interrupts the operation that produced it.
"""

import logging
from typing import Optional, Dict, Any

from escrow_models import AuditEntry, utcnow

logger = logging.getLogger(__name__)

CATEGORIES = ('auth', 'payment', 'transaction', 'security', 'user', 'admin', 'system')
SEVERITIES = ('info', 'warning', 'error', 'critical')


class AuditTrail:
    """Writes audit records and raises operator alerts."""

    def __init__(self, store, notifier=None):
        self.store = store
        self.notifier = notifier

    async def record(
        self,
        actor_id: Optional[str],
        action: str,
        category: str = 'transaction',
        status: str = 'success',
        metadata: Optional[Dict[str, Any]] = None,
        severity: str = 'info',
        transaction_id: Optional[str] = None
    ) -> bool:
        if category not in CATEGORIES:
            logger.warning(f"Unknown audit category '{category}' for {action}, using 'system'")
            category = 'system'
        if severity not in SEVERITIES:
            severity = 'info'

        metadata = dict(metadata or {})
        if transaction_id is None:
            transaction_id = metadata.get('transaction_id')

        entry = AuditEntry(
            action=action,
            category=category,
            actor_id=actor_id,
            transaction_id=transaction_id,
            status=status,
            severity=severity,
            metadata={k: _jsonable(v) for k, v in metadata.items()},
            created_at=utcnow(),
        )

        try:
            written = await self.store.append_audit(entry)
        except Exception as e:
            logger.error(f"Failed to write audit record {action}: {e}")
            return False

        if not written:
            logger.error(f"Audit record {action} was not written")
        return bool(written)

    async def alert_reconciliation(
        self,
        transaction_id: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Raise an operator alert for external effects that diverged from local state.

        Logged at CRITICAL, written as a critical audit record, and pushed to
        the admin channel.
        """
        details = details or {}
        logger.critical(f"RECONCILIATION CONFLICT on {transaction_id}: {message} {details}")

        await self.record(
            actor_id='system',
            action='reconciliation_conflict',
            category='payment',
            status='failure',
            severity='critical',
            metadata={'transaction_id': transaction_id, 'message': message, **details},
        )

        if self.notifier is not None:
            self.notifier.notify_admins(
                'Reconciliation Conflict',
                f"Transaction {transaction_id}: {message}",
                category='alert',
                metadata={'transaction_id': transaction_id},
            )


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)
