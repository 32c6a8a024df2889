"""
Fund Settlement Service

Moves money for escrow transactions through the payment processor:
funding intents, payouts to the seller (full or per milestone) and refunds
to the buyer. Fee arithmetic and currency correction live here.

This service performs the external call and reports what happened; the
orchestration layer decides when to call it and persists the outcome.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Optional, Dict, Any

from config import EscrowSettings
from escrow_models import (
    Transaction, UserAccount, SettlementKind,
    ValidationError, InvalidTransitionError, PayoutAccountMissing,
    to_money, to_minor_units, from_minor_units, amounts_match,
)
from payment_processor import PaymentProcessorClient, TerminalProcessorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeeBreakdown:
    platform_fee: Decimal
    processor_fee: Decimal


@dataclass(frozen=True)
class TransferOutcome:
    """Result of a payout to the seller."""
    transfer_id: str
    gross_amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    payout_amount_minor: int
    payout_currency: str
    charge_id: str
    converted: bool


@dataclass(frozen=True)
class RefundOutcome:
    refund_id: str
    amount: Decimal
    partial: bool


def compute_fees(amount: Decimal, settings: EscrowSettings) -> FeeBreakdown:
    """
    Compute the fees frozen on a transaction at funding time.

    Example:
        >>> compute_fees(Decimal('1000'), EscrowSettings())
        FeeBreakdown(platform_fee=Decimal('25.00'), processor_fee=Decimal('29.30'))
    """
    amount_minor = Decimal(to_minor_units(amount))
    platform_minor = (amount_minor * settings.platform_fee_percent / 100).to_integral_value(
        rounding=ROUND_HALF_UP
    )
    processor_minor = (
        amount_minor * settings.processor_fee_percent / 100
        + Decimal(to_minor_units(settings.processor_fee_fixed))
    ).to_integral_value(rounding=ROUND_HALF_UP)

    return FeeBreakdown(
        platform_fee=from_minor_units(int(platform_minor)),
        processor_fee=from_minor_units(int(processor_minor)),
    )


def platform_fee_share(txn: Transaction, amount: Decimal) -> Decimal:
    """
    Platform fee withheld from a payout of ``amount``.

    Partial payouts withhold a rounded pro-rata share. The payout that
    disburses the final remainder withholds whatever fee is still
    uncollected, so the total collected always equals the frozen fee.
    """
    total_fee = txn.fees.platform_fee
    if amounts_match(txn.amount_released + amount, txn.amount):
        return to_money(max(total_fee - txn.fees.platform_fee_collected, Decimal('0')))
    return to_money(to_money(amount) / txn.amount * total_fee)


def settlement_idempotency_key(txn: Transaction, kind: SettlementKind, amount: Decimal) -> str:
    """
    Deterministic key for an external money movement.

    The same logical settlement (same transaction, kind, amount already
    released and amount) always yields the same key, so a retried or
    taken-over settlement is deduplicated by the processor.
    """
    return (
        f"{txn.id}:{kind.value}:"
        f"{to_minor_units(txn.amount_released)}:{to_minor_units(amount)}"
    )


class FundSettlementService:
    """
    Executes settlement calls against the payment processor.

    Attributes:
        processor: Blocking processor client, invoked off the event loop
    """

    def __init__(self, processor: PaymentProcessorClient):
        self.processor = processor
        logger.info("FundSettlementService initialized successfully")

    async def _call(self, func, *args, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(func, *args, **kwargs)

    # ==================== FUNDING ====================

    async def create_funding(self, txn: Transaction) -> Dict[str, Any]:
        """
        Create the payment intent the buyer pays into escrow.

        Returns:
            The processor's payment intent object
        """
        return await self._call(
            self.processor.create_payment_intent,
            amount_minor=to_minor_units(txn.amount),
            currency=txn.currency,
            metadata={
                'transaction_id': txn.id,
                'buyer_id': txn.buyer_id,
                'seller_id': txn.seller_id or '',
            },
            transfer_group=txn.id,
            idempotency_key=f"{txn.id}:payment_intent",
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self._call(self.processor.retrieve_payment_intent, payment_intent_id)

    async def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self._call(self.processor.cancel_payment_intent, payment_intent_id)

    # ==================== PAYOUTS ====================

    async def _resolve_charge_id(self, txn: Transaction) -> str:
        charge_id = txn.processor.charge_id
        if not charge_id and txn.processor.payment_intent_id:
            intent = await self.retrieve_payment_intent(txn.processor.payment_intent_id)
            charge_id = intent.get('latest_charge')

        if not charge_id:
            raise TerminalProcessorError(
                f"No charge found for transaction {txn.id}. Funds might not have been captured."
            )
        return charge_id

    async def transfer_to_seller(
        self,
        txn: Transaction,
        seller: Optional[UserAccount],
        amount: Decimal,
        idempotency_key: str
    ) -> TransferOutcome:
        """
        Pay ``amount`` of the escrowed funds out to the seller.

        The pro-rated platform fee is withheld. When the captured funds
        settled in a different currency than the transaction, the net
        payout is converted with the balance record's exchange rate.

        Raises:
            PayoutAccountMissing: Seller has no payout account (no external call made)
            ValidationError: Amount is not positive or exceeds the undisbursed balance
            ExternalProcessorError: The processor call failed
        """
        if seller is None or not seller.payout_account_id:
            raise PayoutAccountMissing(
                f"Seller of transaction {txn.id} has no connected payout account"
            )

        amount = to_money(amount)
        if amount <= 0:
            raise ValidationError("Release amount must be positive")
        if amount > txn.remaining_amount:
            raise InvalidTransitionError(
                f"Release of {amount} exceeds undisbursed balance {txn.remaining_amount}"
            )

        charge_id = await self._resolve_charge_id(txn)
        charge = await self._call(self.processor.retrieve_charge, charge_id)

        balance = charge.get('balance_transaction') or {}
        if not isinstance(balance, dict):
            balance = {}
        source_currency = (balance.get('currency') or txn.currency).lower()
        transaction_currency = txn.currency.lower()

        fee = platform_fee_share(txn, amount)
        gross_minor = to_minor_units(amount)
        net_minor = gross_minor - to_minor_units(fee)
        payout_minor = net_minor
        payout_currency = transaction_currency
        converted = False

        if source_currency != transaction_currency:
            payout_currency = source_currency
            exchange_rate = balance.get('exchange_rate')
            if exchange_rate:
                payout_minor = int(
                    (Decimal(net_minor) * Decimal(str(exchange_rate))).to_integral_value(
                        rounding=ROUND_FLOOR
                    )
                )
                converted = True
                logger.info(
                    f"Converted payout for {txn.id}: {from_minor_units(net_minor)} "
                    f"{transaction_currency} -> {from_minor_units(payout_minor)} "
                    f"{source_currency} (rate {exchange_rate})"
                )
            else:
                logger.error(
                    f"No exchange rate on balance transaction for {txn.id} "
                    f"({transaction_currency} -> {source_currency}); "
                    f"attempting unconverted transfer"
                )

        if payout_minor < 1:
            raise ValidationError(f"Payout for {txn.id} is below one minor unit after fees")

        transfer = await self._call(
            self.processor.create_transfer,
            amount_minor=payout_minor,
            currency=payout_currency,
            destination=seller.payout_account_id,
            source_transaction=charge_id,
            transfer_group=txn.id,
            metadata={
                'transaction_id': txn.id,
                'is_partial': 'true' if amount < txn.amount else 'false',
                'original_currency': transaction_currency,
                'original_amount': str(amount),
            },
            idempotency_key=idempotency_key,
        )

        return TransferOutcome(
            transfer_id=transfer['id'],
            gross_amount=amount,
            platform_fee=fee,
            net_amount=from_minor_units(net_minor),
            payout_amount_minor=payout_minor,
            payout_currency=payout_currency,
            charge_id=charge_id,
            converted=converted,
        )

    # ==================== REFUNDS ====================

    async def refund_buyer(
        self,
        txn: Transaction,
        amount: Decimal,
        idempotency_key: str
    ) -> RefundOutcome:
        """
        Refund the buyer against the original capture.

        A full refund is issued when nothing has been paid out; otherwise
        only the undisbursed ``amount`` is refunded.
        """
        if not txn.processor.payment_intent_id:
            raise ValidationError(f"No payment intent found for transaction {txn.id}")

        amount = to_money(amount)
        partial = amount < txn.amount

        refund = await self._call(
            self.processor.create_refund,
            payment_intent_id=txn.processor.payment_intent_id,
            amount_minor=to_minor_units(amount) if partial else None,
            metadata={'transaction_id': txn.id},
            idempotency_key=idempotency_key,
        )

        return RefundOutcome(refund_id=refund['id'], amount=amount, partial=partial)
