"""
Payment Processor Integration Service.

This module provides a thin client for the card payment processor's REST
API used to fund, pay out and refund escrow transactions, plus webhook
signature verification.

Features:
    - Payment intent creation, retrieval and cancellation
    - Charge retrieval with the expanded balance transaction (settlement
      currency and exchange rate)
    - Transfers to connected payout accounts with idempotency keys
    - Refunds against the original payment intent
    - Automatic retry logic for network failures
    - Error classification into retryable and terminal failures

Example:
    >>> client = PaymentProcessorClient(api_key="sk_test_...")
    >>> intent = client.create_payment_intent(
    ...     amount_minor=100000,
    ...     currency="npr",
    ...     metadata={"transaction_id": "abc"},
    ...     transfer_group="abc"
    ... )
    >>> print(intent["id"])
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Dict, Optional, Any, List, Tuple
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from utils import mask_sensitive_data

logger = logging.getLogger(__name__)

# Constants
MAX_RETRIES = 3
RETRY_DELAY = 2
DEFAULT_API_BASE = 'https://api.stripe.com/v1'
SIGNATURE_SCHEME = 'v1'
RETRYABLE_STATUS_CODES = [408, 429, 500, 502, 503, 504]


class ExternalProcessorError(Exception):
    """Base exception for payment processor related errors."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class RetryableProcessorError(ExternalProcessorError):
    """Raised for network failures, timeouts, rate limits and 5xx responses."""
    pass


class TerminalProcessorError(ExternalProcessorError):
    """Raised when the processor rejects a request; retrying will not help."""
    pass


class WebhookSignatureError(ExternalProcessorError):
    """Raised when a webhook payload fails signature verification."""
    pass


def _get_session_with_retry() -> requests.Session:
    """
    Create a requests session with automatic retry logic.

    Configures retry strategy for handling transient network errors,
    connection issues, and server errors. POST is retried because every
    money-moving request carries an idempotency key.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=MAX_RETRIES,
        backoff_factor=RETRY_DELAY,
        status_forcelist=RETRYABLE_STATUS_CODES,
        allowed_methods=["GET", "POST"],
        raise_on_status=False
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


def _flatten_params(params: Dict[str, Any], prefix: str = '') -> List[Tuple[str, str]]:
    """
    Encode nested dicts and lists in the processor's form convention.

    ``{"metadata": {"a": 1}, "expand": ["x"]}`` becomes
    ``[("metadata[a]", "1"), ("expand[]", "x")]``.
    """
    pairs: List[Tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else key
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(_flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for item in value:
                pairs.append((f"{name}[]", str(item)))
        elif isinstance(value, bool):
            pairs.append((name, 'true' if value else 'false'))
        else:
            pairs.append((name, str(value)))
    return pairs


class PaymentProcessorClient:
    """
    Synchronous REST client for the payment processor.

    The escrow services call these methods through ``asyncio.to_thread`` so
    the event loop is never blocked by network I/O.

    Attributes:
        api_base: Base URL of the processor API
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        api_key: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: int = 30,
        session: Optional[requests.Session] = None
    ):
        if not api_key:
            raise ValueError("Payment processor API key is required")
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.session = session or _get_session_with_retry()

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Perform an API call and return the decoded JSON body.

        Raises:
            RetryableProcessorError: Network failure or retryable status
            TerminalProcessorError: Request rejected by the processor
        """
        url = f"{self.api_base}/{path.lstrip('/')}"
        headers = {'Authorization': f'Bearer {self.api_key}'}
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key

        encoded = _flatten_params(params or {})

        logger.debug(f"{method} {path} params={encoded}")

        try:
            if method == 'GET':
                response = self.session.get(url, params=encoded, headers=headers, timeout=self.timeout)
            else:
                response = self.session.post(url, data=encoded, headers=headers, timeout=self.timeout)

        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error calling {path}: {e}")
            raise RetryableProcessorError(f"Connection error: {e}") from e

        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout calling {path}: {e}")
            raise RetryableProcessorError(f"Request timeout: {e}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Request error calling {path}: {e}")
            raise RetryableProcessorError(f"Request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            error = body.get('error', {}) if isinstance(body, dict) else {}
            message = error.get('message') or response.text or 'Unknown error'
            code = error.get('code')
            logger.error(f"Processor rejected {method} {path}: {response.status_code} - {message}")
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise RetryableProcessorError(message, response.status_code, code)
            raise TerminalProcessorError(message, response.status_code, code)

        return body

    # ==================== PAYMENT INTENTS ====================

    def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a card payment intent for ``amount_minor`` in ``currency``."""
        if amount_minor < 1:
            raise ValueError("Amount must be at least 1 minor unit")

        intent = self._request('POST', 'payment_intents', {
            'amount': amount_minor,
            'currency': currency,
            'payment_method_types': ['card'],
            'metadata': metadata,
            'transfer_group': transfer_group,
        }, idempotency_key=idempotency_key)

        logger.info(f"Payment intent created: {intent.get('id')} ({amount_minor} {currency})")
        return intent

    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return self._request('GET', f'payment_intents/{payment_intent_id}')

    def cancel_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        intent = self._request('POST', f'payment_intents/{payment_intent_id}/cancel')
        logger.info(f"Payment intent cancelled: {payment_intent_id}")
        return intent

    # ==================== CHARGES ====================

    def retrieve_charge(self, charge_id: str) -> Dict[str, Any]:
        """Retrieve a charge with its balance transaction expanded."""
        return self._request('GET', f'charges/{charge_id}', {'expand': ['balance_transaction']})

    # ==================== TRANSFERS & REFUNDS ====================

    def create_transfer(
        self,
        amount_minor: int,
        currency: str,
        destination: str,
        source_transaction: Optional[str] = None,
        transfer_group: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Pay out funds to a connected account.

        Args:
            amount_minor: Amount in minor units of ``currency``
            currency: Currency the transfer is made in
            destination: Connected payout account id
            source_transaction: Charge the funds originate from
            transfer_group: Grouping key, the escrow transaction id
            metadata: Free-form metadata stored on the transfer
            idempotency_key: Deduplicates retried transfers
        """
        if amount_minor < 1:
            raise ValueError("Transfer amount must be at least 1 minor unit")

        transfer = self._request('POST', 'transfers', {
            'amount': amount_minor,
            'currency': currency,
            'destination': destination,
            'source_transaction': source_transaction,
            'transfer_group': transfer_group,
            'metadata': metadata,
        }, idempotency_key=idempotency_key)

        logger.info(
            f"Transfer created: {transfer.get('id')} - "
            f"{amount_minor} {currency} to {mask_sensitive_data(destination)}"
        )
        return transfer

    def create_refund(
        self,
        payment_intent_id: str,
        amount_minor: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Refund a captured payment intent, fully or up to ``amount_minor``."""
        refund = self._request('POST', 'refunds', {
            'payment_intent': payment_intent_id,
            'amount': amount_minor,
            'metadata': metadata,
        }, idempotency_key=idempotency_key)

        logger.info(f"Refund created: {refund.get('id')} for {payment_intent_id}")
        return refund


# ==================== WEBHOOKS ====================

def compute_webhook_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode('utf-8') + payload
    return hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None
) -> Dict[str, Any]:
    """
    Verify a webhook payload and return the decoded event.

    The header has the form ``t=<unix ts>,v1=<hex hmac>[,v1=...]``; the
    HMAC-SHA256 is computed over ``"<ts>." + payload``.

    Raises:
        WebhookSignatureError: If the header is missing, malformed, stale,
            or no signature matches
    """
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")

    timestamp: Optional[int] = None
    signatures: List[str] = []
    for part in signature_header.split(','):
        key, _, value = part.strip().partition('=')
        if key == 't':
            try:
                timestamp = int(value)
            except ValueError as e:
                raise WebhookSignatureError("Malformed signature timestamp") from e
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Signature header has no timestamp or signature")

    current = time.time() if now is None else now
    if tolerance and abs(current - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_webhook_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("No matching signature found")

    try:
        return json.loads(payload.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookSignatureError(f"Invalid webhook payload: {e}") from e
