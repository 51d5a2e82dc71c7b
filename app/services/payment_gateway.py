"""
Client for the MoneyFusion payment processor.

Only the fields this service consumes are modelled. Checkout sessions carry
our own identifiers in `personal_Info`, which the processor echoes back both
in webhooks and in status lookups.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import httpx

from app.core.config import settings
from app.core.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"
    NOT_PAID = "no paid"
    UNKNOWN = "unknown"


_STATUS_ALIASES = {
    'paid': PaymentStatus.PAID,
    'pending': PaymentStatus.PENDING,
    'failure': PaymentStatus.FAILED,
    'failed': PaymentStatus.FAILED,
    'no paid': PaymentStatus.NOT_PAID,
}


@dataclass
class PaymentInfo:
    """Our identifiers as echoed back by the processor"""
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None
    user_email: Optional[str] = None


@dataclass
class PaymentStatusResult:
    status: PaymentStatus
    transaction_id: Optional[str] = None
    amount: Optional[float] = None
    info: PaymentInfo = field(default_factory=PaymentInfo)


@dataclass
class CheckoutResult:
    token: str
    url: str
    message: Optional[str] = None


def parse_payment_info(personal_info) -> PaymentInfo:
    """Extract the first `personal_Info` entry; tolerant of missing or malformed data"""
    if not isinstance(personal_info, list) or not personal_info:
        return PaymentInfo()
    entry = personal_info[0]
    if not isinstance(entry, dict):
        return PaymentInfo()

    user_id = entry.get('userId')
    return PaymentInfo(
        user_id=str(user_id) if user_id not in (None, '') else None,
        plan_id=entry.get('planId'),
        plan_name=entry.get('planName'),
        user_email=entry.get('userEmail'),
    )


def parse_amount(value) -> Optional[float]:
    if value in (None, ''):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class PaymentGateway:
    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.payment_verify_timeout_seconds
        self.logger = logging.getLogger(__name__)

    async def check_payment_status(self, token: str) -> PaymentStatusResult:
        """
        Ask the processor for the state of a checkout.

        Never raises for transport problems: a timeout or network error means
        we do not know yet, which is reported as PENDING so the caller retries
        instead of telling the user the payment failed.
        """
        self.logger.info(f"check_payment_status: Entry - token: {token[:12]}...")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{settings.payment_status_url.rstrip('/')}/{token}")
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException:
            self.logger.warning("check_payment_status: Timeout - reporting pending")
            return PaymentStatusResult(status=PaymentStatus.PENDING)
        except (httpx.HTTPError, ValueError) as e:
            self.logger.warning(f"check_payment_status: Provider unavailable - {e}")
            return PaymentStatusResult(status=PaymentStatus.PENDING)

        data = body.get('data') if isinstance(body, dict) else None
        if not isinstance(data, dict) or not body.get('statut'):
            self.logger.info("check_payment_status: Success - unknown checkout")
            return PaymentStatusResult(status=PaymentStatus.UNKNOWN)

        raw_status = str(data.get('statut', '')).strip().lower()
        result = PaymentStatusResult(
            status=_STATUS_ALIASES.get(raw_status, PaymentStatus.UNKNOWN),
            transaction_id=data.get('numeroTransaction'),
            amount=parse_amount(data.get('Montant')),
            info=parse_payment_info(data.get('personal_Info')),
        )
        self.logger.info(f"check_payment_status: Success - status: {result.status.value}")
        return result

    async def create_checkout(
        self,
        amount: float,
        plan_id: str,
        plan_name: str,
        user_id: str,
        user_email: Optional[str] = None,
        client_name: Optional[str] = None,
    ) -> CheckoutResult:
        self.logger.info(f"create_checkout: Entry - user: {user_id}, plan: {plan_id}")

        payload = {
            'totalPrice': amount,
            'article': [{f"Abonnement {plan_name}": amount}],
            'personal_Info': [{
                'userId': user_id,
                'planId': plan_id,
                'planName': plan_name,
                'userEmail': user_email or '',
            }],
            'numeroSend': settings.payment_default_client_number,
            'nomclient': client_name or 'Subscriber',
            'return_url': settings.payment_return_url,
            'webhook_url': settings.webhook_url,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(settings.payment_checkout_url, json=payload)
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException:
            self.logger.error("create_checkout: Failure - provider timeout")
            raise PaymentProviderError("Payment provider timed out")
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error(f"create_checkout: Failure - {e}")
            raise PaymentProviderError("Payment provider unavailable")

        if not isinstance(body, dict):
            body = {}
        if not body.get('statut') or not body.get('url') or not body.get('token'):
            self.logger.error(f"create_checkout: Failure - rejected: {body.get('message')}")
            raise PaymentProviderError(body.get('message') or "Payment provider rejected the checkout")

        self.logger.info(f"create_checkout: Success - user: {user_id}")
        return CheckoutResult(token=body['token'], url=body['url'], message=body.get('message'))
