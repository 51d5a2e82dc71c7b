import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import ServiceError
from app.core.middleware import AuthContext, get_current_user
from app.services.payment_reconciler import PaymentReconciler
from app.services.subscription_service import SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_payment_reconciler() -> PaymentReconciler:
    """Dependency to get payment reconciler instance"""
    return PaymentReconciler()


def get_subscription_service() -> SubscriptionService:
    return SubscriptionService()


class VerifyPaymentRequest(BaseModel):
    token: str


class CheckoutRequest(BaseModel):
    plan_id: str


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler)
):
    """
    Payment processor webhook.
    Always answers 200 so the processor stops retrying; failures are logged.
    """
    logger.info("payment_webhook: Entry")

    try:
        payload = await request.json()
    except Exception as e:
        logger.warning(f"payment_webhook: Unreadable payload - {e}")
        return {"success": True, "message": "Webhook received but payload was unreadable", "transactionId": None}

    try:
        result = reconciler.handle_webhook(db, payload)
    except Exception as e:
        logger.error(f"payment_webhook: Failure - {e}")
        return {"success": True, "message": "Webhook received, processing failed", "transactionId": None}

    logger.info(f"payment_webhook: Success - {result['message']}")
    return result


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Verify a checkout token with the processor after the user returns from payment.
    Requires authentication.
    """
    logger.info(f"verify_payment: Entry - user: {current_user.uid}")

    try:
        subscription_service.ensure_user(db, current_user)
        result = await reconciler.verify(db, request.token, current_user)
        logger.info(f"verify_payment: Success - user: {current_user.uid}, status: {result['status']}")
        return result
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"verify_payment: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
    subscription_service: SubscriptionService = Depends(get_subscription_service)
):
    """
    Start a checkout for a plan and return the processor's payment URL.
    Requires authentication.
    """
    logger.info(f"create_checkout: Entry - user: {current_user.uid}, plan: {request.plan_id}")

    try:
        subscription_service.ensure_user(db, current_user)
        subscription_service.seed_plans_if_empty(db)
        result = await reconciler.create_checkout(db, current_user, request.plan_id)
        logger.info(f"create_checkout: Success - user: {current_user.uid}")
        return result
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"create_checkout: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
