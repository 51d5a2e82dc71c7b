import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.middleware import AuthContext, get_current_user
from app.services.subscription_service import SubscriptionService

router = APIRouter()
logger = logging.getLogger(__name__)


def get_subscription_service() -> SubscriptionService:
    """Dependency to get subscription service instance"""
    return SubscriptionService()


@router.get("/plans")
async def get_plans(
    db: Session = Depends(get_db),
    subscription_service: SubscriptionService = Depends(
        get_subscription_service)
):
    """
    Get all available subscription plans.
    Public endpoint - no authentication required.
    """
    logger.info("get_plans: Entry")

    try:
        plans = subscription_service.get_all_plans(db)
        logger.info(f"get_plans: Success - {len(plans)} plans")
        return {"plans": plans}
    except Exception as e:
        logger.error(f"get_plans: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/current")
async def get_current_subscription(
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(
        get_subscription_service)
):
    """
    Get current user's subscription and cached subscription status.
    Requires authentication.
    """
    user_id = current_user.uid
    logger.info(f"get_current_subscription: Entry - user: {user_id}")

    try:
        subscription_service.ensure_user(db, current_user)
        subscription = subscription_service.get_current_subscription(db, user_id)
        logger.info(f"get_current_subscription: Success - user: {user_id}")
        return subscription
    except ValueError as e:
        logger.error(f"get_current_subscription: ValueError - {e}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except Exception as e:
        logger.error(f"get_current_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/history")
async def get_subscription_history(
    db: Session = Depends(get_db),
    current_user: AuthContext = Depends(get_current_user),
    subscription_service: SubscriptionService = Depends(
        get_subscription_service)
):
    """
    Get subscription history for current user.
    Requires authentication.
    """
    user_id = current_user.uid
    logger.info(f"get_subscription_history: Entry - user: {user_id}")

    try:
        history = subscription_service.get_subscription_history(db, user_id)
        logger.info(
            f"get_subscription_history: Success - user: {user_id}, count: {len(history)}")
        return {"history": history}
    except Exception as e:
        logger.error(f"get_subscription_history: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )
