import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.exceptions import InvalidRequestError, ServiceError
from app.core.middleware import AuthContext, require_admin
from app.services.subscription_service import (PlanConfiguration,
                                               serialize_subscription)
from app.services.subscription_state_machine import SubscriptionStateMachine

router = APIRouter()
logger = logging.getLogger(__name__)


def get_state_machine() -> SubscriptionStateMachine:
    """Dependency to get subscription state machine instance"""
    return SubscriptionStateMachine()


class PlanRequest(BaseModel):
    plan_id: str


def _parse_plan(plan_id: str):
    plan_tier = PlanConfiguration.parse_tier(plan_id)
    if plan_tier is None:
        raise InvalidRequestError(f"Unknown plan: {plan_id}")
    return plan_tier


def _internal_error(action: str, e: Exception) -> HTTPException:
    logger.error(f"{action}: Failure - {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(e)
    )


@router.post("/users/{user_id}/subscription")
async def activate_user_plan(
    user_id: str,
    request: PlanRequest,
    db: Session = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine)
):
    """Grant a plan to a user, replacing any live subscription"""
    logger.info(f"activate_user_plan: Entry - admin: {admin.uid}, user: {user_id}, plan: {request.plan_id}")

    try:
        result = state_machine.activate_plan(db, user_id, _parse_plan(request.plan_id))
        logger.info(f"activate_user_plan: Success - subscription: {result.subscription.id}")
        return {"success": True, "subscription": serialize_subscription(result.subscription)}
    except ServiceError:
        raise
    except Exception as e:
        raise _internal_error("activate_user_plan", e)


@router.delete("/users/{user_id}/subscription")
async def cancel_user_subscriptions(
    user_id: str,
    db: Session = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine)
):
    logger.info(f"cancel_user_subscriptions: Entry - admin: {admin.uid}, user: {user_id}")

    try:
        cancelled = state_machine.cancel_user_subscriptions(db, user_id)
        logger.info(f"cancel_user_subscriptions: Success - cancelled: {cancelled}")
        return {"success": True, "cancelled": cancelled}
    except ServiceError:
        raise
    except Exception as e:
        raise _internal_error("cancel_user_subscriptions", e)


@router.post("/subscriptions/expire")
async def expire_subscriptions(
    db: Session = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine)
):
    """Run the expiry sweep now"""
    logger.info(f"expire_subscriptions: Entry - admin: {admin.uid}")

    try:
        expired = state_machine.expire_overdue(db)
        logger.info(f"expire_subscriptions: Success - expired: {expired}")
        return {"success": True, "expired": expired}
    except Exception as e:
        raise _internal_error("expire_subscriptions", e)


@router.post("/subscriptions/{subscription_id}/renew")
async def renew_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine)
):
    logger.info(f"renew_subscription: Entry - admin: {admin.uid}, subscription: {subscription_id}")

    try:
        result = state_machine.renew(db, subscription_id)
        logger.info(f"renew_subscription: Success - end_date: {result.subscription.end_date}")
        return {"success": True, "subscription": serialize_subscription(result.subscription)}
    except ServiceError:
        raise
    except Exception as e:
        raise _internal_error("renew_subscription", e)


@router.patch("/subscriptions/{subscription_id}")
async def update_subscription_plan(
    subscription_id: str,
    request: PlanRequest,
    db: Session = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine)
):
    logger.info(f"update_subscription_plan: Entry - admin: {admin.uid}, subscription: {subscription_id}")

    try:
        result = state_machine.update_plan(db, subscription_id, _parse_plan(request.plan_id))
        logger.info(f"update_subscription_plan: Success - plan: {result.subscription.plan_tier.value}")
        return {"success": True, "subscription": serialize_subscription(result.subscription)}
    except ServiceError:
        raise
    except Exception as e:
        raise _internal_error("update_subscription_plan", e)


@router.post("/subscriptions/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    admin: AuthContext = Depends(require_admin),
    state_machine: SubscriptionStateMachine = Depends(get_state_machine)
):
    logger.info(f"cancel_subscription: Entry - admin: {admin.uid}, subscription: {subscription_id}")

    try:
        result = state_machine.cancel(db, subscription_id)
        logger.info(f"cancel_subscription: Success - subscription: {subscription_id}")
        return {"success": True, "subscription": serialize_subscription(result.subscription)}
    except ServiceError:
        raise
    except Exception as e:
        raise _internal_error("cancel_subscription", e)
