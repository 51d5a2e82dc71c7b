"""
Subscription state machine.

`decide` is the pure transition table: given the current status of the
subscription an event targets (or None when no subscription exists for it)
and the event, it returns the action to perform. `SubscriptionStateMachine`
applies those actions to the database and is the only writer of
subscription status, validity window and the user's cached status.

    PENDING  -> ACTIVE     payment completed
    PENDING  -> CANCELLED  payment cancelled
    ACTIVE   -> ACTIVE     admin renew / admin plan change
    ACTIVE   -> CANCELLED  admin cancel
    ACTIVE   -> EXPIRED    expiry sweep

CANCELLED and EXPIRED are terminal. Payment events that do not match the
table are replays or stale deliveries and resolve to NOOP; administrative
events that do not match are rejected.
"""

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import InvalidTransitionError, NotFoundError, ServiceError
from app.models.plan import PlanTier
from app.models.subscription import (LIVE_STATUSES, Subscription,
                                     SubscriptionStatus)
from app.models.subscription_history import SubscriptionHistory
from app.models.user import User, UserSubscriptionStatus
from app.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)

# Concurrent writers on the same transaction id or user lose with an
# IntegrityError; the loser re-reads and normally resolves to NOOP.
_MAX_ATTEMPTS = 3


class SubscriptionEvent(str, Enum):
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_CANCELLED = "payment_cancelled"
    ADMIN_RENEW = "admin_renew"
    ADMIN_UPDATE_PLAN = "admin_update_plan"
    ADMIN_CANCEL = "admin_cancel"
    EXPIRE = "expire"


class TransitionAction(str, Enum):
    CREATE_PENDING = "create_pending"
    CREATE_ACTIVE = "create_active"
    ACTIVATE = "activate"
    CANCEL = "cancel"
    RENEW = "renew"
    CHANGE_PLAN = "change_plan"
    EXPIRE = "expire"
    NOOP = "noop"
    REJECT = "reject"


PAYMENT_EVENTS = frozenset({
    SubscriptionEvent.PAYMENT_PENDING,
    SubscriptionEvent.PAYMENT_COMPLETED,
    SubscriptionEvent.PAYMENT_CANCELLED,
})

_TRANSITIONS = {
    (None, SubscriptionEvent.PAYMENT_PENDING): TransitionAction.CREATE_PENDING,
    (None, SubscriptionEvent.PAYMENT_COMPLETED): TransitionAction.CREATE_ACTIVE,
    (SubscriptionStatus.PENDING, SubscriptionEvent.PAYMENT_COMPLETED): TransitionAction.ACTIVATE,
    (SubscriptionStatus.PENDING, SubscriptionEvent.PAYMENT_CANCELLED): TransitionAction.CANCEL,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.ADMIN_RENEW): TransitionAction.RENEW,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.ADMIN_UPDATE_PLAN): TransitionAction.CHANGE_PLAN,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.ADMIN_CANCEL): TransitionAction.CANCEL,
    (SubscriptionStatus.ACTIVE, SubscriptionEvent.EXPIRE): TransitionAction.EXPIRE,
}

_HISTORY_ACTIONS = {
    TransitionAction.CREATE_PENDING: "created",
    TransitionAction.CREATE_ACTIVE: "activated",
    TransitionAction.ACTIVATE: "activated",
    TransitionAction.CANCEL: "cancelled",
    TransitionAction.RENEW: "renewed",
    TransitionAction.CHANGE_PLAN: "plan_changed",
    TransitionAction.EXPIRE: "expired",
}


def decide(current: Optional[SubscriptionStatus], event: SubscriptionEvent) -> TransitionAction:
    """Return the action for `event` applied to a subscription in state `current`"""
    action = _TRANSITIONS.get((current, event))
    if action is not None:
        return action
    if event in PAYMENT_EVENTS:
        return TransitionAction.NOOP
    return TransitionAction.REJECT


@dataclass
class TransitionResult:
    subscription: Optional[Subscription]
    action: TransitionAction

    @property
    def applied(self) -> bool:
        return self.action not in (TransitionAction.NOOP, TransitionAction.REJECT)


class SubscriptionStateMachine:
    def __init__(self):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    # Payment events

    def apply_payment_event(
        self,
        db: Session,
        event: SubscriptionEvent,
        transaction_id: str,
        user_id: str,
        plan_tier: PlanTier,
        amount: Optional[float] = None,
        source: str = "webhook",
    ) -> TransitionResult:
        """
        Apply a payment event keyed by the processor's transaction id.

        Safe to call any number of times with the same arguments: replays
        resolve to NOOP and return the subscription already reflecting the
        event. Commits on success, rolls back on failure.
        """
        self.logger.info(
            f"apply_payment_event: Entry - event: {event.value}, txn: {transaction_id}, "
            f"user: {user_id}, source: {source}")

        if event not in PAYMENT_EVENTS:
            raise ValueError(f"Not a payment event: {event}")

        last_error = None
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                result = self._apply_payment_event(
                    db, event, transaction_id, user_id, plan_tier, amount, source)
                db.commit()
                if result.subscription is not None:
                    db.refresh(result.subscription)

                self.analytics.log_success(
                    action='apply_payment_event',
                    user_id=user_id,
                    parameters={
                        'event': event.value,
                        'transaction_id': transaction_id,
                        'result': result.action.value,
                        'source': source,
                    }
                )
                self.logger.info(
                    f"apply_payment_event: Success - txn: {transaction_id}, action: {result.action.value}")
                return result
            except IntegrityError as e:
                db.rollback()
                last_error = e
                self.logger.warning(
                    f"apply_payment_event: Concurrent write detected, retrying - txn: {transaction_id}, "
                    f"attempt: {attempt}")
            except ServiceError:
                db.rollback()
                raise
            except Exception as e:
                db.rollback()
                self.analytics.log_failure(
                    action='apply_payment_event',
                    error=str(e),
                    user_id=user_id,
                    parameters={'event': event.value, 'transaction_id': transaction_id}
                )
                self.logger.error(f"apply_payment_event: Failure - {e}")
                raise

        self.analytics.log_failure(
            action='apply_payment_event',
            error=str(last_error),
            user_id=user_id,
            parameters={'event': event.value, 'transaction_id': transaction_id}
        )
        self.logger.error(f"apply_payment_event: Failure after {_MAX_ATTEMPTS} attempts - {last_error}")
        raise last_error

    def _apply_payment_event(
        self,
        db: Session,
        event: SubscriptionEvent,
        transaction_id: str,
        user_id: str,
        plan_tier: PlanTier,
        amount: Optional[float],
        source: str,
    ) -> TransitionResult:
        existing = db.query(Subscription).filter(
            Subscription.external_transaction_id == transaction_id
        ).first()
        current = existing.status if existing else None
        action = decide(current, event)

        if action == TransitionAction.NOOP:
            self._log_noop(existing, event, transaction_id, user_id)
            return TransitionResult(existing, TransitionAction.NOOP)

        # The transaction id, not the event payload, decides whose subscription this is
        owner_id = existing.user_id if existing is not None else user_id
        user = self._get_user(db, owner_id)
        now = datetime.utcnow()

        if action in (TransitionAction.CREATE_PENDING, TransitionAction.CREATE_ACTIVE):
            self._supersede_live(db, owner_id, source, now)
            status = (SubscriptionStatus.ACTIVE if action == TransitionAction.CREATE_ACTIVE
                      else SubscriptionStatus.PENDING)
            subscription = Subscription(
                id=str(uuid.uuid4()),
                user_id=owner_id,
                plan_tier=plan_tier,
                status=status,
                external_transaction_id=transaction_id,
                amount=amount,
                start_date=now,
                end_date=now + self._period(),
                created_at=now,
                updated_at=now,
            )
            db.add(subscription)
            # Surfaces the unique transaction id / single live subscription constraints
            db.flush()
            self._record(db, subscription, action, source, None, status,
                         details={'transaction_id': transaction_id, 'amount': amount})
        elif action == TransitionAction.ACTIVATE:
            self._supersede_live(db, owner_id, source, now, exclude_id=existing.id)
            if not self._compare_and_set_status(
                    db, existing, SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, now):
                return TransitionResult(existing, TransitionAction.NOOP)
            if existing.amount is None and amount is not None:
                existing.amount = amount
            subscription = existing
            self._record(db, subscription, action, source, SubscriptionStatus.PENDING,
                         SubscriptionStatus.ACTIVE, details={'transaction_id': transaction_id})
        else:
            if not self._compare_and_set_status(
                    db, existing, SubscriptionStatus.PENDING, SubscriptionStatus.CANCELLED, now):
                return TransitionResult(existing, TransitionAction.NOOP)
            subscription = existing
            self._record(db, subscription, action, source, SubscriptionStatus.PENDING,
                         SubscriptionStatus.CANCELLED, details={'transaction_id': transaction_id})

        self._refresh_user_status(db, user, now)
        return TransitionResult(subscription, action)

    def _log_noop(self, existing, event, transaction_id, user_id):
        if existing is None:
            self.logger.info(
                f"apply_payment_event: No-op - no subscription for txn: {transaction_id}, event: {event.value}")
            return

        if existing.user_id != user_id:
            self.logger.warning(
                f"apply_payment_event: Transaction {transaction_id} belongs to user {existing.user_id}, "
                f"event carried user {user_id}")

        if (event == SubscriptionEvent.PAYMENT_COMPLETED
                and existing.status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)):
            # Paid for a subscription that is already terminal; needs a human
            self.analytics.log_inconsistency(
                kind='payment_on_terminal_subscription',
                user_id=existing.user_id,
                parameters={
                    'transaction_id': transaction_id,
                    'subscription_id': existing.id,
                    'status': existing.status.value,
                }
            )
            self.logger.error(
                f"apply_payment_event: Completed payment for {existing.status.value} subscription "
                f"{existing.id} (txn: {transaction_id})")
            return

        self.logger.info(
            f"apply_payment_event: No-op - txn: {transaction_id} already {existing.status.value}, "
            f"event: {event.value}")

    # Administrative overrides

    def activate_plan(self, db: Session, user_id: str, plan_tier: PlanTier) -> TransitionResult:
        """Grant a new ACTIVE subscription, superseding any live one"""
        transaction_id = f"admin_{user_id}_{uuid.uuid4().hex[:12]}"
        return self.apply_payment_event(
            db,
            SubscriptionEvent.PAYMENT_COMPLETED,
            transaction_id=transaction_id,
            user_id=user_id,
            plan_tier=plan_tier,
            source="admin",
        )

    def renew(self, db: Session, subscription_id: str) -> TransitionResult:
        """Extend an ACTIVE subscription by one period from its current end date"""
        return self._apply_admin_event(db, subscription_id, SubscriptionEvent.ADMIN_RENEW)

    def update_plan(self, db: Session, subscription_id: str, plan_tier: PlanTier) -> TransitionResult:
        return self._apply_admin_event(
            db, subscription_id, SubscriptionEvent.ADMIN_UPDATE_PLAN, plan_tier=plan_tier)

    def cancel(self, db: Session, subscription_id: str) -> TransitionResult:
        return self._apply_admin_event(db, subscription_id, SubscriptionEvent.ADMIN_CANCEL)

    def cancel_user_subscriptions(self, db: Session, user_id: str) -> int:
        """Cancel every ACTIVE subscription of a user; returns how many were cancelled"""
        self.logger.info(f"cancel_user_subscriptions: Entry - user: {user_id}")

        try:
            user = self._get_user(db, user_id)
            now = datetime.utcnow()
            active = db.query(Subscription).filter(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE
            ).with_for_update().all()

            for subscription in active:
                subscription.status = SubscriptionStatus.CANCELLED
                subscription.updated_at = now
                self._record(db, subscription, TransitionAction.CANCEL, "admin",
                             SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED)

            self._refresh_user_status(db, user, now)
            db.commit()

            self.analytics.log_success(
                action='cancel_user_subscriptions',
                user_id=user_id,
                parameters={'cancelled': len(active)}
            )
            self.logger.info(f"cancel_user_subscriptions: Success - user: {user_id}, cancelled: {len(active)}")
            return len(active)
        except ServiceError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='cancel_user_subscriptions', error=str(e), user_id=user_id)
            self.logger.error(f"cancel_user_subscriptions: Failure - {e}")
            raise

    def _apply_admin_event(
        self,
        db: Session,
        subscription_id: str,
        event: SubscriptionEvent,
        plan_tier: Optional[PlanTier] = None,
    ) -> TransitionResult:
        self.logger.info(f"{event.value}: Entry - subscription: {subscription_id}")

        try:
            subscription = db.query(Subscription).filter(
                Subscription.id == subscription_id
            ).with_for_update().first()
            if not subscription:
                raise NotFoundError("Subscription not found")

            action = decide(subscription.status, event)
            if action == TransitionAction.REJECT:
                raise InvalidTransitionError(
                    f"Cannot apply {event.value} to a {subscription.status.value} subscription",
                    status=subscription.status.value,
                )

            now = datetime.utcnow()
            details = None
            from_plan = subscription.plan_tier
            if action == TransitionAction.RENEW:
                previous_end = subscription.end_date
                subscription.end_date = previous_end + self._period()
                details = {'previous_end_date': previous_end.isoformat(),
                           'end_date': subscription.end_date.isoformat()}
            elif action == TransitionAction.CHANGE_PLAN:
                if plan_tier is None:
                    raise ValueError("plan_tier is required to change plan")
                subscription.plan_tier = plan_tier
            elif action == TransitionAction.CANCEL:
                subscription.status = SubscriptionStatus.CANCELLED
            subscription.updated_at = now

            self._record(db, subscription, action, "admin", SubscriptionStatus.ACTIVE,
                         subscription.status, from_plan=from_plan, details=details)
            self._refresh_user_status(db, self._get_user(db, subscription.user_id), now)
            db.commit()
            db.refresh(subscription)

            self.analytics.log_success(
                action=event.value,
                user_id=subscription.user_id,
                parameters={'subscription_id': subscription_id, 'plan_tier': subscription.plan_tier.value}
            )
            self.logger.info(f"{event.value}: Success - subscription: {subscription_id}")
            return TransitionResult(subscription, action)
        except ServiceError:
            db.rollback()
            raise
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(
                action=event.value,
                error=str(e),
                parameters={'subscription_id': subscription_id}
            )
            self.logger.error(f"{event.value}: Failure - {e}")
            raise

    # Expiry

    def expire_overdue(self, db: Session, now: Optional[datetime] = None) -> int:
        """Move every ACTIVE subscription whose end date has passed to EXPIRED"""
        self.logger.info("expire_overdue: Entry")
        now = now or datetime.utcnow()

        try:
            overdue = db.query(Subscription).filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date < now
            ).with_for_update(skip_locked=True).all()

            user_ids = set()
            for subscription in overdue:
                subscription.status = SubscriptionStatus.EXPIRED
                subscription.updated_at = now
                self._record(db, subscription, TransitionAction.EXPIRE, "sweep",
                             SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRED,
                             details={'end_date': subscription.end_date.isoformat()})
                user_ids.add(subscription.user_id)

            for user_id in user_ids:
                user = db.query(User).filter(User.id == user_id).first()
                if user:
                    self._refresh_user_status(db, user, now)

            db.commit()

            self.analytics.log_success(action='expire_overdue', parameters={'expired_count': len(overdue)})
            self.logger.info(f"expire_overdue: Success - expired: {len(overdue)}")
            return len(overdue)
        except Exception as e:
            db.rollback()
            self.analytics.log_failure(action='expire_overdue', error=str(e))
            self.logger.error(f"expire_overdue: Failure - {e}")
            raise

    # Helpers

    def _period(self) -> timedelta:
        return timedelta(days=settings.subscription_period_days)

    def _get_user(self, db: Session, user_id: str) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise NotFoundError(f"User not found: {user_id}")
        return user

    def _compare_and_set_status(
        self,
        db: Session,
        subscription: Subscription,
        expected: SubscriptionStatus,
        new: SubscriptionStatus,
        now: datetime,
    ) -> bool:
        """Atomically move `subscription` from `expected` to `new`; False if someone else moved it first"""
        rows = db.query(Subscription).filter(
            Subscription.id == subscription.id,
            Subscription.status == expected
        ).update({Subscription.status: new, Subscription.updated_at: now}, synchronize_session=False)
        db.refresh(subscription)
        return rows == 1

    def _supersede_live(
        self,
        db: Session,
        user_id: str,
        source: str,
        now: datetime,
        exclude_id: Optional[str] = None,
    ):
        query = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES)
        )
        if exclude_id is not None:
            query = query.filter(Subscription.id != exclude_id)

        for subscription in query.with_for_update().all():
            previous = subscription.status
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.updated_at = now
            self._record(db, subscription, None, source, previous, SubscriptionStatus.CANCELLED,
                         history_action="superseded")
            self.logger.info(f"_supersede_live: Cancelled {previous.value} subscription {subscription.id}")
        # Must reach the database before a new live row is written
        db.flush()

    def _refresh_user_status(self, db: Session, user: User, now: datetime):
        db.flush()
        live = {row.status for row in db.query(Subscription.status).filter(
            Subscription.user_id == user.id,
            Subscription.status.in_(LIVE_STATUSES)
        ).all()}

        if SubscriptionStatus.ACTIVE in live:
            status = UserSubscriptionStatus.ACTIVE
        elif SubscriptionStatus.PENDING in live:
            status = UserSubscriptionStatus.PENDING
        else:
            status = UserSubscriptionStatus.INACTIVE

        if user.subscription_status != status:
            user.subscription_status = status
            user.updated_at = now

    def _record(
        self,
        db: Session,
        subscription: Subscription,
        action: Optional[TransitionAction],
        source: str,
        from_status: Optional[SubscriptionStatus],
        to_status: Optional[SubscriptionStatus],
        from_plan: Optional[PlanTier] = None,
        details: Optional[dict] = None,
        history_action: Optional[str] = None,
    ):
        from_plan = from_plan or subscription.plan_tier
        db.add(SubscriptionHistory(
            id=str(uuid.uuid4()),
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            action=history_action or _HISTORY_ACTIONS[action],
            source=source,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value if to_status else None,
            from_plan=from_plan.value if from_plan else None,
            to_plan=subscription.plan_tier.value,
            details=json.dumps(details, default=str) if details else None,
        ))
