"""
Payment reconciliation.

Two ingestion paths feed the same state machine call, keyed by the
processor's transaction id:

- push: the processor's webhook (`handle_webhook`)
- pull: the client asking us to verify a checkout token (`verify`)

Either may arrive first, both may arrive concurrently and either may be
re-delivered. `reconcile_open_checkouts` is the out-of-band job that
catches payments neither path managed to record.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ForbiddenError, InvalidRequestError
from app.core.middleware import AuthContext
from app.models.checkout_session import CheckoutSession, CheckoutStatus
from app.models.plan import Plan
from app.services.analytics_service import AnalyticsService
from app.services.payment_gateway import (PaymentGateway, PaymentStatus,
                                          parse_amount, parse_payment_info)
from app.services.subscription_service import PlanConfiguration
from app.services.subscription_state_machine import (SubscriptionEvent,
                                                     SubscriptionStateMachine)

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = {
    'payin.session.pending': SubscriptionEvent.PAYMENT_PENDING,
    'payin.session.completed': SubscriptionEvent.PAYMENT_COMPLETED,
    'payin.session.cancelled': SubscriptionEvent.PAYMENT_CANCELLED,
}

_STATUS_MESSAGES = {
    PaymentStatus.PENDING: "Payment is being processed",
    PaymentStatus.FAILED: "Payment failed",
    PaymentStatus.NOT_PAID: "Payment not completed",
    PaymentStatus.UNKNOWN: "Unknown payment status",
}


class PaymentReconciler:
    def __init__(
        self,
        state_machine: Optional[SubscriptionStateMachine] = None,
        gateway: Optional[PaymentGateway] = None,
    ):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)
        self.state_machine = state_machine or SubscriptionStateMachine()
        self.gateway = gateway or PaymentGateway()

    def handle_webhook(self, db: Session, payload: dict) -> dict:
        """
        Process a processor webhook.

        Always returns an acknowledgement: the processor retries anything
        that is not a 2xx, and neither a replay nor a payload we cannot use
        gets better by being retried.
        """
        payload = payload if isinstance(payload, dict) else {}
        event_name = payload.get('event')
        transaction_id = payload.get('numeroTransaction')
        self.logger.info(f"handle_webhook: Entry - event: {event_name}, txn: {transaction_id}")

        event = WEBHOOK_EVENTS.get(event_name)
        if event is None:
            return self._ignore(f"Unsupported event: {event_name}", transaction_id, payload)
        if not transaction_id:
            return self._ignore("Missing transaction id", transaction_id, payload)

        info = parse_payment_info(payload.get('personal_Info'))
        if not info.user_id:
            return self._ignore("Missing userId", transaction_id, payload)

        plan_tier = PlanConfiguration.parse_tier(info.plan_id)
        if plan_tier is None and event != SubscriptionEvent.PAYMENT_CANCELLED:
            return self._ignore(f"Unknown plan: {info.plan_id}", transaction_id, payload)

        try:
            result = self.state_machine.apply_payment_event(
                db,
                event,
                transaction_id=str(transaction_id),
                user_id=info.user_id,
                plan_tier=plan_tier,
                amount=parse_amount(payload.get('Montant')),
                source='webhook',
            )
        except Exception as e:
            self.analytics.log_failure(
                action='handle_webhook',
                error=str(e),
                user_id=info.user_id,
                parameters={'event': event_name, 'transaction_id': transaction_id}
            )
            self.logger.error(f"handle_webhook: Failure - {e}")
            return self._ack("Webhook received, processing failed", transaction_id)

        if event == SubscriptionEvent.PAYMENT_COMPLETED:
            self._mark_checkout(db, payload.get('tokenPay'), CheckoutStatus.PAID, transaction_id)
        elif event == SubscriptionEvent.PAYMENT_CANCELLED:
            self._mark_checkout(db, payload.get('tokenPay'), CheckoutStatus.FAILED, transaction_id)

        self.logger.info(f"handle_webhook: Success - txn: {transaction_id}, action: {result.action.value}")
        return self._ack("Webhook processed", transaction_id)

    async def verify(self, db: Session, token: str, auth: AuthContext) -> dict:
        """
        Check a checkout token with the processor and apply a confirmed payment.

        Once the processor says `paid` the caller is told so, even if
        recording it fails here; that case is logged for reconciliation.
        """
        self.logger.info(f"verify: Entry - user: {auth.uid}")

        if not token:
            raise InvalidRequestError("Missing payment token")

        result = await self.gateway.check_payment_status(token)
        if result.status != PaymentStatus.PAID:
            self.logger.info(f"verify: Not paid - user: {auth.uid}, status: {result.status.value}")
            return {
                'success': False,
                'status': result.status.value,
                'error': _STATUS_MESSAGES.get(result.status, "Payment not confirmed"),
            }

        info = result.info
        checkout = db.query(CheckoutSession).filter(CheckoutSession.token == token).first()
        owner_id = self._resolve_owner(checkout, info, token)
        if owner_id is None or owner_id != auth.uid:
            self.logger.warning(f"verify: Token not attributable to caller - caller: {auth.uid}, owner: {owner_id}")
            raise ForbiddenError("Payment does not belong to the current user")

        plan_tier = PlanConfiguration.parse_tier(info.plan_id)
        if plan_tier is None and checkout is not None:
            plan_tier = checkout.plan_tier
        response = {
            'success': True,
            'status': PaymentStatus.PAID.value,
            'plan': {
                'id': plan_tier.value if plan_tier else info.plan_id,
                'name': info.plan_name or (plan_tier.value.title() if plan_tier else None),
                'amount': result.amount,
            },
            'amount': result.amount,
            'transaction_id': result.transaction_id,
            'message': "Payment verified and subscription activated",
        }

        if plan_tier is None or not result.transaction_id:
            self.analytics.log_inconsistency(
                kind='paid_without_subscription',
                user_id=owner_id,
                parameters={'token': token, 'plan_id': info.plan_id,
                            'transaction_id': result.transaction_id}
            )
            self.logger.error(
                f"verify: Paid checkout cannot be applied - plan: {info.plan_id}, txn: {result.transaction_id}")
            response['message'] = "Payment verified"
            response['reconciliation_pending'] = True
            return response

        try:
            self.state_machine.apply_payment_event(
                db,
                SubscriptionEvent.PAYMENT_COMPLETED,
                transaction_id=str(result.transaction_id),
                user_id=owner_id,
                plan_tier=plan_tier,
                amount=result.amount,
                source='verify',
            )
        except Exception as e:
            self.analytics.log_inconsistency(
                kind='paid_without_subscription',
                user_id=owner_id,
                parameters={'token': token, 'transaction_id': result.transaction_id, 'error': str(e)}
            )
            self.logger.error(f"verify: Payment confirmed but not recorded - {e}")
            response['message'] = "Payment verified"
            response['reconciliation_pending'] = True
            return response

        self._mark_checkout(db, token, CheckoutStatus.PAID, result.transaction_id)
        self.analytics.log_success(
            action='verify_payment',
            user_id=owner_id,
            parameters={'plan_tier': plan_tier.value, 'transaction_id': result.transaction_id}
        )
        self.logger.info(f"verify: Success - user: {owner_id}, txn: {result.transaction_id}")
        return response

    async def create_checkout(self, db: Session, auth: AuthContext, plan_id: str) -> dict:
        """Open a checkout session with the processor for one period of a plan"""
        self.logger.info(f"create_checkout: Entry - user: {auth.uid}, plan: {plan_id}")

        plan_tier = PlanConfiguration.parse_tier(plan_id)
        plan = None
        if plan_tier is not None:
            plan = db.query(Plan).filter(Plan.tier == plan_tier, Plan.active == True).first()
        if plan is None:
            raise InvalidRequestError(f"Unknown plan: {plan_id}")

        amount = float(plan.price_monthly)
        checkout = await self.gateway.create_checkout(
            amount=amount,
            plan_id=plan.tier.value,
            plan_name=plan.name,
            user_id=auth.uid,
            user_email=auth.email,
            client_name=auth.name,
        )

        try:
            db.add(CheckoutSession(
                token=checkout.token,
                user_id=auth.uid,
                plan_tier=plan.tier,
                amount=amount,
                status=CheckoutStatus.OPEN,
            ))
            db.commit()
        except Exception as e:
            # The checkout exists at the processor; the webhook still carries everything we need
            db.rollback()
            self.analytics.log_failure(
                action='create_checkout',
                error=str(e),
                user_id=auth.uid,
                parameters={'token': checkout.token}
            )
            self.logger.error(f"create_checkout: Could not store checkout session - {e}")

        self.analytics.log_success(
            action='create_checkout',
            user_id=auth.uid,
            parameters={'plan_tier': plan.tier.value, 'amount': amount}
        )
        self.logger.info(f"create_checkout: Success - user: {auth.uid}")
        return {
            'success': True,
            'payment_url': checkout.url,
            'token': checkout.token,
            'message': checkout.message,
        }

    async def reconcile_open_checkouts(self, db: Session, limit: int = 100, now: Optional[datetime] = None) -> dict:
        """
        Re-verify OPEN checkout sessions and apply any payment the processor confirms.

        Sessions are visited least recently checked first, so a backlog of
        abandoned checkouts cannot keep newer ones from being looked at.
        A session the processor still reports unpaid after
        `checkout_abandon_after_hours` is closed as FAILED.
        """
        self.logger.info(f"reconcile_open_checkouts: Entry - limit: {limit}")
        now = now or datetime.utcnow()
        abandon_before = now - timedelta(hours=settings.checkout_abandon_after_hours)

        sessions = db.query(CheckoutSession).filter(
            CheckoutSession.status == CheckoutStatus.OPEN
        ).order_by(
            CheckoutSession.last_checked_at.asc().nullsfirst(),
            CheckoutSession.created_at
        ).limit(limit).all()
        # Plain values; the state machine may roll the session back mid-loop
        pending = [(c.token, c.user_id, c.plan_tier, c.created_at) for c in sessions]

        counts = {'checked': 0, 'paid': 0, 'failed': 0, 'abandoned': 0, 'open': 0, 'errors': 0}
        for token, user_id, plan_tier, created_at in pending:
            counts['checked'] += 1
            result = await self.gateway.check_payment_status(token)

            if result.status == PaymentStatus.PAID:
                if not result.transaction_id:
                    self.analytics.log_inconsistency(
                        kind='paid_without_transaction_id',
                        user_id=user_id,
                        parameters={'token': token}
                    )
                    self._mark_checkout(db, token, CheckoutStatus.OPEN)
                    counts['errors'] += 1
                    continue
                try:
                    self.state_machine.apply_payment_event(
                        db,
                        SubscriptionEvent.PAYMENT_COMPLETED,
                        transaction_id=str(result.transaction_id),
                        user_id=user_id,
                        plan_tier=plan_tier,
                        amount=result.amount,
                        source='reconciliation',
                    )
                except Exception as e:
                    self.analytics.log_failure(
                        action='reconcile_open_checkouts',
                        error=str(e),
                        user_id=user_id,
                        parameters={'token': token, 'transaction_id': result.transaction_id}
                    )
                    self.logger.error(f"reconcile_open_checkouts: Could not apply {token} - {e}")
                    self._mark_checkout(db, token, CheckoutStatus.OPEN)
                    counts['errors'] += 1
                    continue
                self._mark_checkout(db, token, CheckoutStatus.PAID, result.transaction_id)
                counts['paid'] += 1
            elif result.status in (PaymentStatus.FAILED, PaymentStatus.NOT_PAID):
                self._mark_checkout(db, token, CheckoutStatus.FAILED)
                counts['failed'] += 1
            elif created_at is not None and created_at < abandon_before:
                self.logger.info(f"reconcile_open_checkouts: Abandoned - {token[:12]}..., created: {created_at}")
                self._mark_checkout(db, token, CheckoutStatus.FAILED)
                counts['abandoned'] += 1
            else:
                self._mark_checkout(db, token, CheckoutStatus.OPEN)
                counts['open'] += 1

        self.analytics.log_success(action='reconcile_open_checkouts', parameters=counts)
        self.logger.info(f"reconcile_open_checkouts: Success - {counts}")
        return counts

    def _resolve_owner(self, checkout: Optional[CheckoutSession], info, token: str) -> Optional[str]:
        """
        The user a paid token belongs to.

        The checkout session we stored wins; the processor's echoed userId
        is only used for checkouts we have no record of.
        """
        if checkout is None:
            return info.user_id
        if info.user_id and info.user_id != checkout.user_id:
            self.analytics.log_inconsistency(
                kind='checkout_owner_mismatch',
                user_id=checkout.user_id,
                parameters={'token': token, 'echoed_user_id': info.user_id}
            )
            self.logger.error(
                f"_resolve_owner: Processor echoed user {info.user_id} for checkout of {checkout.user_id}")
        return checkout.user_id

    def _mark_checkout(
        self,
        db: Session,
        token: Optional[str],
        status: CheckoutStatus,
        transaction_id: Optional[str] = None,
    ):
        """Record what we learned about a checkout; bookkeeping only, never fails the caller"""
        if not token:
            return
        try:
            checkout = db.query(CheckoutSession).filter(CheckoutSession.token == token).first()
            if checkout is None:
                return
            if checkout.status == CheckoutStatus.OPEN:
                checkout.status = status
            if transaction_id:
                checkout.transaction_id = str(transaction_id)
            checkout.last_checked_at = datetime.utcnow()
            db.commit()
        except Exception as e:
            db.rollback()
            self.logger.error(f"_mark_checkout: Failure - {e}")

    def _ignore(self, reason: str, transaction_id, payload: dict) -> dict:
        self.logger.warning(f"handle_webhook: Ignored - {reason}")
        self.analytics.log_event(
            event_name='webhook_ignored',
            parameters={'reason': reason, 'event': payload.get('event'), 'transaction_id': transaction_id}
        )
        return self._ack(f"Webhook received but ignored: {reason}", transaction_id)

    def _ack(self, message: str, transaction_id) -> dict:
        return {'success': True, 'message': message, 'transactionId': transaction_id}
