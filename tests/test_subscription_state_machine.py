"""
Tests for the subscription state machine
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.models.plan import PlanTier
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_history import SubscriptionHistory
from app.models.user import UserSubscriptionStatus
from app.services.subscription_state_machine import (SubscriptionEvent,
                                                     SubscriptionStateMachine,
                                                     TransitionAction, decide)


@pytest.fixture
def state_machine():
    machine = SubscriptionStateMachine()
    machine.analytics = MagicMock()
    return machine


def _live(db, user_id):
    return db.query(Subscription).filter(
        Subscription.user_id == user_id,
        Subscription.status.in_([SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE])
    ).all()


class TestDecide:
    """Transition table"""

    @pytest.mark.parametrize("current,event,expected", [
        (None, SubscriptionEvent.PAYMENT_PENDING, TransitionAction.CREATE_PENDING),
        (None, SubscriptionEvent.PAYMENT_COMPLETED, TransitionAction.CREATE_ACTIVE),
        (None, SubscriptionEvent.PAYMENT_CANCELLED, TransitionAction.NOOP),
        (SubscriptionStatus.PENDING, SubscriptionEvent.PAYMENT_PENDING, TransitionAction.NOOP),
        (SubscriptionStatus.PENDING, SubscriptionEvent.PAYMENT_COMPLETED, TransitionAction.ACTIVATE),
        (SubscriptionStatus.PENDING, SubscriptionEvent.PAYMENT_CANCELLED, TransitionAction.CANCEL),
        (SubscriptionStatus.ACTIVE, SubscriptionEvent.PAYMENT_COMPLETED, TransitionAction.NOOP),
        (SubscriptionStatus.ACTIVE, SubscriptionEvent.PAYMENT_CANCELLED, TransitionAction.NOOP),
        (SubscriptionStatus.CANCELLED, SubscriptionEvent.PAYMENT_COMPLETED, TransitionAction.NOOP),
        (SubscriptionStatus.EXPIRED, SubscriptionEvent.PAYMENT_COMPLETED, TransitionAction.NOOP),
        (SubscriptionStatus.ACTIVE, SubscriptionEvent.ADMIN_RENEW, TransitionAction.RENEW),
        (SubscriptionStatus.ACTIVE, SubscriptionEvent.ADMIN_UPDATE_PLAN, TransitionAction.CHANGE_PLAN),
        (SubscriptionStatus.ACTIVE, SubscriptionEvent.ADMIN_CANCEL, TransitionAction.CANCEL),
        (SubscriptionStatus.ACTIVE, SubscriptionEvent.EXPIRE, TransitionAction.EXPIRE),
        (SubscriptionStatus.PENDING, SubscriptionEvent.ADMIN_RENEW, TransitionAction.REJECT),
        (SubscriptionStatus.CANCELLED, SubscriptionEvent.ADMIN_CANCEL, TransitionAction.REJECT),
        (SubscriptionStatus.EXPIRED, SubscriptionEvent.ADMIN_RENEW, TransitionAction.REJECT),
        (SubscriptionStatus.PENDING, SubscriptionEvent.EXPIRE, TransitionAction.REJECT),
    ])
    def test_transition_table(self, current, event, expected):
        assert decide(current, event) == expected

    def test_terminal_states_never_move(self):
        for status in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED):
            for event in SubscriptionEvent:
                action = decide(status, event)
                assert action in (TransitionAction.NOOP, TransitionAction.REJECT)


class TestPaymentEvents:
    """Payment events applied to the database"""

    def test_completed_without_pending_creates_active(self, db_session, make_user, state_machine):
        user = make_user()
        before = datetime.utcnow()

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM, 3500)

        assert result.action == TransitionAction.CREATE_ACTIVE
        assert result.applied is True
        subscription = result.subscription
        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.external_transaction_id == "txn_1"
        assert subscription.start_date >= before
        assert subscription.end_date - subscription.start_date == timedelta(days=30)
        db_session.refresh(user)
        assert user.subscription_status == UserSubscriptionStatus.ACTIVE

    def test_replayed_completion_is_noop(self, db_session, make_user, state_machine):
        user = make_user()
        first = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM)

        second = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM)

        assert second.action == TransitionAction.NOOP
        assert second.applied is False
        assert second.subscription.id == first.subscription.id
        rows = db_session.query(Subscription).filter(Subscription.external_transaction_id == "txn_1").all()
        assert len(rows) == 1
        assert rows[0].status == SubscriptionStatus.ACTIVE

    def test_pending_then_completed_activates_same_record(self, db_session, make_user, state_machine):
        user = make_user()
        pending = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_1", user.id, PlanTier.FAMILY)
        db_session.refresh(user)
        assert user.subscription_status == UserSubscriptionStatus.PENDING

        completed = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.FAMILY)

        assert completed.action == TransitionAction.ACTIVATE
        assert completed.subscription.id == pending.subscription.id
        assert completed.subscription.status == SubscriptionStatus.ACTIVE
        db_session.refresh(user)
        assert user.subscription_status == UserSubscriptionStatus.ACTIVE

        actions = sorted(h.action for h in db_session.query(SubscriptionHistory).filter(
            SubscriptionHistory.subscription_id == pending.subscription.id))
        assert actions == ["activated", "created"]

    def test_duplicate_pending_is_noop(self, db_session, make_user, state_machine):
        user = make_user()
        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_1", user.id, PlanTier.PREMIUM)

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_1", user.id, PlanTier.PREMIUM)

        assert result.action == TransitionAction.NOOP
        assert db_session.query(Subscription).count() == 1

    def test_cancelled_pending_clears_status(self, db_session, make_user, state_machine):
        user = make_user()
        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_1", user.id, PlanTier.PREMIUM)

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_CANCELLED, "txn_1", user.id, PlanTier.PREMIUM)

        assert result.action == TransitionAction.CANCEL
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        db_session.refresh(user)
        assert user.subscription_status == UserSubscriptionStatus.INACTIVE

    def test_cancel_for_unknown_transaction_is_noop(self, db_session, make_user, state_machine):
        user = make_user()

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_CANCELLED, "txn_unknown", user.id, None)

        assert result.action == TransitionAction.NOOP
        assert result.subscription is None
        assert db_session.query(Subscription).count() == 0

    def test_cancel_does_not_undo_activation(self, db_session, make_user, state_machine):
        user = make_user()
        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM)

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_CANCELLED, "txn_1", user.id, PlanTier.PREMIUM)

        assert result.action == TransitionAction.NOOP
        assert result.subscription.status == SubscriptionStatus.ACTIVE

    def test_completion_after_cancellation_is_flagged(self, db_session, make_user, state_machine):
        user = make_user()
        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_1", user.id, PlanTier.PREMIUM)
        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_CANCELLED, "txn_1", user.id, PlanTier.PREMIUM)

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM)

        assert result.action == TransitionAction.NOOP
        assert result.subscription.status == SubscriptionStatus.CANCELLED
        state_machine.analytics.log_inconsistency.assert_called_once()
        assert state_machine.analytics.log_inconsistency.call_args.kwargs['kind'] == 'payment_on_terminal_subscription'

    def test_new_payment_supersedes_live_subscription(self, db_session, make_user, state_machine):
        user = make_user()
        old = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_old", user.id, PlanTier.BASIC).subscription

        new = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_new", user.id, PlanTier.FAMILY).subscription

        db_session.refresh(old)
        assert old.status == SubscriptionStatus.CANCELLED
        assert new.status == SubscriptionStatus.ACTIVE
        assert [s.id for s in _live(db_session, user.id)] == [new.id]
        superseded = db_session.query(SubscriptionHistory).filter(
            SubscriptionHistory.subscription_id == old.id,
            SubscriptionHistory.action == "superseded"
        ).one()
        assert superseded.to_status == "cancelled"

    def test_activation_supersedes_other_pending(self, db_session, make_user, state_machine):
        user = make_user()
        first = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_a", user.id, PlanTier.PREMIUM).subscription
        second = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_b", user.id, PlanTier.PREMIUM).subscription

        # The second checkout replaced the first; paying the first does not resurrect it
        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_a", user.id, PlanTier.PREMIUM)
        assert result.action == TransitionAction.NOOP

        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_b", user.id, PlanTier.PREMIUM)
        db_session.refresh(first)
        db_session.refresh(second)
        assert first.status == SubscriptionStatus.CANCELLED
        assert second.status == SubscriptionStatus.ACTIVE
        assert len(_live(db_session, user.id)) == 1

    def test_transaction_owner_wins_over_payload(self, db_session, make_user, state_machine):
        owner = make_user()
        other = make_user()
        state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_PENDING, "txn_1", owner.id, PlanTier.PREMIUM)

        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", other.id, PlanTier.PREMIUM)

        assert result.subscription.user_id == owner.id
        db_session.refresh(other)
        assert other.subscription_status == UserSubscriptionStatus.INACTIVE

    def test_unknown_user_raises_not_found(self, db_session, state_machine):
        with pytest.raises(NotFoundError):
            state_machine.apply_payment_event(
                db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", "ghost", PlanTier.PREMIUM)
        assert db_session.query(Subscription).count() == 0

    def test_rejects_non_payment_events(self, db_session, make_user, state_machine):
        user = make_user()
        with pytest.raises(ValueError):
            state_machine.apply_payment_event(
                db_session, SubscriptionEvent.ADMIN_RENEW, "txn_1", user.id, PlanTier.PREMIUM)

    def test_lost_insert_race_resolves_to_noop(self, db_session, make_user, state_machine):
        """A concurrent writer committing the same transaction id first turns our insert into a no-op"""
        from sqlalchemy.exc import IntegrityError

        user = make_user()
        original = state_machine._apply_payment_event
        calls = {'count': 0}

        def racing_apply(db, *args, **kwargs):
            calls['count'] += 1
            if calls['count'] == 1:
                # The other request wins between our read and our insert
                other = SubscriptionStateMachine()
                other.analytics = MagicMock()
                other.apply_payment_event(
                    db, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM, source='verify')
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
            return original(db, *args, **kwargs)

        state_machine._apply_payment_event = racing_apply
        result = state_machine.apply_payment_event(
            db_session, SubscriptionEvent.PAYMENT_COMPLETED, "txn_1", user.id, PlanTier.PREMIUM)

        assert calls['count'] == 2
        assert result.action == TransitionAction.NOOP
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert db_session.query(Subscription).count() == 1


class TestAdminOverrides:
    """Administrative transitions"""

    def test_activate_plan_uses_synthetic_transaction(self, db_session, make_user, state_machine):
        user = make_user()

        result = state_machine.activate_plan(db_session, user.id, PlanTier.FAMILY)

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.plan_tier == PlanTier.FAMILY
        assert result.subscription.external_transaction_id.startswith(f"admin_{user.id}_")

    def test_renew_extends_from_current_end_date(self, db_session, make_user, make_subscription, state_machine):
        user = make_user()
        end_date = datetime.utcnow() + timedelta(days=10)
        subscription = make_subscription(user.id, end_date=end_date)

        result = state_machine.renew(db_session, subscription.id)

        assert result.action == TransitionAction.RENEW
        assert result.subscription.end_date == end_date + timedelta(days=30)
        assert result.subscription.status == SubscriptionStatus.ACTIVE

    def test_renewals_accumulate(self, db_session, make_user, make_subscription, state_machine):
        user = make_user()
        subscription = make_subscription(user.id)
        original_end = subscription.end_date

        for _ in range(3):
            state_machine.renew(db_session, subscription.id)

        db_session.refresh(subscription)
        assert subscription.end_date == original_end + timedelta(days=90)

    def test_update_plan_keeps_window(self, db_session, make_user, make_subscription, state_machine):
        user = make_user()
        subscription = make_subscription(user.id, plan_tier=PlanTier.PREMIUM)
        start, end = subscription.start_date, subscription.end_date

        result = state_machine.update_plan(db_session, subscription.id, PlanTier.FAMILY)

        assert result.subscription.plan_tier == PlanTier.FAMILY
        assert (result.subscription.start_date, result.subscription.end_date) == (start, end)
        history = db_session.query(SubscriptionHistory).filter(SubscriptionHistory.action == "plan_changed").one()
        assert (history.from_plan, history.to_plan) == ("premium", "family")

    def test_cancel_active(self, db_session, make_user, make_subscription, state_machine):
        user = make_user()
        subscription = make_subscription(user.id)

        result = state_machine.cancel(db_session, subscription.id)

        assert result.subscription.status == SubscriptionStatus.CANCELLED
        db_session.refresh(user)
        assert user.subscription_status == UserSubscriptionStatus.INACTIVE

    def test_renewing_cancelled_subscription_is_rejected(self, db_session, make_user, make_subscription, state_machine):
        user = make_user()
        subscription = make_subscription(user.id, status=SubscriptionStatus.CANCELLED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.renew(db_session, subscription.id)

        assert exc_info.value.status_code == 409
        assert exc_info.value.detail['invalid_transition'] is True

    def test_unknown_subscription(self, db_session, state_machine):
        with pytest.raises(NotFoundError):
            state_machine.cancel(db_session, "missing")

    def test_cancel_user_subscriptions(self, db_session, make_user, make_subscription, state_machine):
        user = make_user()
        make_subscription(user.id)

        assert state_machine.cancel_user_subscriptions(db_session, user.id) == 1
        assert _live(db_session, user.id) == []
        assert state_machine.cancel_user_subscriptions(db_session, user.id) == 0


class TestExpirySweep:
    """Expiry of overdue subscriptions"""

    def test_expires_only_overdue_active(self, db_session, make_user, make_subscription, state_machine):
        now = datetime.utcnow()
        overdue_user = make_user()
        current_user = make_user()
        overdue = make_subscription(overdue_user.id, start_date=now - timedelta(days=40),
                                    end_date=now - timedelta(days=10))
        current = make_subscription(current_user.id)
        overdue_user.subscription_status = UserSubscriptionStatus.ACTIVE
        db_session.commit()

        expired = state_machine.expire_overdue(db_session, now=now)

        assert expired == 1
        db_session.refresh(overdue)
        db_session.refresh(current)
        db_session.refresh(overdue_user)
        assert overdue.status == SubscriptionStatus.EXPIRED
        assert current.status == SubscriptionStatus.ACTIVE
        assert overdue_user.subscription_status == UserSubscriptionStatus.INACTIVE

    def test_sweep_is_idempotent(self, db_session, make_user, make_subscription, state_machine):
        now = datetime.utcnow()
        user = make_user()
        make_subscription(user.id, start_date=now - timedelta(days=40), end_date=now - timedelta(days=1))

        assert state_machine.expire_overdue(db_session, now=now) == 1
        assert state_machine.expire_overdue(db_session, now=now) == 0
