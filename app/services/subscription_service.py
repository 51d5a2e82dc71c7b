import json
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.middleware import AuthContext
from app.models.plan import Plan, PlanTier
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_history import SubscriptionHistory
from app.models.user import User
from app.services.analytics_service import AnalyticsService

logger = logging.getLogger(__name__)


class PlanLimits(BaseModel):
    """Pydantic model for plan limits"""
    max_downloads: int
    download_retention_days: int = 30
    streaming: bool = True


class PlanResponse(BaseModel):
    """Pydantic model for plan API response"""
    tier: str
    name: str
    price_monthly: float
    limits: PlanLimits
    features: list[str]
    recommended: bool = False

    class Config:
        from_attributes = True


# Seed data for the plans table; the table, not this list, is read at runtime
DEFAULT_PLANS = [
    {
        'tier': PlanTier.BASIC,
        'name': 'Basic',
        'price_monthly': 2000,
        'limits': {'max_downloads': 0, 'download_retention_days': 30, 'streaming': True},
        'features': ['Unlimited streaming', 'HD quality', 'Watch on one screen'],
        'recommended': False,
    },
    {
        'tier': PlanTier.PREMIUM,
        'name': 'Premium',
        'price_monthly': 3500,
        'limits': {'max_downloads': 5, 'download_retention_days': 30, 'streaming': True},
        'features': ['Unlimited streaming', 'Full HD quality', '5 offline downloads', 'Watch on two screens'],
        'recommended': True,
    },
    {
        'tier': PlanTier.FAMILY,
        'name': 'Family',
        'price_monthly': 5000,
        'limits': {'max_downloads': 10, 'download_retention_days': 30, 'streaming': True},
        'features': ['Unlimited streaming', 'Full HD quality', '10 offline downloads', 'Watch on four screens'],
        'recommended': False,
    },
]


class PlanConfiguration:
    """Read access to the plan catalogue stored in the plans table"""

    @classmethod
    def parse_tier(cls, value) -> Optional[PlanTier]:
        """Map a processor or client supplied plan id onto a tier, None if unknown"""
        if isinstance(value, PlanTier):
            return value
        if not value:
            return None
        try:
            return PlanTier(str(value).strip().lower())
        except ValueError:
            return None

    @classmethod
    def get_plan(cls, db: Session, plan_tier: PlanTier) -> Plan:
        plan = db.query(Plan).filter(Plan.tier == plan_tier).first()
        if not plan:
            raise ValueError(f"Plan not found: {plan_tier}")
        return plan

    @classmethod
    def get_limit(cls, db: Session, plan_tier: PlanTier, limit_type: str) -> int:
        """Get a specific limit for a plan, 0 when the plan or limit is missing"""
        plan = db.query(Plan).filter(Plan.tier == plan_tier).first()
        if not plan:
            return 0
        return int((plan.limits or {}).get(limit_type, 0))

    @classmethod
    def get_download_limit(cls, db: Session, plan_tier: PlanTier) -> int:
        return cls.get_limit(db, plan_tier, 'max_downloads')


class SubscriptionService:
    def __init__(self):
        self.analytics = AnalyticsService()
        self.logger = logging.getLogger(__name__)

    def ensure_user(self, db: Session, auth: AuthContext) -> User:
        """Return the local user row for an authenticated caller, creating it on first sight"""
        user = db.query(User).filter(User.id == auth.uid).first()
        if user:
            return user

        self.logger.info(f"ensure_user: Creating user - {auth.uid}")
        try:
            user = User(id=auth.uid, email=auth.email, display_name=auth.name)
            db.add(user)
            db.commit()
            db.refresh(user)
            return user
        except IntegrityError:
            db.rollback()
            # Another request created the same user concurrently
            self.logger.info(f"ensure_user: Lost creation race - {auth.uid}")
            return db.query(User).filter(User.id == auth.uid).one()

    def get_all_plans(self, db: Session) -> list[dict]:
        """Get all available subscription plans from database"""
        self.logger.info("get_all_plans: Entry")

        try:
            self.seed_plans_if_empty(db)

            plans_db = db.query(Plan).filter(
                Plan.active == True).order_by(Plan.price_monthly).all()

            plans = [
                PlanResponse(
                    tier=plan.tier.value,
                    name=plan.name,
                    price_monthly=float(plan.price_monthly),
                    limits=PlanLimits(**plan.limits),
                    features=plan.features,
                    recommended=plan.recommended,
                ).model_dump()
                for plan in plans_db
            ]

            self.logger.info(f"get_all_plans: Success - {len(plans)} plans")
            return plans
        except Exception as e:
            self.analytics.log_failure(
                action='get_all_plans',
                error=str(e)
            )
            self.logger.error(f"get_all_plans: Failure - {e}")
            raise

    def seed_plans_if_empty(self, db: Session):
        """Seed plans table if empty (for initial setup or if migration didn't run)"""
        try:
            if db.query(Plan).count() == 0:
                self.logger.info("seed_plans_if_empty: Plans table is empty, seeding plans")
                for plan in DEFAULT_PLANS:
                    db.add(Plan(active=True, **plan))
                db.commit()
                self.logger.info(f"seed_plans_if_empty: Success - seeded {len(DEFAULT_PLANS)} plans")
        except Exception as e:
            db.rollback()
            self.logger.error(f"seed_plans_if_empty: Failure - {e}")

    def get_active_subscription(
        self,
        db: Session,
        user_id: str,
        now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """
        The subscription currently granting entitlement, if any.

        A subscription past its end date grants nothing even while the
        expiry sweep has not yet moved it to EXPIRED.
        """
        now = now or datetime.utcnow()
        return db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.end_date > now
        ).order_by(Subscription.end_date.desc()).first()

    def get_current_subscription(self, db: Session, user_id: str) -> dict:
        """Get user's current subscription"""
        self.logger.info(f"get_current_subscription: Entry - user: {user_id}")

        try:
            user = db.query(User).filter(User.id == user_id).first()
            if not user:
                raise ValueError("User not found")

            subscription = self.get_active_subscription(db, user_id)
            if subscription is None:
                # Surface a pending checkout so the client can keep polling
                subscription = db.query(Subscription).filter(
                    Subscription.user_id == user_id,
                    Subscription.status == SubscriptionStatus.PENDING
                ).first()

            limits = None
            plan_name = None
            if subscription:
                plan = PlanConfiguration.get_plan(db, subscription.plan_tier)
                plan_name = plan.name
                limits = plan.limits

            result = {
                'user_id': user_id,
                'subscription_status': user.subscription_status.value,
                'subscription_id': subscription.id if subscription else None,
                'plan_tier': subscription.plan_tier.value if subscription else None,
                'plan_name': plan_name,
                'status': subscription.status.value if subscription else None,
                'start_date': subscription.start_date.isoformat() if subscription else None,
                'end_date': subscription.end_date.isoformat() if subscription else None,
                'limits': limits,
            }

            self.analytics.log_success(
                action='get_current_subscription',
                user_id=user_id,
                parameters={'plan_tier': result['plan_tier']}
            )
            self.logger.info(
                f"get_current_subscription: Success - user: {user_id}, tier: {result['plan_tier']}")
            return result
        except Exception as e:
            self.analytics.log_failure(
                action='get_current_subscription',
                error=str(e),
                user_id=user_id
            )
            self.logger.error(f"get_current_subscription: Failure - {e}")
            raise

    def get_subscription_history(self, db: Session, user_id: str) -> list[dict]:
        """Get user's subscription history"""
        self.logger.info(f"get_subscription_history: Entry - user: {user_id}")

        try:
            history = db.query(SubscriptionHistory).filter(
                SubscriptionHistory.user_id == user_id
            ).order_by(SubscriptionHistory.created_at.desc()).all()

            result = []
            for entry in history:
                result.append({
                    'id': entry.id,
                    'subscription_id': entry.subscription_id,
                    'action': entry.action,
                    'source': entry.source,
                    'from_status': entry.from_status,
                    'to_status': entry.to_status,
                    'from_plan': entry.from_plan,
                    'to_plan': entry.to_plan,
                    'created_at': entry.created_at.isoformat(),
                    'details': json.loads(entry.details) if entry.details else None
                })

            self.logger.info(
                f"get_subscription_history: Success - user: {user_id}, count: {len(result)}")
            return result
        except Exception as e:
            self.analytics.log_failure(
                action='get_subscription_history',
                error=str(e),
                user_id=user_id
            )
            self.logger.error(f"get_subscription_history: Failure - {e}")
            raise


def serialize_subscription(subscription: Optional[Subscription]) -> Optional[dict]:
    if subscription is None:
        return None
    return {
        'id': subscription.id,
        'user_id': subscription.user_id,
        'plan_tier': subscription.plan_tier.value,
        'status': subscription.status.value,
        'external_transaction_id': subscription.external_transaction_id,
        'amount': float(subscription.amount) if subscription.amount is not None else None,
        'start_date': subscription.start_date.isoformat(),
        'end_date': subscription.end_date.isoformat(),
    }
