import asyncio
import click
from app.core.database import SessionLocal
from app.core.firebase import init_firebase
from app.models.user import User
from app.models.subscription import Subscription
from app.services.download_service import DownloadService
from app.services.payment_reconciler import PaymentReconciler
from app.services.subscription_service import PlanConfiguration
from app.services.subscription_state_machine import SubscriptionStateMachine
import logging

logger = logging.getLogger(__name__)


def _find_user(db, email, user_id):
    if user_id:
        return db.query(User).filter(User.id == user_id).first()
    return db.query(User).filter(User.email == email).first()


@click.group()
def cli():
    """Entitlement admin and maintenance commands"""
    # Services report to Firestore analytics
    init_firebase()


@cli.command()
@click.option('--email', required=False, help='User email')
@click.option('--id', 'user_id', required=False, help='User id (Firebase UID)')
@click.option('--activate', 'plan_id', required=False, help='Grant a plan (basic, premium, family)')
@click.option('--cancel', 'cancel', is_flag=True, help='Cancel the active subscription')
def subscription(email, user_id, plan_id, cancel):
    """Show or override a user's subscription"""
    db = SessionLocal()
    try:
        if not email and not user_id:
            click.echo("❌ Please provide --email or --id for this operation", err=True)
            return

        user = _find_user(db, email, user_id)
        if not user:
            click.echo(f"❌ User not found: {user_id or email}", err=True)
            return

        display_ident = user.email or user.id
        state_machine = SubscriptionStateMachine()
        if plan_id:
            plan_tier = PlanConfiguration.parse_tier(plan_id)
            if plan_tier is None:
                click.echo(f"❌ Unknown plan: {plan_id}", err=True)
                return
            result = state_machine.activate_plan(db, user.id, plan_tier)
            click.echo(f"✓ Activated {plan_tier.value} for {display_ident} until {result.subscription.end_date:%Y-%m-%d}")
        elif cancel:
            cancelled = state_machine.cancel_user_subscriptions(db, user.id)
            click.echo(f"✓ Cancelled {cancelled} subscription(s) for {display_ident}")
        else:
            subscriptions = db.query(Subscription).filter(
                Subscription.user_id == user.id
            ).order_by(Subscription.created_at.desc()).all()
            click.echo(f"User {display_ident} is {user.subscription_status.value}")
            for sub in subscriptions:
                click.echo(
                    f"  - {sub.id}: {sub.plan_tier.value}, {sub.status.value}, "
                    f"{sub.start_date:%Y-%m-%d} -> {sub.end_date:%Y-%m-%d}")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command()
@click.argument('subscription_id')
def renew(subscription_id):
    """Extend an active subscription by one period"""
    db = SessionLocal()
    try:
        result = SubscriptionStateMachine().renew(db, subscription_id)
        click.echo(f"✓ Renewed {subscription_id} until {result.subscription.end_date:%Y-%m-%d}")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {getattr(e, 'message', e)}", err=True)
    finally:
        db.close()


@cli.command('expire-subscriptions')
def expire_subscriptions():
    """Move overdue ACTIVE subscriptions to EXPIRED"""
    db = SessionLocal()
    try:
        expired = SubscriptionStateMachine().expire_overdue(db)
        click.echo(f"✓ Expired {expired} subscription(s)")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('purge-downloads')
def purge_downloads():
    """Delete expired download artifacts and their rows"""
    db = SessionLocal()
    try:
        result = DownloadService().purge_expired(db)
        click.echo(f"✓ Purged {result['purged']} download(s)")
        if result['failed']:
            click.echo(f"❌ {result['failed']} artifact(s) could not be removed; kept for the next run", err=True)
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


@cli.command('reconcile-payments')
@click.option('--limit', default=100, show_default=True, help='Maximum checkout sessions to check')
def reconcile_payments(limit):
    """Re-verify open checkouts with the payment processor"""
    db = SessionLocal()
    try:
        counts = asyncio.run(PaymentReconciler().reconcile_open_checkouts(db, limit=limit))
        click.echo(
            f"✓ Checked {counts['checked']}: {counts['paid']} paid, {counts['failed']} failed, "
            f"{counts['abandoned']} abandoned, {counts['open']} still open, {counts['errors']} error(s)")
    except Exception as e:
        db.rollback()
        logger.error(f"CLI error: {e}")
        click.echo(f"❌ Error: {e}", err=True)
    finally:
        db.close()


if __name__ == '__main__':
    cli()
