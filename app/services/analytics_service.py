import logging
from datetime import datetime
from app.core.firebase import get_firestore_client

logger = logging.getLogger(__name__)


class AnalyticsService:
    """
    Product analytics and error tracking backed by Firestore.

    Every method swallows its own failures: losing an analytics record must
    never fail a payment or a download.
    """

    def __init__(self):
        self.db = get_firestore_client()
        self.events_collection = 'analytics_events'
        self.errors_collection = 'error_reports'
        self.issues_collection = 'consistency_issues'
        self.logger = logging.getLogger(__name__)

    def log_event(
        self,
        event_name: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        logger.info(f"log_event: Entry - {event_name}, user: {user_id}")

        try:
            self.db.collection(self.events_collection).add({
                'event_name': event_name,
                'user_id': user_id,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            })
            logger.info(f"log_event: Success - {event_name}")
        except Exception as e:
            logger.error(f"log_event: Failure - {e}")

    def log_error(
        self,
        error: str,
        action: str,
        user_id: str = None,
        parameters: dict = None,
        stack_trace: str = None,
        fatal: bool = False
    ):
        """Record an error report for debugging and monitoring"""
        logger.info(f"log_error: Entry - {action}, error: {error}, fatal: {fatal}")

        try:
            self.db.collection(self.errors_collection).add({
                'action': action,
                'user_id': user_id,
                'error_message': error,
                'stack_trace': stack_trace,
                'parameters': parameters or {},
                'fatal': fatal,
                'timestamp': datetime.utcnow()
            })
            logger.info(f"log_error: Success - {action}")
        except Exception as e:
            logger.error(f"log_error: Failure - {e}")

    def log_inconsistency(
        self,
        kind: str,
        user_id: str = None,
        parameters: dict = None
    ):
        """
        Record a state the system refused to resolve on its own, e.g. money
        captured by the processor with no subscription to show for it.
        These are picked up by operators, not retried.
        """
        logger.warning(f"log_inconsistency: Entry - {kind}, user: {user_id}")

        try:
            self.db.collection(self.issues_collection).add({
                'kind': kind,
                'user_id': user_id,
                'parameters': parameters or {},
                'resolved': False,
                'timestamp': datetime.utcnow()
            })
            logger.info(f"log_inconsistency: Success - {kind}")
        except Exception as e:
            logger.error(f"log_inconsistency: Failure - {e}")

    def log_success(
        self,
        action: str,
        user_id: str = None,
        parameters: dict = None
    ):
        self.log_event(
            event_name=f'{action}_success',
            user_id=user_id,
            parameters={'status': 'success', **(parameters or {})}
        )

    def log_failure(
        self,
        action: str,
        error: str,
        user_id: str = None,
        parameters: dict = None,
        stack_trace: str = None
    ):
        """Log a handled failure both as an analytics event and as an error report"""
        self.log_event(
            event_name=f'{action}_failure',
            user_id=user_id,
            parameters={'status': 'failure', 'error': error, **(parameters or {})}
        )
        self.log_error(
            error=error,
            action=action,
            user_id=user_id,
            parameters=parameters,
            stack_trace=stack_trace,
        )
