"""
Celery Tasks
Background tasks that keep the claim audit trail out of the request path.
"""

import logging
import time
from datetime import datetime

from courier_dispatch.celery_worker import celery_app
from courier_dispatch.database import get_sync_session_maker
from courier_dispatch.models import ClaimAttemptLog

logger = logging.getLogger(__name__)


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(Exception,),
    retry_backoff=True
)
def audit_claim_attempt(self, attempt_data: dict) -> dict:
    """
    Persist one claim attempt and its outcome to claim_attempts.

    Args:
        attempt_data: ClaimAttempt.to_dict() plus success, code, error
            and response_time_ms

    Returns:
        dict: Id of the stored audit row
    """
    task_id = self.request.id
    order_id = attempt_data.get('order_id', 'unknown')
    courier_id = attempt_data.get('courier_id', 'unknown')

    logger.info(f"📋 Task {task_id}: Auditing claim on order {order_id} by {courier_id}")
    start_time = time.time()

    try:
        session_maker = get_sync_session_maker()
        with session_maker() as session:
            log = ClaimAttemptLog(
                order_id=order_id,
                courier_id=courier_id,
                requested_at=_parse_timestamp(attempt_data['requested_at']),
                success=bool(attempt_data.get('success')),
                code=attempt_data.get('code'),
                error=attempt_data.get('error'),
                response_time_ms=attempt_data.get('response_time_ms'),
            )
            session.add(log)
            session.commit()
            log_id = log.id

        elapsed = round(time.time() - start_time, 3)
        logger.info(f"✅ Task {task_id}: Claim audit #{log_id} stored in {elapsed}s")

        return {
            'success': True,
            'log_id': log_id,
            'task_id': task_id,
            'processing_time_seconds': elapsed,
        }

    except Exception as e:
        elapsed = round(time.time() - start_time, 3)
        logger.error(f"❌ Task {task_id}: Claim audit for order {order_id} failed after {elapsed}s - {e}")

        # Celery will auto-retry based on configuration
        raise


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
