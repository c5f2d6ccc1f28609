"""
Celery Tasks for Async Processing

Implements the worker side of the Transactional Outbox pattern: pending
notifications are POSTed to the notification webhook. Also polls the
payment gateway for payments whose callback never arrived.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import timedelta
from typing import Optional

import httpx

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.db.models.outbox_message import OutboxMessage
from app.db.models.payment import PaymentStatus
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_service import PaymentService
from app.core.circuit_breaker import get_notification_circuit_breaker
from app.core.clock import utcnow
from app.core.config import settings
from app.core.exceptions import AppException, NotificationError
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

NOTIFICATION_TIMEOUT_SECONDS = 10.0


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _post_notification(
    message: OutboxMessage,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> None:
    """POST one message to the notification webhook; raises NotificationError on a non-2xx"""
    body = {
        "message_id": message.id,
        "user_id": message.user_id,
        "event_type": message.event_type,
        "payload": message.payload,
    }
    async with httpx.AsyncClient(
        timeout=NOTIFICATION_TIMEOUT_SECONDS, transport=transport
    ) as client:
        response = await client.post(settings.NOTIFICATION_WEBHOOK_URL, json=body)
    if response.status_code >= 400:
        raise NotificationError(
            f"webhook returned status {response.status_code}",
            details={"message_id": message.id, "response_text": response.text[:500]},
        )


async def _process_single_message(
    message: OutboxMessage,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> tuple:
    """Process a single outbox message"""
    async with get_task_session() as db:
        outbox_service = OutboxService(db)

        if not await outbox_service.mark_as_processing(message.id):
            return False, "Already claimed"

        if not settings.NOTIFICATION_WEBHOOK_URL:
            logger.debug(
                "No notification webhook configured, marking as sent",
                extra_data={"message_id": message.id, "event_type": message.event_type},
            )
            await outbox_service.mark_as_sent(message.id)
            return True, "No webhook configured"

        try:
            await get_notification_circuit_breaker().execute(
                _post_notification, message, transport
            )
        except (AppException, httpx.HTTPError) as e:
            error = e.message if isinstance(e, AppException) else f"{type(e).__name__}: {e}"
            logger.warning(
                "Notification delivery failed",
                extra_data={"message_id": message.id, "error": error},
            )
            await outbox_service.mark_as_failed(message.id, error)
            return False, error

        await outbox_service.mark_as_sent(message.id)
        return True, "Message sent successfully"


async def process_outbox(
    limit: int = 50,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> list[dict]:
    async with get_task_session() as db:
        messages = await OutboxService(db).get_pending_messages(limit=limit)

    results = []
    for message in messages:
        success, result = await _process_single_message(message, transport)
        results.append({
            "message_id": message.id,
            "success": success,
            "result": result
        })
    return results


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Process pending messages from the outbox.
    This task runs periodically to ensure reliable message delivery.
    """
    return run_async(process_outbox())


async def reconcile_stale(older_than_minutes: Optional[int] = None) -> dict:
    """
    Ask the gateway about every payment stuck in processing.

    Each payment is reconciled in its own session so one failure does not
    stop the rest.
    """
    minutes = older_than_minutes or settings.PAYMENT_RECONCILE_AFTER_MINUTES
    cutoff = utcnow() - timedelta(minutes=minutes)
    async with get_task_session() as db:
        references = await PaymentService(db).stale_processing_references(cutoff)

    reconciled = 0
    failed = 0
    for reference in references:
        async with get_task_session() as db:
            try:
                result = await PaymentService(db).reconcile_payment(reference)
            except AppException as e:
                failed += 1
                logger.warning(
                    "Stale payment reconcile failed",
                    extra_data={"external_reference": reference, "error": e.message},
                )
                continue
        if not result.replayed and result.payment.status != PaymentStatus.PROCESSING:
            reconciled += 1

    logger.info(
        "Stale payments reconciled",
        extra_data={"checked": len(references), "reconciled": reconciled, "failed": failed},
    )
    return {"checked": len(references), "reconciled": reconciled, "failed": failed}


@celery_app.task(name="app.workers.tasks.reconcile_stale_payments")
def reconcile_stale_payments(older_than_minutes: Optional[int] = None):
    """Poll the gateway for payments whose callback never arrived"""
    return run_async(reconcile_stale(older_than_minutes))


@celery_app.task(name="app.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: Optional[int] = None):
    """Clean up old processed messages from the outbox"""

    async def _cleanup():
        cutoff = utcnow() - timedelta(days=days or settings.OUTBOX_RETENTION_DAYS)
        async with get_task_session() as db:
            deleted = await OutboxService(db).delete_processed_before(cutoff)
        logger.info("Old outbox messages deleted", extra_data={"deleted": deleted})
        return {"deleted": deleted}

    return run_async(_cleanup())
