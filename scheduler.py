"""
Reconciliation Scheduler
========================
Background jobs that move deals forward on external events: payment
detection, auto-posting, post verification and inactivity timeouts.

Each job scans the store for deals matching a status predicate and handles
them concurrently under a bounded semaphore. A failure on one deal is
logged and never stops the others; the next pass retries it. Every write
is a compare-and-set on status, so passes are safe to overlap or rerun.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import config
from deals import DealService
from errors import ConcurrentModification, InvalidState, PublishFailed
from escrow import EscrowAccountManager
from models import Deal, VerificationCheck, utcnow
from publishing import PostContent
from state_machine import DealStateMachine, DealStatus

logger = logging.getLogger(__name__)

REASON_PUBLISH_FAILED = 'PUBLISH_FAILED'
REASON_DELETED = 'DELETED'
REASON_MODIFIED = 'MODIFIED'


def build_post_content(deal: Deal) -> PostContent:
    """
    Post body for a deal's approved creative.

    Media precedence: the creative's first attachment, else the brief's
    suggested image when the advertiser opted in.
    """
    creative = deal.current_creative
    if not creative:
        raise InvalidState(f"Deal {deal.id} has no creative to publish")

    media_url = None
    if creative.media_urls:
        media_url = creative.media_urls[0]
    elif deal.publish_with_image and deal.brief and deal.brief.suggested_image_url:
        media_url = deal.brief.suggested_image_url

    return PostContent(text=creative.text, media_url=media_url, buttons=list(creative.buttons))


class ReconciliationScheduler:
    """Four independent periodic jobs over the deal store"""

    def __init__(
        self,
        deal_service: DealService,
        escrow: EscrowAccountManager,
        publisher,
        max_concurrency: int = None,
        payment_interval: int = None,
        publish_interval: int = None,
        verify_interval: int = None,
        timeout_interval: int = None,
    ):
        self.deals = deal_service
        self.store = deal_service.store
        self.escrow = escrow
        self.publisher = publisher
        self.max_concurrency = max_concurrency or config.SCHEDULER_MAX_CONCURRENCY
        self.intervals = {
            'payment_poll': payment_interval or config.PAYMENT_POLL_INTERVAL,
            'auto_publish': publish_interval or config.AUTO_POST_INTERVAL,
            'verification': verify_interval or config.VERIFY_INTERVAL,
            'timeout_sweep': timeout_interval or config.TIMEOUT_SWEEP_INTERVAL,
        }
        self.running = False
        self._future = None
        # Deals currently being handled by this process
        self._in_flight: Set[str] = set()

    # =========================================================================
    # FAN-OUT
    # =========================================================================

    async def _fan_out(
        self,
        job_name: str,
        deals: List[Deal],
        handler: Callable[[Deal], Awaitable[bool]],
    ) -> Dict[str, Any]:
        report = {'job': job_name, 'processed': 0, 'advanced': 0, 'skipped': 0, 'errors': 0}
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(deal: Deal) -> Optional[bool]:
            if deal.id in self._in_flight:
                report['skipped'] += 1
                return False
            self._in_flight.add(deal.id)
            try:
                async with semaphore:
                    return bool(await handler(deal))
            except Exception as e:
                report['errors'] += 1
                logger.error(f"{job_name}: deal {deal.id} failed: {e}")
                return None
            finally:
                self._in_flight.discard(deal.id)

        results = await asyncio.gather(*(run(deal) for deal in deals))
        report['processed'] = len(deals)
        report['advanced'] = sum(1 for r in results if r)
        if deals:
            logger.info(
                f"{job_name}: processed={report['processed']} advanced={report['advanced']} "
                f"errors={report['errors']}"
            )
        return report

    # =========================================================================
    # PAYMENT POLL
    # =========================================================================

    async def poll_payments(self, now: datetime = None) -> Dict[str, Any]:
        deals = self.store.query_deals([DealStatus.PENDING_PAYMENT])
        return await self._fan_out('payment_poll', deals, self._check_payment)

    async def _check_payment(self, deal: Deal) -> bool:
        result = await self.escrow.confirm_funding(deal.id)
        if result.advanced:
            await self.deals.notify_funded(result.deal)
        return result.advanced

    # =========================================================================
    # AUTO-PUBLISH
    # =========================================================================

    async def publish_due(self, now: datetime = None) -> Dict[str, Any]:
        now = now or utcnow()
        deals = self.store.query_deals([DealStatus.SCHEDULED], scheduled_before=now)
        return await self._fan_out('auto_publish', deals, lambda d: self._publish(d, now))

    async def _publish(self, deal: Deal, now: datetime) -> bool:
        # No retry: any failure here goes straight to dispute
        try:
            channel = self.store.get_channel(deal.channel_id)
            if not channel:
                raise PublishFailed(f"Channel {deal.channel_id} not found")
            content = build_post_content(deal)
            post_ref = await self.publisher.publish(channel.chat_id, content)
        except Exception as e:
            logger.error(f"Auto-post failed for deal {deal.id}: {e}")
            disputed = self.deals.system_transition(
                deal, DealStatus.DISPUTED,
                dispute_reason=REASON_PUBLISH_FAILED,
                last_activity_at=now,
            )
            await self.deals.notify_parties(disputed, 'publish_failed')
            await self.deals.notify_arbiters(disputed, f"Auto-post failed: {e}")
            return True

        try:
            posted = self.deals.system_transition(
                deal, DealStatus.POSTED,
                post_ref=post_ref,
                posted_at=now,
                last_activity_at=now,
            )
        except ConcurrentModification:
            logger.error(
                f"Deal {deal.id} changed while publishing, orphan post "
                f"message_id={post_ref} left in chat {channel.chat_id}"
            )
            raise
        logger.info(f"Successfully posted deal {deal.id}, message_id={post_ref}")
        await self.deals.notify_user(
            deal.advertiser_id, 'posted', self.deals._notification_data(posted)
        )
        return True

    # =========================================================================
    # DELIVERY VERIFICATION
    # =========================================================================

    async def verify_posted(self, now: datetime = None) -> Dict[str, Any]:
        now = now or utcnow()
        deals = self.store.query_deals([DealStatus.POSTED, DealStatus.VERIFIED])
        return await self._fan_out('verification', deals, lambda d: self._verify(d, now))

    async def _verify(self, deal: Deal, now: datetime) -> bool:
        if deal.status == DealStatus.VERIFIED:
            # Release failed on an earlier pass (e.g. no payout address yet)
            await self._release(deal)
            return True

        channel = self.store.get_channel(deal.channel_id)
        if not channel or deal.post_ref is None:
            raise InvalidState(f"Deal {deal.id} has no post to verify")

        outcome = await self.publisher.verify(channel.chat_id, deal.post_ref, build_post_content(deal))
        check = VerificationCheck(
            checked_at=now, post_exists=outcome.exists, post_unmodified=outcome.unmodified
        )
        checks = list(deal.verification_checks) + [check]

        if not outcome.exists or not outcome.unmodified:
            reason = REASON_DELETED if not outcome.exists else REASON_MODIFIED
            logger.warning(f"Post for deal {deal.id} failed verification: {reason}")
            disputed = self.deals.system_transition(
                deal, DealStatus.DISPUTED,
                verification_checks=checks,
                dispute_reason=reason,
                last_activity_at=now,
            )
            await self.deals.notify_parties(disputed, 'disputed', {'reason': reason})
            await self.deals.notify_arbiters(disputed, reason)
            return True

        held_for = now - deal.posted_at if deal.posted_at else timedelta(0)
        if deal.posted_at and held_for >= timedelta(hours=deal.post_duration_hours):
            verified = self.deals.system_transition(
                deal, DealStatus.VERIFIED,
                verification_checks=checks,
                last_activity_at=now,
            )
            await self._release(verified)
            return True

        # Still inside the hold period: record the check only
        updated = self.store.update_deal(deal.id, DealStatus.POSTED, verification_checks=checks)
        if not updated:
            logger.info(f"Deal {deal.id} changed during verification, check dropped")
        return False

    async def _release(self, deal: Deal):
        result = await self.escrow.release(deal.id, expected_status=DealStatus.VERIFIED)
        if result.already_settled:
            return
        await self.deals.notify_parties(result.deal, 'completed', {'payout': result.amount})

    # =========================================================================
    # TIMEOUT SWEEP
    # =========================================================================

    async def sweep_timeouts(self, now: datetime = None) -> Dict[str, Any]:
        now = now or utcnow()
        deals = self.store.query_deals(DealStateMachine.AWAITING_ACTION, deadline_before=now)
        return await self._fan_out('timeout_sweep', deals, lambda d: self._expire(d, now))

    async def _expire(self, deal: Deal, now: datetime) -> bool:
        balance = 0.0
        if deal.escrow_account_ref is not None:
            balance = await self.escrow.current_balance(deal)

        if balance > 0:
            result = await self.escrow.refund(deal.id, expected_status=deal.status)
            if result.already_settled:
                return False
            logger.info(f"Deal {deal.id} timed out in {deal.status.value}, refunded {result.amount} TON")
            await self.deals.notify_parties(
                result.deal, 'timeout',
                advertiser_extra={'details': f"💸 Your escrow of {result.amount} TON has been refunded.\n"}
            )
            return True

        cancelled = self.deals.system_transition(
            deal, DealStatus.CANCELLED,
            cancellation_reason='Timed out waiting for action',
            last_activity_at=now,
        )
        logger.info(f"Deal {deal.id} timed out in {deal.status.value}, cancelled")
        await self.deals.notify_parties(cancelled, 'timeout')
        return True

    # =========================================================================
    # RUN LOOP
    # =========================================================================

    def jobs(self) -> Dict[str, Callable[..., Awaitable[Dict[str, Any]]]]:
        return {
            'payment_poll': self.poll_payments,
            'auto_publish': self.publish_due,
            'verification': self.verify_posted,
            'timeout_sweep': self.sweep_timeouts,
        }

    async def _periodic(self, name: str, job, interval: int):
        while self.running:
            try:
                await job()
            except Exception as e:
                logger.error(f"Scheduler job {name} error: {e}")
            await asyncio.sleep(interval)

    async def run_forever(self):
        self.running = True
        await asyncio.gather(*(
            self._periodic(name, job, self.intervals[name]) for name, job in self.jobs().items()
        ))

    def start(self, loop: asyncio.AbstractEventLoop):
        """Start the jobs on an event loop running in another thread"""
        if self._future is not None:
            return
        self.running = True
        self._future = asyncio.run_coroutine_threadsafe(self.run_forever(), loop)
        logger.info("Reconciliation scheduler started")

    def stop(self):
        """Stop background scheduler"""
        self.running = False
        if self._future is not None:
            self._future.cancel()
            self._future = None
        logger.info("Reconciliation scheduler stopped")
