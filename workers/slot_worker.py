"""
Slot check worker.

Purpose:
- Every `interval` seconds, pull the subscriptions that are due for a check
- Fetch each distinct course once, concurrently
- Evaluate every subscription against its course, send edge-triggered notifications
- Record one run per checked subscription, failed checks included, and prune old runs

Usage:
- python -m workers.slot_worker

Production notes:
- Run a single worker process per database; cycles of one process never overlap
  (a tick arriving while the previous cycle is still running is skipped)
- One failing course or subscription never aborts the rest of the cycle
"""
import asyncio
import logging
import signal
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from config.settings import settings
from core.errors import EvaluationError
from core.logging import configure_logging
from models.schemas import ActiveSubscription, CourseData, CourseKey, CycleSummary, RunCreate
from services.evaluator import decide, evaluate
from services.notification_service import NotificationService
from services.subscription_store import SubscriptionStore
from tools.course_client import CourseClient
from tools.sms_transport import build_transport

logger = logging.getLogger(__name__)


class SlotWorker:
    """Periodic checker. start()/stop() control the timer, `interval` can change at any time."""

    def __init__(self, store, course_source, notifier, interval: Optional[float] = None,
                 ttl_seconds: Optional[int] = None, due_limit: Optional[int] = None):
        self.store = store
        self.course_source = course_source
        self.notifier = notifier
        self._interval = float(settings.WORKER_INTERVAL_SEC if interval is None else interval)
        self.ttl_seconds = settings.RUN_TTL_SEC if ttl_seconds is None else ttl_seconds
        self.due_limit = settings.DUE_LIMIT if due_limit is None else due_limit
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self.skipped_ticks = 0

    # --- timer control ---

    @property
    def interval(self) -> float:
        return self._interval

    @interval.setter
    def interval(self, value: float) -> None:
        if value is None or value <= 0:
            raise ValueError("interval must be a positive number of seconds")
        self._interval = float(value)
        # restart so the new period applies right away; no tick is forced
        if self.is_running:
            self.start()

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None

    def start(self) -> "SlotWorker":
        """Start the timer; restarts it when already running. Needs a running event loop."""
        if self._timer_task is not None:
            self.stop()
        self._timer_task = asyncio.get_running_loop().create_task(self._tick_loop())
        return self

    def stop(self) -> "SlotWorker":
        """Stop the timer. A cycle already in flight is left to finish."""
        if self._timer_task is None:
            return self
        self._timer_task.cancel()
        self._timer_task = None
        return self

    async def shutdown(self) -> None:
        """Stop the timer and wait for the current cycle to settle."""
        self.stop()
        if self._cycle_task is not None and not self._cycle_task.done():
            await asyncio.gather(self._cycle_task, return_exceptions=True)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.interval_handler()

    def interval_handler(self) -> Optional[asyncio.Task]:
        """Launch one cycle unless the previous one is still running."""
        if self._cycle_task is not None and not self._cycle_task.done():
            self.skipped_ticks += 1
            logger.warning("Previous worker cycle still running, skipping this tick (%d skipped so far)",
                           self.skipped_ticks)
            return None
        self._cycle_task = asyncio.get_running_loop().create_task(self.run_cycle())
        return self._cycle_task

    async def run_cycle(self) -> Optional[CycleSummary]:
        """perform_slot_check() wrapped so that nothing escapes into the timer."""
        logger.info("Worker task starting execution...")
        try:
            summary = await self.perform_slot_check()
        except Exception:
            logger.exception("Worker task encountered an error.")
            return None
        logger.info("Worker task ran successfully, processed %d subscriptions resulting in %d messages being sent.",
                    summary.total, summary.sent)
        return summary

    # --- one cycle ---

    async def perform_slot_check(self) -> CycleSummary:
        due = await self.store.list_due(self.ttl_seconds, self.due_limit)
        groups = self.group_by_course(due)

        results = await asyncio.gather(
            *(self._check_course(key, members) for key, members in groups.items()),
            return_exceptions=True,
        )
        sent = self._count(results)

        try:
            await self.store.prune_runs()
        except Exception as e:
            logger.error("Encountered error while cleaning up past runs: %s", e)

        return CycleSummary(total=len(due), sent=sent)

    @staticmethod
    def group_by_course(due: Iterable[ActiveSubscription]) -> Dict[CourseKey, List[ActiveSubscription]]:
        """One entry per distinct (institution, course, term); incomplete keys are dropped."""
        groups: Dict[CourseKey, List[ActiveSubscription]] = defaultdict(list)
        for active in due:
            sub = active.subscription
            if not (sub.institution_key and sub.course_key and sub.term_key):
                logger.warning("Skipping subscription %s with incomplete course key", sub.access_key)
                continue
            groups[CourseKey(sub.institution_key, sub.course_key, sub.term_key)].append(active)
        return dict(groups)

    async def _check_course(self, key: CourseKey, members: List[ActiveSubscription]) -> int:
        try:
            course = await self.course_source.fetch_course_slots(key.institution_key, key.course_key, key.term_key)
        except Exception as e:
            logger.error("Encountered error while fetching slot data for %s/%s/%s: %s",
                         key.institution_key, key.term_key, key.course_key, e)
            await asyncio.gather(
                *(self._record_failure(active, e) for active in members),
                return_exceptions=True,
            )
            return 0

        results = await asyncio.gather(
            *(self._check_subscription(active, course) for active in members),
            return_exceptions=True,
        )
        return self._count(results)

    async def _check_subscription(self, active: ActiveSubscription, course: Optional[CourseData]) -> int:
        """Returns 1 when a notification was actually delivered, 0 otherwise."""
        sub = active.subscription
        try:
            if not sub.enabled or not sub.verified:
                return 0

            try:
                event = evaluate(sub, course)
            except EvaluationError as e:
                logger.error("Unable to evaluate subscription %s: %s", sub.access_key, e)
                await self._record_failure(active, e, course)
                return 0
            decision = decide(active.notification_sent, event.available_slots)

            notification_sent = decision.notification_sent
            error = None
            delivered = 0
            if decision.dispatch:
                try:
                    await self.notifier.send_notification(sub, event)
                    delivered = 1
                except Exception as e:
                    # leave the edge armed so the next cycle tries again
                    notification_sent = False
                    error = str(e) or e.__class__.__name__
                    logger.error("Failed to send notification for %s: %s", sub.access_key, error)

            await self.store.create_run(
                RunCreate(
                    notification_sent=notification_sent,
                    error=error,
                    source_data=course.model_dump(mode="json") if course is not None else None,
                ),
                sub.id,
            )
            return delivered
        except Exception as e:
            logger.error("Encountered error while performing action on subscription %s (%s/%s/%s): %s",
                         sub.access_key, sub.institution_key, sub.term_key, sub.course_key, e)
            return 0

    async def _record_failure(self, active: ActiveSubscription, error: Exception,
                              course: Optional[CourseData] = None) -> None:
        """
        Record a run for a subscription that could not be evaluated.

        The previous edge state is carried over unchanged; the fresh timestamp moves the
        subscription to the back of the due list so a broken course cannot hog a bounded cycle.
        """
        sub = active.subscription
        if not sub.enabled or not sub.verified:
            return
        try:
            await self.store.create_run(
                RunCreate(
                    notification_sent=active.notification_sent,
                    error=str(error) or error.__class__.__name__,
                    source_data=course.model_dump(mode="json") if course is not None else None,
                ),
                sub.id,
            )
        except Exception as e:
            logger.error("Unable to record failed check for subscription %s: %s", sub.access_key, e)

    @staticmethod
    def _count(results) -> int:
        return sum(r for r in results if isinstance(r, int) and not isinstance(r, bool))


async def main():
    """Entry point for running the worker."""
    configure_logging()
    store = SubscriptionStore()
    course_client = CourseClient()
    notifier = NotificationService(build_transport())
    worker = SlotWorker(store, course_client, notifier)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info("Starting a %s worker process...", settings.APP_NAME)
    await store.open()
    await course_client.open()
    try:
        worker.start()
        logger.info("Worker is now running, checking every %.0f seconds", worker.interval)
        await stop_event.wait()
    finally:
        logger.info("Shutting down %s worker...", settings.APP_NAME)
        await worker.shutdown()
        await course_client.close()
        await store.close()


if __name__ == "__main__":
    # Run worker: python -m workers.slot_worker
    asyncio.run(main())
