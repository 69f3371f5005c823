import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import reconcile_automated_accounts


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    """Periodically re-derives income snapshots for opted-in accounts.

    Reconciliation is idempotent, so this only repairs accounts left
    inconsistent by a failed write.
    """

    def __init__(self) -> None:
        settings = get_settings()
        self.interval_minutes = settings.reconcile_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            results = reconcile_automated_accounts(session)
            logger.info(
                f"scheduler_run: source={source} accounts_reconciled={len(results)}"
            )

    def start(self) -> None:
        if self.interval_minutes <= 0:
            logger.info("Scheduler disabled (reconcile interval is 0)")
            return

        self._run_job("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["interval_safety_net"],
            id="reconcile_safety_net",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with {self.interval_minutes} minute reconcile safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
