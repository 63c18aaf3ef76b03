import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import reconcile_budgets


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.enabled = settings.reconcile_enabled
        self.hour = settings.reconcile_hour
        self.minute = settings.reconcile_minute
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> int:
        logger.info(f"reconcile_run: source={source}")
        with session_scope() as session:
            drifted = reconcile_budgets(session)
        logger.info(f"reconcile_run: source={source} budgets_drifted={drifted}")
        return drifted

    def start(self) -> None:
        if not self.enabled:
            logger.info("Budget reconciliation disabled")
            return

        trigger = CronTrigger(hour=self.hour, minute=self.minute)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=[f"daily_{self.hour:02d}:{self.minute:02d}"],
            id="budget_reconcile_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily budget reconciliation at "
            f"{self.hour:02d}:{self.minute:02d}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
