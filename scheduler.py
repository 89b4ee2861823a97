import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from config import get_settings
from database import session_scope
from services import audit_balances


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_audit(self, source: str = "manual") -> int:
        logger.info(f"balance_audit_run: source={source}")
        with session_scope() as session:
            reports = audit_balances(session, repair=self.settings.balance_audit_repair)
        drifted = sum(1 for r in reports if not r.is_consistent)
        logger.info(f"balance_audit_run: source={source} drifted={drifted}")
        return drifted

    def start(self) -> None:
        trigger = CronTrigger(hour=self.settings.balance_audit_hour, minute=0)
        self.scheduler.add_job(
            self._run_audit,
            trigger,
            args=["daily"],
            id="balance_audit_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily balance audit at {self.settings.balance_audit_hour:02d}:00"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
