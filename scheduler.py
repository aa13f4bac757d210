import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from aggregation import AggregationEngine
from config import get_settings
from database import session_scope


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self.interval_minutes = settings.recompute_interval_minutes

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        with session_scope() as session:
            count = AggregationEngine(session).recompute_all()
            logger.info(f"scheduler_run: source={source} budgets_recomputed={count}")

    def start(self) -> None:
        self._run_job("startup")

        if self.interval_minutes > 0:
            trigger = IntervalTrigger(minutes=self.interval_minutes)
            self.scheduler.add_job(
                self._run_job,
                trigger,
                args=["periodic_recompute"],
                id="aggregate_recompute",
                replace_existing=True,
                misfire_grace_time=300,
                max_instances=1,
                coalesce=True,
            )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with recompute every {self.interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
