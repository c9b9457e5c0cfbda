import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from database import SessionLocal
from models import RecurringExpense
from recurrence import Clock, RolloverEngine, local_today


logging.basicConfig(level=get_settings().log_level)
logger = logging.getLogger(__name__)


def users_with_due_expenses(session: Session, clock: Clock = local_today) -> list[int]:
    today = clock()
    stmt = (
        select(RecurringExpense.user_id)
        .where(
            RecurringExpense.is_active.is_(True),
            RecurringExpense.auto_add.is_(True),
            RecurringExpense.next_due.is_not(None),
            RecurringExpense.next_due <= today,
        )
        .distinct()
        .order_by(RecurringExpense.user_id)
    )
    return list(session.scalars(stmt).all())


class SchedulerManager:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        clock: Optional[Clock] = None,
    ) -> None:
        settings = get_settings()
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock or local_today
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_job(self, source: str = "manual") -> int:
        logger.info(f"scheduler_run: source={source}")
        with self.session_factory() as session:
            user_ids = users_with_due_expenses(session, self.clock)

        total = 0
        for user_id in user_ids:
            # one session per user so a broken user cannot poison the others
            with self.session_factory() as session:
                try:
                    engine = RolloverEngine(session, user_id, clock=self.clock)
                    total += engine.process_due().processed
                except Exception:
                    session.rollback()
                    logger.exception(
                        f"scheduler_run: source={source} user_id={user_id} failed"
                    )
        logger.info(
            f"scheduler_run: source={source} users={len(user_ids)} "
            f"transactions_created={total}"
        )
        return total

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info("Scheduler disabled by configuration")
            return

        self.run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.scheduler_hour, minute=self.settings.scheduler_minute
        )
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["daily"],
            id="rollover_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self.run_job,
            trigger,
            args=["hourly_safety_net"],
            id="rollover_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily "
            f"{self.settings.scheduler_hour:02d}:{self.settings.scheduler_minute:02d} "
            f"run and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
