"""APScheduler wrapper for the lifecycle sweeps."""

from __future__ import annotations

from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger


class SweepScheduler:
    """Minimal wrapper around AsyncIOScheduler for periodic sweep jobs."""

    def __init__(self) -> None:
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def schedule_every(
        self,
        job_id: str,
        func: Callable[[], object],
        *,
        minutes: int = 0,
        hours: int = 0,
    ) -> None:
        trigger = IntervalTrigger(minutes=minutes, hours=hours)
        # one run at a time; missed runs coalesce
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]


__all__ = ["SweepScheduler"]
