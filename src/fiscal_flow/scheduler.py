"""Periodic runner for monitor and margin analysis jobs."""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from fiscal_flow.config import get_settings
from fiscal_flow.monitor import MarginAnalyzer, ProactiveMonitor
from fiscal_flow.store import RecordStore

logger = structlog.get_logger(__name__)


@dataclass
class ScheduledJob:
    """A job run on every scheduler pass."""

    name: str
    handler: Callable[..., Any]
    priority: int = 0  # Lower = runs first
    enabled: bool = True


class MonitorScheduler:
    """Runs registered jobs every ``monitor_interval_seconds``.

    A failing job is logged and the remaining jobs still run; a failing
    pass does not stop the loop.
    """

    def __init__(self, interval_seconds: float | None = None):
        settings = get_settings()
        self._interval = interval_seconds or settings.monitor_interval_seconds
        self._jobs: list[ScheduledJob] = []
        self._is_running = False
        self._is_paused = False
        self._runs = 0
        self._last_run_at: datetime | None = None
        self._logger = logger.bind(component="scheduler")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_paused(self) -> bool:
        return self._is_paused

    @property
    def runs(self) -> int:
        """Number of completed passes."""
        return self._runs

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs)

    def register_job(self, job: ScheduledJob) -> None:
        self._jobs.append(job)
        self._jobs.sort(key=lambda j: j.priority)
        self._logger.debug("job_registered", job=job.name)

    def remove_job(self, name: str) -> bool:
        """Remove a job by name.

        Returns:
            True if the job was found and removed.
        """
        original_len = len(self._jobs)
        self._jobs = [j for j in self._jobs if j.name != name]
        return len(self._jobs) < original_len

    def pause(self) -> None:
        self._is_paused = True
        self._logger.info("scheduler_paused")

    def resume(self) -> None:
        self._is_paused = False
        self._logger.info("scheduler_resumed")

    async def run_once(self) -> dict[str, Any]:
        """Run every enabled job once.

        Returns:
            Mapping of job name to its result, or ``{"error": ...}`` on failure.
        """
        results: dict[str, Any] = {}
        self._logger.info("pass_starting", jobs=len(self._jobs))

        for job in self._jobs:
            if not job.enabled:
                continue
            try:
                if inspect.iscoroutinefunction(job.handler):
                    results[job.name] = await job.handler()
                else:
                    results[job.name] = job.handler()
            except Exception as e:
                self._logger.error("job_error", job=job.name, error=str(e) or repr(e))
                results[job.name] = {"error": str(e) or repr(e)}

        self._runs += 1
        self._last_run_at = datetime.now(UTC)
        self._logger.info("pass_completed", run=self._runs)
        return results

    async def run_continuous(self, max_runs: int | None = None) -> None:
        """Run passes until stopped or ``max_runs`` passes have completed."""
        self._is_running = True
        runs = 0
        self._logger.info("continuous_run_starting", max_runs=max_runs, interval=self._interval)

        while self._is_running:
            if max_runs and runs >= max_runs:
                break
            while self._is_paused and self._is_running:
                await asyncio.sleep(0.1)

            await self.run_once()
            runs += 1
            if max_runs and runs >= max_runs:
                break

            # Sleep in short slices so stop() takes effect promptly
            elapsed = 0.0
            while elapsed < self._interval and self._is_running:
                step = min(0.5, self._interval - elapsed)
                await asyncio.sleep(step)
                elapsed += step

        self._is_running = False
        self._logger.info("continuous_run_ended", runs=runs)

    def stop(self) -> None:
        self._is_running = False
        self._is_paused = False
        self._logger.info("scheduler_stopped")

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._is_running,
            "is_paused": self._is_paused,
            "interval_seconds": self._interval,
            "runs": self._runs,
            "last_run_at": self._last_run_at.isoformat() if self._last_run_at else None,
            "scheduled_jobs": [j.name for j in self._jobs if j.enabled],
        }


def build_scheduler(
    store: RecordStore,
    monitor: ProactiveMonitor,
    analyzer: MarginAnalyzer,
    interval_seconds: float | None = None,
) -> MonitorScheduler:
    """Scheduler with the monitor pass and margin analysis for every active partner."""
    scheduler = MonitorScheduler(interval_seconds)

    async def monitor_pass() -> dict[str, Any]:
        summary = await monitor.run()
        return summary.to_dict()

    async def margin_pass() -> dict[str, Any]:
        partners = await store.select("partners", {"active": True})
        results: dict[str, Any] = {}
        for partner in partners:
            partner_id = str(partner["id"])
            try:
                results[partner_id] = await analyzer.analyze(partner["id"])
            except Exception as e:
                logger.error("margin_analysis_failed", partner_id=partner_id, error=str(e))
                results[partner_id] = {"error": str(e)}
        return results

    scheduler.register_job(ScheduledJob(name="proactive_monitor", handler=monitor_pass, priority=0))
    scheduler.register_job(ScheduledJob(name="margin_analysis", handler=margin_pass, priority=1))
    return scheduler


async def main() -> None:
    """Run the monitor jobs.

    Usage:
        # One pass over every active partner
        python -m fiscal_flow.scheduler

        # Keep running every monitor_interval_seconds
        python -m fiscal_flow.scheduler --continuous

        # Three passes, ten seconds apart
        python -m fiscal_flow.scheduler --continuous --runs=3 --interval=10
    """
    import argparse
    import json
    import sys

    from fiscal_flow.config import configure_logging
    from fiscal_flow.container import build_container

    configure_logging()

    parser = argparse.ArgumentParser(description="Fiscal Flow proactive monitor")
    parser.add_argument(
        "--continuous",
        action="store_true",
        help="Run passes until interrupted (default: a single pass)",
    )
    parser.add_argument("--runs", type=int, default=None, help="Maximum number of passes")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between passes"
    )
    args = parser.parse_args()

    container = build_container()
    scheduler = (
        build_scheduler(container.store, container.monitor, container.analyzer, args.interval)
        if args.interval
        else container.scheduler
    )
    logger.info("starting_monitor", continuous=args.continuous, runs=args.runs)

    try:
        if args.continuous:
            await scheduler.run_continuous(max_runs=args.runs)
        else:
            results = await scheduler.run_once()
            print(json.dumps(results, indent=2, default=str))
    except KeyboardInterrupt:
        logger.info("monitor_interrupted")
    except Exception as e:
        logger.exception("monitor_error", error=str(e))
        sys.exit(1)
    finally:
        await container.close()


if __name__ == "__main__":
    asyncio.run(main())
