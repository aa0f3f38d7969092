from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from .engine import OrchestrationEngine
from .errors import JobValidationError
from .jobs import JobsManager
from .models import JobResult, JobStatus, RunSummary
from .scheduler import DependencyGraph, ExecutionPlan
from .settings import RuntimeSettings
from .status_store import StatusStore

logger = logging.getLogger(__name__)


class Runner:
    """Batch driver: sync discovered jobs, schedule them, and run each group in order.

    Jobs within one execution group run concurrently up to
    ``settings.max_concurrency``; a group starts only after every job of the
    previous group has finished.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings,
        store: StatusStore,
        jobs: JobsManager,
        engine: OrchestrationEngine,
    ) -> None:
        self.settings = settings
        self.store = store
        self.jobs = jobs
        self.engine = engine

    def sync(self) -> tuple[list[str], list[str]]:
        added, removed = self.store.sync(self.jobs.discover_jobs())
        if added:
            logger.info("Discovered %d new job(s): %s", len(added), ", ".join(added))
        return added, removed

    def plan(self, job_ids: list[str]) -> ExecutionPlan:
        """Order ``job_ids`` into execution groups; invalid jobs are marked failed and dropped."""
        parsed, errors = self.jobs.parse_all()
        wanted = set(job_ids)
        for job_id, message in sorted(errors.items()):
            if job_id in wanted:
                logger.error("Invalid job: %s", message)
                self.store.set_failed(job_id, message)
                self.store.mark_ran(job_id)
        runnable = [job_id for job_id in job_ids if job_id not in errors]
        plan = DependencyGraph.build(parsed).order_groups(runnable)
        if plan.cycle_detected:
            logger.warning(
                "Jobs %s form a dependency cycle and will run together without ordering guarantees",
                ", ".join(plan.cyclic_jobs),
            )
        return plan

    def run_all(self, *, resume: bool = False, stop_on_fail: bool = False, include_ran: bool = False) -> RunSummary:
        self.sync()

        stuck = self.store.stuck_jobs()
        resumed: list[str] = []
        if stuck:
            if resume:
                logger.info("Resuming %d stuck job(s): %s", len(stuck), ", ".join(stuck))
                self.store.update_many((job_id, JobStatus.CREATED) for job_id in stuck)
                resumed = list(stuck)
            else:
                logger.warning(
                    "%d job(s) stuck in a pending state (use --resume to retry): %s",
                    len(stuck),
                    ", ".join(stuck),
                )

        ready = self.store.ready_jobs_including_ran() if include_ran else self.store.ready_jobs()
        # Resumed jobs run even when a previous attempt already marked them ran.
        ready += [job_id for job_id in resumed if job_id not in ready]
        if not include_ran:
            skipped = [job_id for job_id in self.store.ready_jobs_including_ran() if job_id not in ready]
            if skipped:
                logger.info("Skipping %d job(s) that already ran (use --include-ran to rerun)", len(skipped))
        else:
            skipped = []

        summary = RunSummary(skipped=len(skipped))
        if not ready:
            logger.info("No jobs ready to run")
            return summary
        return self._run_plan(self.plan(ready), summary, stop_on_fail=stop_on_fail)

    def run_batch(self, job_ids: list[str], *, stop_on_fail: bool = False) -> RunSummary:
        """Run an explicit list of jobs in dependency order, regardless of their ran flag."""
        self.sync()
        for job_id in job_ids:
            self.store.get(job_id)
        return self._run_plan(self.plan(list(job_ids)), RunSummary(), stop_on_fail=stop_on_fail)

    def run_single(self, job_id: str) -> JobResult:
        self.sync()
        try:
            self.jobs.parse_job(job_id)
        except JobValidationError as exc:
            self.store.set_failed(job_id, str(exc))
            self.store.mark_ran(job_id)
            return JobResult(job_id=job_id, status=JobStatus.FAIL, error=str(exc))
        return self.engine.run(job_id)

    def _run_plan(self, plan: ExecutionPlan, summary: RunSummary, *, stop_on_fail: bool) -> RunSummary:
        workers = max(1, self.settings.max_concurrency)
        for index, group in enumerate(plan.groups):
            logger.info("Running group %d/%d: %s", index + 1, len(plan.groups), ", ".join(group))
            if workers == 1 or len(group) == 1:
                results = [self.engine.run(job_id) for job_id in group]
            else:
                with ThreadPoolExecutor(max_workers=min(workers, len(group))) as executor:
                    results = list(executor.map(self.engine.run, group))
            for result in results:
                summary.record(result)
            failed = [result.job_id for result in results if result.status is not JobStatus.PASS]
            if failed and stop_on_fail:
                remaining = sum(len(later) for later in plan.groups[index + 1 :])
                logger.warning(
                    "Stopping after group %d: %s did not pass; %d job(s) not started",
                    index + 1,
                    ", ".join(failed),
                    remaining,
                )
                break
        logger.info(
            "Run complete: %d processed, %d passed, %d failed, %d skipped",
            summary.processed,
            summary.passed,
            summary.failed,
            summary.skipped,
        )
        return summary
