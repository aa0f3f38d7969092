"""Entry point for `python -m worksplit` and the `worksplit` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from worksplit.engine import OrchestrationEngine
from worksplit.errors import WorkSplitError
from worksplit.jobs import JobsManager
from worksplit.llm import ChatGenerator
from worksplit.models import JobStatus
from worksplit.runner import Runner
from worksplit.scheduler import DependencyGraph
from worksplit.settings import RuntimeSettings
from worksplit.status_store import StatusStore


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="worksplit", description="Run LLM code-generation jobs from a jobs directory")
    parser.add_argument(
        "--project-root",
        type=Path,
        default=None,
        help="Project directory holding worksplit.toml and the jobs directory (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run ready jobs in dependency order")
    run.add_argument("--job", default=None, help="Run only this job id")
    run.add_argument("--resume", action="store_true", help="Requeue jobs stuck in a pending state")
    run.add_argument("--stop-on-fail", action="store_true", help="Stop before the next group after a failure")
    run.add_argument("--include-ran", action="store_true", help="Also run ready jobs that already ran once")

    status = sub.add_parser("status", help="Show job status")
    status.add_argument("--json", action="store_true", help="Print the raw status entries as JSON")

    reset = sub.add_parser("reset", help="Return jobs to the created state")
    target = reset.add_mutually_exclusive_group(required=True)
    target.add_argument("job_id", nargs="?", default=None, help="Job id to reset")
    target.add_argument("--all-failed", action="store_true", help="Reset every failed or partial job")

    sub.add_parser("deps", help="Show inferred dependencies and execution groups")
    sub.add_parser("validate", help="Validate every job file")

    preview = sub.add_parser("preview-edit", help="Show which edits an edit-mode job would apply, without writing")
    preview.add_argument("job_id", help="Edit-mode job id")
    return parser.parse_args(argv)


def _engine(settings: RuntimeSettings, store: StatusStore, jobs: JobsManager) -> OrchestrationEngine:
    generator = ChatGenerator.from_settings(settings, repo_root=settings.project_root_path)
    return OrchestrationEngine(settings=settings, store=store, jobs=jobs, generator=generator)


def cmd_run(args: argparse.Namespace, settings: RuntimeSettings, store: StatusStore, jobs: JobsManager) -> int:
    runner = Runner(settings=settings, store=store, jobs=jobs, engine=_engine(settings, store, jobs))
    if args.job:
        result = runner.run_single(args.job)
        print(f"{result.job_id}: {result.status.value}" + (f" ({result.error.splitlines()[0]})" if result.error else ""))
        return 0 if result.status is JobStatus.PASS else 1
    summary = runner.run_all(resume=args.resume, stop_on_fail=args.stop_on_fail, include_ran=args.include_ran)
    for result in summary.results:
        line = f"  {result.job_id}: {result.status.value}"
        if result.error:
            line += f" ({result.error.splitlines()[0]})"
        print(line)
    print(
        f"Processed: {summary.processed} | Passed: {summary.passed} | "
        f"Failed: {summary.failed} | Skipped: {summary.skipped}"
    )
    print(store.summary())
    return 1 if summary.failed else 0


def cmd_status(args: argparse.Namespace, store: StatusStore, jobs: JobsManager) -> int:
    store.sync(jobs.discover_jobs())
    entries = store.entries()
    if args.json:
        print(json.dumps([entry.model_dump(mode="json", exclude_none=True) for entry in entries], indent=2))
        return 0
    for entry in entries:
        marker = "*" if entry.ran else " "
        line = f"{marker} {entry.id:<32} {entry.status.value}"
        if entry.error:
            line += f"  {entry.error.splitlines()[0]}"
        print(line)
        for failed in store.failed_edits(entry.id):
            hint = f" (line {failed.suggested_line})" if failed.suggested_line is not None else ""
            print(f"      failed edit in {failed.file_path}: {failed.find_preview!r}{hint}")
    print(store.summary())
    review = store.ran_non_pass_jobs()
    if review:
        print(f"Needs review: {', '.join(review)}")
    return 0


def cmd_reset(args: argparse.Namespace, store: StatusStore, jobs: JobsManager) -> int:
    store.sync(jobs.discover_jobs())
    if args.all_failed:
        targets = sorted(set(store.by_status(JobStatus.FAIL)) | set(store.partial_jobs()))
    else:
        targets = [args.job_id]
    for job_id in targets:
        store.reset_job(job_id)
        print(f"Reset {job_id}")
    if not targets:
        print("No failed jobs to reset")
    return 0


def cmd_deps(jobs: JobsManager) -> int:
    parsed, errors = jobs.parse_all()
    graph = DependencyGraph.build(parsed)
    for job in parsed:
        deps = graph.get_dependencies(job.id)
        print(f"{job.id} <- {', '.join(deps) if deps else '(none)'}")
    plan = graph.order_groups(job.id for job in parsed)
    for index, group in enumerate(plan.groups):
        print(f"Group {index}: {', '.join(group)}")
    if plan.cycle_detected:
        print(f"Cycle detected among: {', '.join(plan.cyclic_jobs)}")
    for message in sorted(errors.values()):
        print(f"Invalid: {message}")
    return 1 if errors or plan.cycle_detected else 0


def cmd_validate(jobs: JobsManager) -> int:
    parsed, errors = jobs.parse_all()
    for job in parsed:
        print(f"ok       {job.id} ({job.mode})")
    for message in sorted(errors.values()):
        print(f"invalid  {message}")
    print(f"{len(parsed)} valid, {len(errors)} invalid")
    return 1 if errors else 0


def cmd_preview_edit(args: argparse.Namespace, settings: RuntimeSettings, store: StatusStore, jobs: JobsManager) -> int:
    preview = _engine(settings, store, jobs).dry_run_edit(args.job_id)
    for report in preview.reports:
        print(f"{report.file_path}: {len(report.applied)} applied, {len(report.failed)} failed")
        for _edit, error in report.failed:
            print(f"  - {str(error).splitlines()[0]}")
    for edit in preview.unmatched:
        print(f"{edit.file_path}: not a target file of {args.job_id}")
    for suggestion in preview.suggestions:
        print(f"hint: {suggestion}")
    return 0 if preview.failed_count == 0 else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.load(args.project_root.resolve() if args.project_root else None)
    except (OSError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    jobs = JobsManager(settings)
    try:
        if args.command == "validate":
            return cmd_validate(jobs)
        if args.command == "deps":
            return cmd_deps(jobs)
        store = StatusStore(settings.jobs_dir_path)
        if args.command == "status":
            return cmd_status(args, store, jobs)
        if args.command == "reset":
            return cmd_reset(args, store, jobs)
        if args.command == "preview-edit":
            return cmd_preview_edit(args, settings, store, jobs)
        return cmd_run(args, settings, store, jobs)
    except (WorkSplitError, RuntimeError) as exc:
        logging.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
