from __future__ import annotations
import signal
import sys
import threading

from .cli.argument_parser import build_jobs, interactive_chooser, parse_args_with_config
from .core.exceptions import ExitCode, Fatal, format_exception_for_cli
from .core.job import JobResult
from .core.logger import Log
from .core.sanity_checker import SanityChecker
from .core.utils import U
from .orchestrator.batch import BatchCoordinator, BatchPlan
from .orchestrator.orchestrator import ConversionOrchestrator


def _install_signal_handlers(logger, cancel: threading.Event, *, immediate: bool) -> None:
    """SIGINT/SIGTERM set the cancel event; a single job is also interrupted on the spot."""
    def handler(signum, _frame):
        logger.warning(f"Received {signal.Signals(signum).name}; cancelling...")
        cancel.set()
        if immediate:
            raise KeyboardInterrupt
    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def _failure_line(res: JobResult) -> str:
    stage = res.failed_stage.value if res.failed_stage else "?"
    line = f"CT {res.ctid} -> VM {res.vmid} failed at {stage}: {res.reason}"
    if res.hint:
        line += f" -> {res.hint}"
    return line


def main() -> None:
    args, conf, logger = parse_args_with_config()
    if args.dump_config:
        print(U.json_dump(conf))
        sys.exit(0)
    cancel = threading.Event()
    try:
        jobs = build_jobs(logger, args, conf)
        if not all(j.dry_run for j in jobs):
            SanityChecker(logger, args).check_all()
        if len(jobs) == 1:
            _install_signal_handlers(logger, cancel, immediate=True)
            res = ConversionOrchestrator(
                logger,
                jobs[0],
                cancel=cancel,
                discard_resume=args.discard_resume,
                chooser=interactive_chooser(),
                workspace_choice=args.workspace_choice,
            ).run()
            if not res.ok:
                logger.error(_failure_line(res))
            rc = res.exit_code
        else:
            _install_signal_handlers(logger, cancel, immediate=False)

            def runner(job):
                return ConversionOrchestrator(
                    logger,
                    job,
                    cancel=cancel,
                    discard_resume=args.discard_resume,
                    workspace_choice=args.workspace_choice,
                ).run()

            summary = BatchCoordinator(
                logger, BatchPlan(jobs, parallel=args.parallel), runner=runner, cancel=cancel
            ).run()
            for res in summary.failed:
                logger.error(_failure_line(res))
            rc = summary.exit_code
    except Fatal as e:
        logger.error(format_exception_for_cli(e, verbose=args.verbose))
        rc = e.code
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C).")
        rc = ExitCode.INTERRUPTED
    if rc != ExitCode.OK:
        path = Log.log_path(logger)
        if path:
            logger.error(f"Full log: {path}")
    sys.exit(int(rc))


if __name__ == "__main__":
    main()
