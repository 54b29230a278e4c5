import argparse
import asyncio
import logging
import sys

from config import settings
from workflow.models import STAGE_FAILED
from workflow.orchestrator import RunLockedError, WorkflowOrchestrator, stage_names


def configure_logging():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Produce and publish the daily two-host news episode.")
    parser.add_argument('--date', help="Date key YYYY-MM-DD (default: today in RUN_TIMEZONE)")
    parser.add_argument('--force', action='store_true',
                        help="Start a fresh run even if the date is already done or marked failed")
    parser.add_argument('--retry-stage', choices=stage_names(), type=str.upper,
                        help="Move the date's run back to this stage and redo unfinished work from there")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    configure_logging()
    args = parse_args(argv)

    orchestrator = WorkflowOrchestrator()
    try:
        run = asyncio.run(orchestrator.run(args.date, trigger='cli', force=args.force, retry_stage=args.retry_stage))
    except RunLockedError as e:
        print(f"[run_daily] {e}")
        return 2

    print(f"[run_daily] ===== PIPELINE COMPLETE: {run['date']} {run['stage']} =====")
    print(f"[run_daily] outcome={run.get('outcome')} reason={run.get('reason')}")
    if run.get('dropped'):
        for item_id, reason in run['dropped'].items():
            print(f"[run_daily]   dropped {item_id}: {reason}")
    return 1 if run['stage'] == STAGE_FAILED else 0


if __name__ == "__main__":
    sys.exit(main())
