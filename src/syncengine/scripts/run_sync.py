"""
One-off sync operations from the command line.

Usage:
    python -m syncengine sync --connection 1 [--mapping 2] [--type push]
    python -m syncengine retry --log 17

Prints the ActionResult as JSON. Exit status is 1 when the operation was
rejected or aborted.
"""
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m syncengine")
    sub = parser.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Trigger a sync for a connection")
    sync.add_argument("--connection", type=int, required=True, help="Connection id")
    sync.add_argument("--mapping", type=int, default=None, help="Only this mapping")
    sync.add_argument(
        "--type", dest="sync_type", default="push", choices=["push", "pull", "full_sync"]
    )

    retry = sub.add_parser("retry", help="Retry the failed records of a sync log")
    retry.add_argument("--log", dest="sync_log_id", type=int, required=True, help="Sync log id")
    return parser


async def _execute(args: argparse.Namespace):
    from syncengine.config import get_settings
    from syncengine.db.engine import get_engine
    from syncengine.models.schemas import CallerContext
    from syncengine.sync.service import SyncService

    caller = CallerContext(user_id="cli", role=get_settings().scheduler_role)
    service = SyncService(engine=get_engine())

    if args.command == "sync":
        return await service.trigger_manual_sync(
            caller, args.connection, args.mapping, args.sync_type
        )
    return await service.retry_failed_sync(caller, args.sync_log_id)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    result = asyncio.run(_execute(args))
    print(result.model_dump_json(indent=2))
    if not result.success:
        logger.error("%s failed: %s", args.command, result.error)
        return 1
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(main())
