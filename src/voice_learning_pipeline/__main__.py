"""
CLI entry point for the Voice Learning Pipeline.

Usage:
    python -m voice_learning_pipeline run-cycle
    python -m voice_learning_pipeline run-scheduler
    python -m voice_learning_pipeline show-pending
    python -m voice_learning_pipeline approve
    python -m voice_learning_pipeline reject
    python -m voice_learning_pipeline kb-stats
    python -m voice_learning_pipeline serve --port 8085

Agent and service settings come from VOICE_LEARNING_* environment variables
(or a .env file); --agent-id / --agent-name override them. Without an
agent id, every agent that passes the discovery filters is analyzed.
"""

import argparse
import asyncio
import json
import sys

import structlog

from .config import PipelineSettings, get_settings
from .errors import ApprovalNotFoundError, FatalPipelineError, LearningPipelineError
from .logging_config import configure_logging
from .models import CycleStatus, utcnow

logger = structlog.get_logger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_cycle(settings: PipelineSettings) -> int:
    """Run one manual cycle."""
    from .pipeline import LearningCycle
    from .scheduler import Scheduler

    cycle = LearningCycle.from_settings(settings)
    try:
        result = await Scheduler(cycle, settings).run_once(manual=True)
        _print(
            {
                "cycle_id": result.cycle_id,
                "status": result.status.value,
                "agent_ids": result.agent_ids,
                "knowledge_base_ids": result.knowledge_base_ids,
                "knowledge_base_id": result.knowledge_base_id,
                "documents_added": result.documents_added,
                "detail": result.detail,
            }
        )
        return 0
    except FatalPipelineError as e:
        logger.critical("cycle_fatal", error_type=type(e).__name__, error=str(e))
        return 2
    finally:
        await cycle.close()


async def run_scheduler(settings: PipelineSettings) -> int:
    """Run the cron-driven scheduler until a fatal error."""
    from .pipeline import LearningCycle
    from .scheduler import Scheduler

    cycle = LearningCycle.from_settings(settings)
    try:
        await Scheduler(cycle, settings).run_forever()
        return 0
    except FatalPipelineError:
        return 2
    finally:
        await cycle.close()


def show_pending(settings: PipelineSettings) -> int:
    from .tasks.approval import PendingApprovalStore

    approval = PendingApprovalStore(settings.state_dir).load()
    if approval is None:
        print("No pending improvements to review")
        return 0

    _print(approval.to_dict())
    return 0


async def approve(settings: PipelineSettings) -> int:
    from .pipeline import LearningCycle

    cycle = LearningCycle.from_settings(settings)
    try:
        result = await cycle.approve()
        _print({"cycle_id": result.cycle_id, "status": result.status.value, "detail": result.detail})
        return 0 if result.status == CycleStatus.APPLIED else 1
    except FatalPipelineError as e:
        logger.critical("approval_fatal", error_type=type(e).__name__, error=str(e))
        return 2
    except LearningPipelineError as e:
        print(str(e))
        return 1
    finally:
        await cycle.close()


def reject(settings: PipelineSettings) -> int:
    from .tasks.approval import PendingApprovalStore

    store = PendingApprovalStore(settings.state_dir)
    try:
        approval = store.require()
    except ApprovalNotFoundError as e:
        print(str(e))
        return 1

    archive = store.resolve(approval, "rejected", utcnow())
    print(f"Improvements rejected and archived to {archive}")
    return 0


async def kb_stats(settings: PipelineSettings) -> int:
    from .pipeline import LearningCycle

    cycle = LearningCycle.from_settings(settings)
    try:
        _print(await cycle.knowledge_base_statistics())
        return 0
    except LearningPipelineError as e:
        logger.error("kb_stats_failed", error=str(e))
        return 1
    finally:
        await cycle.close()


def main():
    parser = argparse.ArgumentParser(
        description="Voice Learning Pipeline - continuous learning for voice agents"
    )
    parser.add_argument("--agent-id", help="Agent ID (overrides VOICE_LEARNING_AGENT_ID)")
    parser.add_argument("--agent-name", help="Agent display name")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("run-cycle", help="Run one learning cycle now")
    subparsers.add_parser("run-scheduler", help="Run cycles on the configured cron schedule")
    subparsers.add_parser("show-pending", help="Show the proposal awaiting approval")
    subparsers.add_parser("approve", help="Approve and apply the pending proposal")
    subparsers.add_parser("reject", help="Reject the pending proposal")
    subparsers.add_parser("kb-stats", help="Show the target agents' knowledge base contents")
    serve_parser = subparsers.add_parser("serve", help="Run the operator API server")
    serve_parser.add_argument("--port", type=int, default=None, help="Listen port")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    overrides = {}
    if args.agent_id:
        overrides["agent_id"] = args.agent_id
    if args.agent_name:
        overrides["agent_name"] = args.agent_name
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level)

    if args.command == "serve":
        from .api_server import run_server

        run_server(settings, port=args.port)
        return

    if args.command == "run-cycle":
        exit_code = asyncio.run(run_cycle(settings))
    elif args.command == "run-scheduler":
        exit_code = asyncio.run(run_scheduler(settings))
    elif args.command == "show-pending":
        exit_code = show_pending(settings)
    elif args.command == "approve":
        exit_code = asyncio.run(approve(settings))
    elif args.command == "reject":
        exit_code = reject(settings)
    elif args.command == "kb-stats":
        exit_code = asyncio.run(kb_stats(settings))
    else:
        parser.print_help()
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
