"""
Voice Learning Pipeline API Server.

Operator endpoints for triggering cycles on demand, reading the cycle log,
and resolving pending approvals.
"""

import asyncio
import os
from typing import Any, Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import PipelineSettings, get_settings
from .errors import ApprovalNotFoundError, CycleInProgressError, FatalPipelineError, LearningPipelineError
from .models import CycleResult
from .pipeline import LearningCycle
from .scheduler import Scheduler

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------


class CycleRunRequest(BaseModel):
    """Request to run a learning cycle now."""

    wait: bool = Field(
        default=True,
        description="Wait for the cycle to finish; false schedules it in the background",
    )


class CycleResponse(BaseModel):
    status: str
    cycle_id: Optional[str] = None
    cycle_status: Optional[str] = None
    knowledge_base_id: Optional[str] = None
    knowledge_base_ids: Dict[str, str] = {}
    agent_ids: List[str] = []
    documents_added: int = 0
    detail: str = ""

    @classmethod
    def from_result(cls, result: CycleResult) -> "CycleResponse":
        return cls(
            status="completed",
            cycle_id=result.cycle_id,
            cycle_status=result.status.value,
            knowledge_base_id=result.knowledge_base_id,
            knowledge_base_ids=result.knowledge_base_ids,
            agent_ids=result.agent_ids,
            documents_added=result.documents_added,
            detail=result.detail,
        )


class RejectResponse(BaseModel):
    status: str
    archive: str


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[PipelineSettings] = None,
    scheduler: Optional[Scheduler] = None,
) -> FastAPI:
    settings = settings or get_settings()
    if scheduler is None:
        scheduler = Scheduler(LearningCycle.from_settings(settings), settings)

    app = FastAPI(
        title="Voice Learning Pipeline API",
        description="Operator API for the voice agent learning cycle",
        version="1.0.0",
    )
    app.state.settings = settings
    app.state.scheduler = scheduler
    background: set = set()

    async def _run_in_background() -> None:
        try:
            result = await scheduler.run_once(manual=True)
            logger.info(
                "background_cycle_completed",
                cycle_id=result.cycle_id,
                status=result.status.value,
            )
        except CycleInProgressError:
            logger.info("background_cycle_skipped_in_progress")
        except FatalPipelineError as e:
            logger.critical("background_cycle_fatal", error_type=type(e).__name__, error=str(e))

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "voice-learning-pipeline",
            "agent_id": settings.agent_id,
            "cycle_running": scheduler.busy,
        }

    @app.post("/api/v1/cycles/run", response_model=CycleResponse)
    async def run_cycle(request: CycleRunRequest):
        """
        Trigger a learning cycle outside the cron schedule.

        Rejected with 409 while another cycle is in flight.
        """
        if scheduler.busy:
            raise HTTPException(status_code=409, detail="A learning cycle is already running")

        if not request.wait:
            task = asyncio.create_task(_run_in_background())
            background.add(task)
            task.add_done_callback(background.discard)
            logger.info("cycle_triggered", agent_id=settings.agent_id, wait=False)
            return CycleResponse(status="scheduled", detail="learning cycle scheduled")

        logger.info("cycle_triggered", agent_id=settings.agent_id, wait=True)
        try:
            result = await scheduler.run_once(manual=True)
        except CycleInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except FatalPipelineError as e:
            logger.critical("cycle_fatal", error_type=type(e).__name__, error=str(e))
            raise HTTPException(status_code=500, detail=str(e))
        return CycleResponse.from_result(result)

    @app.get("/api/v1/cycles")
    async def list_cycles(limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent cycle log entries, newest last."""
        return scheduler.cycle.cycle_log.entries(limit=max(1, limit))

    @app.get("/api/v1/approvals/pending")
    async def pending_approval():
        approval = scheduler.cycle.approvals.load()
        if approval is None:
            raise HTTPException(status_code=404, detail="No pending improvements to review")
        return approval.to_dict()

    @app.post("/api/v1/approvals/approve", response_model=CycleResponse)
    async def approve_pending():
        try:
            result = await scheduler.approve_pending()
        except ApprovalNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except CycleInProgressError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except FatalPipelineError as e:
            logger.critical("approval_fatal", error_type=type(e).__name__, error=str(e))
            raise HTTPException(status_code=500, detail=str(e))
        return CycleResponse.from_result(result)

    @app.post("/api/v1/approvals/reject", response_model=RejectResponse)
    async def reject_pending():
        try:
            archive = scheduler.cycle.reject()
        except ApprovalNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return RejectResponse(status="rejected", archive=str(archive))

    @app.get("/api/v1/knowledge-base")
    async def knowledge_base_stats():
        try:
            return {"knowledge_bases": await scheduler.cycle.knowledge_base_statistics()}
        except LearningPipelineError as e:
            raise HTTPException(status_code=502, detail=str(e))

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run_server(settings: Optional[PipelineSettings] = None, port: Optional[int] = None):
    """Run the API server."""
    import uvicorn

    port = port or int(os.getenv("PIPELINE_API_PORT", "8085"))
    app = create_app(settings)
    logger.info("server_starting", port=port)
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run_server()
