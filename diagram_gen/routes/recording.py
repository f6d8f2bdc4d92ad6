import asyncio
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from diagram_gen.dependencies import Services, get_services
from diagram_gen.errors import PipelineError
from diagram_gen.models import UNIT_KINDS, GenerationOptions, unit_from_record
from diagram_gen.recording import RecordingWorker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recording", tags=["recording"])

# In-memory state of the single microphone.
# {"worker": RecordingWorker, "task": asyncio.Task running the pipeline}
_active: dict[str, Any] = {}


class RecordingStart(BaseModel):
    max_duration_seconds: float = Field(default=300.0, gt=0)
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    bypass_cache: bool = False


@router.post("/start")
async def start_recording(
    body: RecordingStart | None = None, services: Services = Depends(get_services)
) -> dict:
    """Open the microphone and run the pipeline once the clip is stopped."""
    body = body or RecordingStart()
    active = _active.get("worker")
    if active is not None and active.is_running:
        raise HTTPException(status_code=409, detail="Recording already active.")

    worker = RecordingWorker(body.max_duration_seconds, services.settings)
    try:
        worker.start()
    except Exception as e:
        logger.exception("Could not open the microphone")
        raise HTTPException(status_code=500, detail=str(e))

    records = await services.store.query_all()
    units = [unit_from_record(r) for r in records if r.get("kind") in UNIT_KINDS]
    task = asyncio.create_task(
        services.pipeline.run(
            units, body.options, capture=worker, bypass_cache=body.bypass_cache
        )
    )
    task.add_done_callback(_log_outcome)
    _active.update(worker=worker, task=task)
    return {"status": "recording"}


@router.post("/stop")
async def stop_recording() -> dict:
    """Close the microphone; the pipeline carries on with the clip."""
    worker: RecordingWorker | None = _active.get("worker")
    if worker is None or not worker.is_running:
        raise HTTPException(status_code=400, detail="No active recording.")

    duration = worker.total_duration_seconds
    worker.stop()
    _active["worker"] = None
    return {"status": "stopped", "duration_seconds": round(duration, 2)}


def _log_outcome(task: asyncio.Task) -> None:
    if _active.get("task") is task:
        _active.pop("task")
    if task.cancelled():
        return
    exc = task.exception()
    if isinstance(exc, PipelineError):
        logger.warning("Recording pipeline failed: %s", exc)
    elif exc is not None:
        logger.error("Recording pipeline crashed", exc_info=exc)
    else:
        logger.info("Recording pipeline finished (%s)", task.result().diagram_kind)
