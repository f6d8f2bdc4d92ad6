import asyncio
import dataclasses
import logging

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect

from diagram_gen.dependencies import Services, get_services
from diagram_gen.errors import PipelineError
from diagram_gen.models import (
    AudioUnit,
    GenerationOptions,
    GenerationResult,
    PipelineState,
    unit_from_record,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pipeline"])


class DiagramRequest(GenerationOptions):
    bypass_cache: bool = False

    def options(self) -> GenerationOptions:
        return GenerationOptions(**self.model_dump(exclude={"bypass_cache"}))


def result_view(result: GenerationResult) -> dict:
    view = dataclasses.asdict(result)
    view["issues"] = list(result.issues)
    return view


def state_view(state: PipelineState) -> dict:
    return {"phase": state.phase.value, "error": state.error}


# ==================================================================
# REST endpoints
# ==================================================================


@router.post("/api/transcriptions")
async def transcribe_stored_audio(services: Services = Depends(get_services)) -> dict:
    """Transcribe every stored audio unit that is not yet recognized."""
    records = await services.store.query_by_type("audio")
    units = [unit_from_record(r) for r in records]
    audio = [u for u in units if isinstance(u, AudioUnit)]
    summary = await services.transcriber.transcribe_all(audio)
    return dataclasses.asdict(summary)


@router.post("/api/diagrams")
async def generate_diagram(
    body: DiagramRequest | None = None, services: Services = Depends(get_services)
) -> dict:
    body = body or DiagramRequest()
    try:
        result = await services.pipeline.generate_from_store(
            body.options(), bypass_cache=body.bypass_cache
        )
    except PipelineError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return result_view(result)


@router.get("/api/pipeline/state")
async def pipeline_state(services: Services = Depends(get_services)) -> dict:
    return state_view(services.pipeline.get_state())


# ==================================================================
# WebSocket endpoint
# ==================================================================


@router.websocket("/ws/pipeline")
async def pipeline_updates(websocket: WebSocket, services: Services = Depends(get_services)) -> None:
    """Live stream of pipeline phase changes."""
    await websocket.accept()

    queue: asyncio.Queue[PipelineState] = asyncio.Queue()
    handle = services.pipeline.subscribe(queue.put_nowait)

    async def _forward() -> None:
        while True:
            state = await queue.get()
            await websocket.send_json({"type": "pipeline_state", **state_view(state)})

    await websocket.send_json(
        {"type": "pipeline_state", **state_view(services.pipeline.get_state())}
    )
    sender = asyncio.create_task(_forward())
    try:
        while True:
            await websocket.receive_text()  # keep-alive; client sends pings
    except WebSocketDisconnect:
        logger.debug("Pipeline websocket disconnected")
    finally:
        services.pipeline.unsubscribe(handle)
        sender.cancel()
