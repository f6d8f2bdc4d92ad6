import time
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field

from diagram_gen.dependencies import Services, get_services
from diagram_gen.models import UNIT_KINDS, AudioUnit, ImageUnit, TextUnit, unit_to_record

router = APIRouter(prefix="/api", tags=["units"])


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------


class TextUnitCreate(BaseModel):
    content: str = Field(min_length=1)
    timestamp_ms: int | None = None


class ImageUnitCreate(BaseModel):
    caption: str | None = None
    timestamp_ms: int | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def public_view(record: dict) -> dict:
    """A stored unit as returned to clients: audio bytes are summarised."""
    view = dict(record)
    if view.get("kind") == "audio":
        encoded = view.pop("raw_bytes", "") or ""
        view["has_audio"] = bool(encoded)
    return view


# ------------------------------------------------------------------
# Unit endpoints
# ------------------------------------------------------------------


@router.post("/units/text")
async def create_text_unit(
    body: TextUnitCreate, services: Services = Depends(get_services)
) -> dict:
    unit = TextUnit(str(uuid.uuid4()), body.timestamp_ms or _now_ms(), body.content)
    record = unit_to_record(unit)
    await services.store.put(unit.id, record)
    return public_view(record)


@router.post("/units/image")
async def create_image_unit(
    body: ImageUnitCreate, services: Services = Depends(get_services)
) -> dict:
    unit = ImageUnit(str(uuid.uuid4()), body.timestamp_ms or _now_ms(), body.caption)
    record = unit_to_record(unit)
    await services.store.put(unit.id, record)
    return public_view(record)


@router.post("/units/audio")
async def create_audio_unit(
    file: UploadFile = File(...),
    duration_ms: int | None = Form(None),
    services: Services = Depends(get_services),
) -> dict:
    """Store an uploaded clip.  Normalization happens when the pipeline runs."""
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded audio file is empty")

    audio_format = file.content_type or "audio/wav"
    if duration_ms is None:
        normalized = await services.pipeline.normalizer.normalize_async(data, audio_format)
        duration_ms = normalized.duration_ms

    unit = AudioUnit(
        id=str(uuid.uuid4()),
        timestamp_ms=_now_ms(),
        raw_bytes=data,
        duration_ms=duration_ms,
        audio_format=audio_format,
    )
    record = unit_to_record(unit)
    await services.store.put(unit.id, record)
    return public_view(record)


@router.get("/units")
async def list_units(services: Services = Depends(get_services)) -> list[dict]:
    records = await services.store.query_all()
    return [public_view(r) for r in records if r.get("kind") in UNIT_KINDS]


@router.get("/units/{unit_id}")
async def get_unit(unit_id: str, services: Services = Depends(get_services)) -> dict:
    record = await services.store.get(unit_id)
    if record is None or record.get("kind") not in UNIT_KINDS:
        raise HTTPException(status_code=404, detail=f"Unit {unit_id} not found")
    return public_view(record)
