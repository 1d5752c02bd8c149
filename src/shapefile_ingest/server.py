"""FastAPI server exposing ingestion sessions."""

from __future__ import annotations

import io
import logging
import zipfile
from functools import lru_cache
from pathlib import Path

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import get_settings
from .errors import IngestError, SessionBusy, SessionNotFound
from .models import IngestionSession, SchemaField, SessionStatus
from .pipeline import IngestionPipeline
from .session import MemorySessionStore
from .sinks import DuckDBSink
from .storage import LocalComponentStore, component_kind

logger = logging.getLogger(__name__)

app = FastAPI(title="Shapefile Ingest", version="0.1.0")

MAX_FILES = 4


@lru_cache
def get_pipeline() -> IngestionPipeline:
    settings = get_settings()
    return IngestionPipeline(
        store=MemorySessionStore(),
        components=LocalComponentStore(settings.storage_dir),
        sink_factory=lambda destination: DuckDBSink(destination, settings.duckdb_path),
        settings=settings,
    )


class DestinationRequest(BaseModel):
    project_id: str
    dataset_id: str
    table_name: str


class SchemaUpdate(BaseModel):
    fields: list[SchemaField]


class ParseOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    integer_columns: str | list[str] | None = Field(default=None, alias="integerColumns")
    required: list[str] = Field(default_factory=list)


@app.exception_handler(IngestError)
async def ingest_error_handler(request: Request, exc: IngestError) -> JSONResponse:
    if isinstance(exc, SessionNotFound):
        status_code = 404
    elif isinstance(exc, SessionBusy):
        status_code = 409
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"error": str(exc), "kind": exc.kind})


def _session_json(session: IngestionSession) -> dict:
    return session.model_dump(mode="json")


@app.post("/api/upload-session")
async def create_session(pipeline: IngestionPipeline = Depends(get_pipeline)):
    return _session_json(pipeline.create_session())


@app.get("/api/upload-session/{session_id}")
async def get_session(session_id: str, pipeline: IngestionPipeline = Depends(get_pipeline)):
    session = pipeline.get_session(session_id)
    return {
        "session": _session_json(session),
        "files": [c.model_dump(mode="json") for c in session.components],
    }


@app.delete("/api/upload-session/{session_id}", status_code=204)
async def delete_session(session_id: str, pipeline: IngestionPipeline = Depends(get_pipeline)):
    pipeline.delete_session(session_id)


@app.post("/api/upload/{session_id}/files")
async def upload_files(
    session_id: str,
    files: list[UploadFile],
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Attach bundle files to a pending session.

    The form carries either one .zip archive, whose .shp/.shx/.dbf/.prj
    members are unpacked, or at most four loose component files. Files of any
    other kind are skipped.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")

    filename = (files[0].filename or "").lower() if len(files) == 1 else ""
    if filename.endswith(".zip"):
        entries = _extract_zip(await files[0].read())
    else:
        if len(files) > MAX_FILES:
            raise HTTPException(status_code=400, detail=f"At most {MAX_FILES} files per upload")
        entries = [(f.filename or "", await f.read()) for f in files]

    stored = []
    for name, data in entries:
        kind = component_kind(name)
        if kind is None:
            logger.debug("ignoring non-component file %s", name)
            continue
        stored.append(pipeline.add_component(session_id, kind, name, data))

    if not stored:
        raise HTTPException(status_code=400, detail="No shapefile components found")
    return [c.model_dump(mode="json") for c in stored]


def _extract_zip(content: bytes) -> list[tuple[str, bytes]]:
    """Read bundle components out of a zip archive (first of each kind wins)."""
    try:
        archive = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as e:
        raise HTTPException(status_code=400, detail="Uploaded file is not a valid zip archive") from e

    entries: dict[str, tuple[str, bytes]] = {}
    with archive:
        for name in archive.namelist():
            kind = component_kind(name)
            if kind is None or kind.value in entries:
                continue
            entries[kind.value] = (Path(name).name, archive.read(name))
    if "shp" not in entries:
        raise HTTPException(status_code=400, detail="No .shp file found in zip archive")
    return list(entries.values())


@app.post("/api/upload/{session_id}/parse")
async def parse_session(
    session_id: str,
    options: ParseOptions | None = None,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Parse the bundle and propose a schema.

    An optional JSON body forces columns to INTEGER (`integerColumns`, a
    comma-separated string or a list) or marks them REQUIRED (`required`).
    """
    options = options or ParseOptions()
    pipeline.begin_parse(session_id)
    session = await run_in_threadpool(
        pipeline.run_parse,
        session_id,
        required=options.required,
        integer_columns=options.integer_columns,
    )
    body = {
        "session": _session_json(session),
        "featureCount": session.total_features,
        "geometryType": session.geometry_type.value if session.geometry_type else None,
        "schema": _session_json(session)["resolved_schema"],
        "preview": session.preview,
    }
    status_code = 422 if session.status is SessionStatus.FAILED else 200
    return JSONResponse(status_code=status_code, content=body)


@app.post("/api/upload/{session_id}/destination")
async def set_destination(
    session_id: str,
    destination: DestinationRequest,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    session = pipeline.set_destination(session_id, **destination.model_dump())
    return session.destination.model_dump(mode="json")


@app.get("/api/upload/{session_id}/schema")
async def get_schema(session_id: str, pipeline: IngestionPipeline = Depends(get_pipeline)):
    session = pipeline.get_session(session_id)
    if session.resolved_schema is None:
        return {"kind": None, "fields": []}
    return session.resolved_schema.model_dump(mode="json")


@app.put("/api/upload/{session_id}/schema")
async def replace_schema(
    session_id: str,
    update: SchemaUpdate,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    session = pipeline.set_manual_schema(session_id, update.fields)
    return session.resolved_schema.model_dump(mode="json")


@app.post("/api/upload/{session_id}/upload", status_code=202)
async def start_upload(
    session_id: str,
    background_tasks: BackgroundTasks,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """Start loading rows; progress is read from the session endpoint."""
    session = pipeline.begin_upload(session_id)
    background_tasks.add_task(pipeline.run_upload, session_id)
    return _session_json(session)


@app.post("/api/upload/{session_id}/cancel")
async def cancel_session(session_id: str, pipeline: IngestionPipeline = Depends(get_pipeline)):
    return _session_json(pipeline.cancel(session_id))


@app.get("/api/recent-uploads")
async def recent_uploads(pipeline: IngestionPipeline = Depends(get_pipeline)):
    return [_session_json(s) for s in pipeline.recent_sessions()]
