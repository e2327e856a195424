from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool

from .artifacts import CONTENT_TYPE, ArtifactUnavailableError
from .configuration import configure_logging, load_settings
from .job_manager import JobManager, JobRejectedError, build_job_manager
from .models import GenerationRequest, SubmitResponse, TaskRecord
from .stores import StoreUnavailableError
from .utils import InvalidTaskIdError

logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings)

job_manager = build_job_manager(settings)


@asynccontextmanager
async def lifespan(_: FastAPI):
    yield
    logger.info("Shutting down: waiting for running generation tasks")
    await run_in_threadpool(job_manager.shutdown, wait=True)


app = FastAPI(title="AIMS Design API", version="0.1.0", lifespan=lifespan)

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_job_manager() -> JobManager:
    return job_manager


def _jsonable_errors(errors: list) -> list:
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")} for e in errors]


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Request validation failed")
    detail = f"{location}: {message}" if location else message
    return JSONResponse(status_code=400, content={"detail": detail, "errors": _jsonable_errors(errors)})


@app.get("/healthz")
def healthcheck(manager: JobManager = Depends(get_job_manager)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "store": "redis" if settings.redis.url else "memory",
        "running_tasks": len(manager.running_tasks()),
    }


@app.post("/api/design/generate/psd", response_model=SubmitResponse)
def generate_psd(
    request: GenerationRequest,
    x_user_id: Optional[str] = Header(default=None),
    manager: JobManager = Depends(get_job_manager),
) -> SubmitResponse:
    dim = request.specifications.dimensions
    logger.info(f"PSD generation requested: {request.project_name}, size {dim.length}x{dim.width}x{dim.height}")
    try:
        result = manager.submit(request, user_id=x_user_id)
    except StoreUnavailableError as exc:
        logger.error(f"Submission failed, store unavailable: {exc}")
        raise HTTPException(status_code=503, detail="Task store unavailable, please retry") from exc
    except JobRejectedError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return SubmitResponse(task_id=result.task_id, message=result.message)


@app.get("/api/design/status/{task_id}", response_model=TaskRecord)
def task_status(task_id: str, manager: JobManager = Depends(get_job_manager)) -> TaskRecord:
    try:
        record = manager.get_status(task_id)
    except StoreUnavailableError as exc:
        raise HTTPException(status_code=503, detail="Task store unavailable, please retry") from exc
    if not record:
        raise HTTPException(status_code=404, detail="Task not found or expired")
    return record


def _content_disposition(filename: str) -> str:
    ascii_name = filename.encode("ascii", "ignore").decode() or "download.psd"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"


@app.get("/api/design/download/{task_id}")
def download_psd(
    task_id: str,
    file_name: Optional[str] = None,
    manager: JobManager = Depends(get_job_manager),
) -> Response:
    try:
        data, presented_name = manager.download(task_id, file_name)
    except InvalidTaskIdError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="File not found or expired") from exc
    except ArtifactUnavailableError as exc:
        logger.error(f"Download of task {task_id} failed, artifact storage unavailable: {exc}")
        raise HTTPException(status_code=503, detail="Artifact storage unavailable, please retry") from exc
    return Response(
        content=data,
        media_type=CONTENT_TYPE,
        headers={"Content-Disposition": _content_disposition(presented_name)},
    )
