"""Mintworks — FastAPI Application.

This module defines the FastAPI application, all REST API routes, the
mapping from core exceptions to HTTP responses, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
Handlers are thin: they validate the request, call one core operation and
serialise the result.

- **Persistence** is a :class:`~mintworks.core.job_store.JobStore` (SQLite)
  plus an :class:`~mintworks.core.artifacts.ArtifactStore` for files.
- **Workflow** (batches, approve, regenerate, delete) is owned by a single
  :class:`~mintworks.core.processor.BatchProcessor` stored on
  ``app.state``; its single-flight guard therefore spans every request.
- **Packaging** uses :class:`~mintworks.core.packaging.PackageAssembler`
  for persisted collections and
  :class:`~mintworks.core.packaging.DirectPackageBuilder` for the one-shot
  upload flow.

Blocking handlers are plain ``def`` functions so FastAPI runs them in its
thread pool; a second batch request arriving while one is running gets a
409 instead of waiting.

Endpoints
---------
========  =============================================  ===============================
Method    Path                                           Purpose
========  =============================================  ===============================
GET       ``/api/health``                                Liveness and processing state
POST      ``/api/collections``                           Create a collection
GET       ``/api/collections``                           List collections, newest first
GET       ``/api/collections/{id}``                      Collection plus progress
PATCH     ``/api/collections/{id}``                      Update while no jobs exist
DELETE    ``/api/collections/{id}``                      Delete with jobs and files
POST      ``/api/collections/{id}/jobs``                 Create prompt-driven jobs
POST      ``/api/collections/{id}/plan``                 Create jobs from a rarity plan
POST      ``/api/collections/{id}/generate-initial``     Initial quality-check batch
POST      ``/api/collections/{id}/continue-generation``  Continuation batch
GET       ``/api/collections/{id}/progress``             Job counts per status
GET       ``/api/collections/{id}/jobs``                 Paginated job listing
POST      ``/api/collections/{id}/package``              Build the ZIP package
GET       ``/api/collections/{id}/download``             Download the built package
POST      ``/api/collections/{id}/cleanup``              Remove produced files
GET       ``/api/jobs/stats``                            Job counts per status
POST      ``/api/jobs/batch-approve``                    Approve several jobs
POST      ``/api/jobs/batch-regenerate``                 Reset several jobs to pending
GET       ``/api/jobs/{id}``                             Single job
GET       ``/api/jobs/{id}/image``                       Produced image
GET       ``/api/jobs/{id}/metadata``                    Stored metadata document
POST      ``/api/jobs/{id}/approve``                     Approve a generated job
POST      ``/api/jobs/{id}/regenerate``                  Reset a job to pending
DELETE    ``/api/jobs/{id}``                             Delete a job and its files
POST      ``/api/generate``                              One-shot package from uploads
POST      ``/api/metadata/finalize``                     Replace CID placeholders
========  =============================================  ===============================

Usage
-----
CLI (installed entry point)::

    mintworks

Direct invocation::

    python -m mintworks.api.main
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from mintworks import __version__
from mintworks.api.models import (
    ApproveRequest,
    BatchRequest,
    BulkApproveRequest,
    BulkRegenerateRequest,
    CollectionCreateRequest,
    CollectionUpdateRequest,
    DirectGenerateRequest,
    FinalizeRequest,
    PackageRequest,
    RarityPlanRequest,
    RarityTierRequest,
)
from mintworks.core.artifacts import ArtifactStore, safe_filename
from mintworks.core.config import MintworksConfig, config
from mintworks.core.errors import (
    CollectionLockedError,
    CollectionNotFoundError,
    ConcurrentBatchError,
    ConstructionError,
    InvalidTransitionError,
    JobNotFoundError,
    MintworksError,
    NoEligibleJobsError,
    RetryLimitExceededError,
    TierCapacityError,
)
from mintworks.core.generators import ImageGenerator, create_generator
from mintworks.core.job_store import JobStore
from mintworks.core.metadata import replace_cids_batch, validate_metadata
from mintworks.core.models import JobStatus
from mintworks.core.packaging import DirectPackageBuilder, PackageAssembler
from mintworks.core.processor import BatchProcessor

logger = logging.getLogger(__name__)

_TIER_FIELD = re.compile(r"^tier_(\d+)_")

# ---------------------------------------------------------------------------
# Core exception → HTTP status.  First match wins, unknown errors are 500.
# ---------------------------------------------------------------------------
_ERROR_STATUS: tuple[tuple[type[MintworksError], int], ...] = (
    (CollectionNotFoundError, 404),
    (JobNotFoundError, 404),
    (ConcurrentBatchError, 409),
    (InvalidTransitionError, 409),
    (CollectionLockedError, 409),
    (RetryLimitExceededError, 409),
    (ConstructionError, 400),
    (NoEligibleJobsError, 400),
)


def _status_for(exc: MintworksError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def _handle_mintworks_error(request: Request, exc: MintworksError) -> JSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected (%d): %s", request.method, request.url.path, status_code, exc)

    content: dict = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, TierCapacityError):
        content.update(tier=exc.tier_label, shortfall=exc.shortfall)
    return JSONResponse(status_code=status_code, content=content)


# ---------------------------------------------------------------------------
# Application lifecycle: build the stores, generator and processor.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the core services on startup and release them on shutdown.

    On startup:
        Opens the job store (creating the schema if needed), prepares the
        artifact directories, instantiates the image generator unless one
        was injected, and constructs the processor.  Constructing the
        processor resets stale ``generating`` jobs when crash recovery is
        enabled.

    On shutdown:
        Closes the generator, releasing HTTP sessions or GPU memory.
    """
    settings: MintworksConfig = app.state.config
    store = JobStore(settings.db_path)
    artifacts = ArtifactStore(settings.uploads_dir, settings.output_dir)
    generator: ImageGenerator = app.state.generator or create_generator(settings)

    app.state.store = store
    app.state.artifacts = artifacts
    app.state.generator = generator
    app.state.processor = BatchProcessor(store, artifacts, generator, settings)
    app.state.assembler = PackageAssembler(store, artifacts, settings)
    app.state.direct_builder = DirectPackageBuilder(artifacts, settings)
    logger.info("Mintworks services initialised (backend=%s).", generator.name)

    yield

    generator.close()
    logger.info("Image generator closed on shutdown.")


# ---------------------------------------------------------------------------
# Request helpers.
# ---------------------------------------------------------------------------


def _processor(request: Request) -> BatchProcessor:
    return request.app.state.processor


def _store(request: Request) -> JobStore:
    return request.app.state.store


def _validation_error(e: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=json.loads(e.json()))


async def _read_multipart_plan(
    request: Request, model: type[BaseModel]
) -> tuple[BaseModel, list[list[bytes]]]:
    """Parse a multipart body: JSON ``data`` plus ``tier_{i}_*`` image files.

    Returns:
        The validated ``data`` model and, per tier, the uploaded image bytes
        in upload order.
    """
    form = await request.form()
    raw = form.get("data")
    if not isinstance(raw, str):
        raise HTTPException(status_code=400, detail="Missing 'data' form field")
    try:
        payload = model.model_validate_json(raw)
    except ValidationError as e:
        raise _validation_error(e) from e

    tier_count = len(payload.rarity_tiers)
    images: list[list[bytes]] = [[] for _ in range(tier_count)]
    for field_name, value in form.multi_items():
        if isinstance(value, str):
            continue
        match = _TIER_FIELD.match(field_name)
        if match is None or int(match.group(1)) >= tier_count:
            raise HTTPException(
                status_code=400,
                detail=f"Unexpected file field '{field_name}'; use tier_<index>_<name>",
            )
        images[int(match.group(1))].append(await value.read())

    if not any(images):
        raise HTTPException(status_code=400, detail="No images uploaded")
    return payload, images


def _build_tiers(tier_requests: list[RarityTierRequest], images: list[list[bytes]]) -> list:
    try:
        return [req.to_tier(files) for req, files in zip(tier_requests, images)]
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.get("/health")
def health(request: Request) -> dict:
    """Report liveness, version, generator backend and batch state."""
    return {
        "status": "ok",
        "version": __version__,
        "backend": request.app.state.generator.name,
        "is_processing": _processor(request).is_processing,
    }


# -- Collections ---------------------------------------------------------------


@router.post("/collections", status_code=201)
def create_collection(req: CollectionCreateRequest, request: Request) -> dict:
    """Create a collection in ``pending`` status."""
    try:
        collection_config = req.to_config(str(uuid.uuid4()))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _processor(request).create_collection(collection_config).to_dict()


@router.get("/collections")
def list_collections(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> dict:
    collections = _store(request).list_collections(limit=limit, offset=offset)
    return {
        "collections": [collection.to_dict() for collection in collections],
        "limit": limit,
        "offset": offset,
    }


@router.get("/collections/{collection_id}")
def get_collection(collection_id: str, request: Request) -> dict:
    """Return a collection together with its progress counters."""
    collection = _store(request).require_collection(collection_id)
    data = collection.to_dict()
    data["progress"] = _processor(request).collection_progress(collection_id).to_dict()
    return data


@router.patch("/collections/{collection_id}")
def update_collection(collection_id: str, req: CollectionUpdateRequest, request: Request) -> dict:
    """Change a collection's configuration.  Refused (409) once jobs exist."""
    current = _store(request).require_collection(collection_id)
    try:
        updated = _processor(request).update_collection(
            collection_id, **req.to_changes(current.config)
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return updated.to_dict()


@router.delete("/collections/{collection_id}")
def delete_collection(collection_id: str, request: Request) -> dict:
    """Delete a collection, its jobs and every file they produced."""
    _processor(request).delete_collection(collection_id)
    return {"success": True, "deleted": collection_id}


@router.post("/collections/{collection_id}/jobs", status_code=201)
def create_jobs(collection_id: str, request: Request) -> dict:
    """Create one prompt-driven job per edition."""
    jobs = _processor(request).create_jobs_for_collection(collection_id)
    return {"created": len(jobs), "jobs": [job.to_dict() for job in jobs]}


@router.post("/collections/{collection_id}/plan", status_code=201)
async def create_jobs_from_plan(collection_id: str, request: Request) -> dict:
    """Create jobs from a rarity plan and uploaded source images.

    Multipart body: a ``data`` field holding :class:`RarityPlanRequest`
    JSON, plus image files named ``tier_{index}_<anything>``.
    """
    payload, images = await _read_multipart_plan(request, RarityPlanRequest)
    tiers = _build_tiers(payload.rarity_tiers, images)
    jobs = await run_in_threadpool(
        _processor(request).create_jobs_from_plan,
        collection_id,
        tiers,
        randomize=payload.randomize_order,
    )
    return {"created": len(jobs), "jobs": [job.to_dict() for job in jobs]}


@router.post("/collections/{collection_id}/generate-initial")
def generate_initial(
    collection_id: str, request: Request, req: BatchRequest | None = None
) -> dict:
    """Run the initial quality-check batch.

    A prompt-driven collection without jobs gets its jobs created first.
    """
    processor = _processor(request)
    if not _store(request).count_jobs(collection_id):
        processor.create_jobs_for_collection(collection_id)
    result = processor.process_initial_batch(collection_id, req.batch_size if req else None)
    data = result.to_dict()
    data["progress"] = processor.collection_progress(collection_id).to_dict()
    return data


@router.post("/collections/{collection_id}/continue-generation")
def continue_generation(
    collection_id: str, request: Request, req: BatchRequest | None = None
) -> dict:
    processor = _processor(request)
    result = processor.process_continuation_batch(
        collection_id, req.batch_size if req else None
    )
    data = result.to_dict()
    data["progress"] = processor.collection_progress(collection_id).to_dict()
    return data


@router.get("/collections/{collection_id}/progress")
def get_progress(collection_id: str, request: Request) -> dict:
    return _processor(request).collection_progress(collection_id).to_dict()


@router.get("/collections/{collection_id}/jobs")
def list_jobs(
    collection_id: str,
    request: Request,
    status: JobStatus | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> dict:
    """Return a page of jobs in ``global_index`` order, optionally by status."""
    store = _store(request)
    store.require_collection(collection_id)
    jobs = store.list_jobs(collection_id, status, limit=limit, offset=offset)
    return {
        "jobs": [job.to_dict() for job in jobs],
        "total": store.count_jobs(collection_id, status),
        "limit": limit,
        "offset": offset,
    }


@router.post("/collections/{collection_id}/package")
def create_package(
    collection_id: str, request: Request, req: PackageRequest | None = None
) -> dict:
    """Build the ZIP package from approved (optionally also generated) jobs."""
    statuses = [JobStatus.APPROVED]
    if req is not None and req.include_generated:
        statuses.append(JobStatus.GENERATED)
    result = request.app.state.assembler.assemble(collection_id, statuses)
    data = result.to_dict()
    data["download_url"] = f"/api/collections/{collection_id}/download"
    return data


@router.get("/collections/{collection_id}/download")
def download_package(collection_id: str, request: Request) -> FileResponse:
    collection = _store(request).require_collection(collection_id)
    if not collection.package_path or not Path(collection.package_path).is_file():
        raise HTTPException(status_code=404, detail="Package not found; build it first")
    return FileResponse(
        collection.package_path,
        media_type="application/zip",
        filename=Path(collection.package_path).name,
    )


@router.post("/collections/{collection_id}/cleanup")
def cleanup_collection(collection_id: str, request: Request) -> dict:
    """Remove every produced image and metadata file; job rows are kept."""
    _store(request).require_collection(collection_id)
    removed = _processor(request).cleanup_collection_files(collection_id)
    return {"success": True, "removed_files": removed}


# -- Jobs ----------------------------------------------------------------------


@router.get("/jobs/stats")
def job_stats(request: Request, collection_id: str | None = None) -> dict:
    """Job counts per status, for one collection or across all collections."""
    if collection_id is not None:
        _store(request).require_collection(collection_id)
    return {"collection_id": collection_id, **_store(request).job_stats(collection_id)}


@router.post("/jobs/batch-approve")
def approve_jobs(req: BulkApproveRequest, request: Request) -> dict:
    """Approve several jobs; per-job failures are reported, not raised."""
    result = _processor(request).approve_jobs(
        req.job_ids, color_palette=req.color_palette, sha256=req.sha256
    )
    return result.to_dict()


@router.post("/jobs/batch-regenerate")
def regenerate_jobs(req: BulkRegenerateRequest, request: Request) -> dict:
    return _processor(request).regenerate_jobs(req.job_ids).to_dict()


@router.get("/jobs/{job_id}")
def get_job(job_id: str, request: Request) -> dict:
    return _store(request).require_job(job_id).to_dict()


@router.get("/jobs/{job_id}/image")
def get_job_image(job_id: str, request: Request) -> FileResponse:
    job = _store(request).require_job(job_id)
    if not job.image_path or not Path(job.image_path).is_file():
        raise HTTPException(status_code=404, detail="Image not found")
    return FileResponse(job.image_path, media_type="image/png")


@router.get("/jobs/{job_id}/metadata")
def get_job_metadata(job_id: str, request: Request) -> dict:
    """The metadata document written when the job was approved."""
    job = _store(request).require_job(job_id)
    if not job.metadata_path or not Path(job.metadata_path).is_file():
        raise HTTPException(status_code=404, detail="Metadata not available for this job")
    metadata = json.loads(Path(job.metadata_path).read_text(encoding="utf-8"))
    return {"job_id": job.id, "metadata": metadata}


@router.post("/jobs/{job_id}/approve")
def approve_job(job_id: str, request: Request, req: ApproveRequest | None = None) -> dict:
    """Generate metadata and approve a ``generated`` job (409 otherwise)."""
    req = req or ApproveRequest()
    job = _processor(request).approve_job(
        job_id, color_palette=req.color_palette, sha256=req.sha256
    )
    return job.to_dict()


@router.post("/jobs/{job_id}/regenerate")
def regenerate_job(job_id: str, request: Request) -> dict:
    """Reset a ``generated`` or ``error`` job to ``pending``."""
    return _processor(request).regenerate_job(job_id).to_dict()


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, request: Request) -> dict:
    _processor(request).delete_job(job_id)
    return {"success": True, "deleted": job_id}


# -- One-shot flow and utilities ---------------------------------------------------


@router.post("/generate")
async def generate_package(request: Request, background_tasks: BackgroundTasks) -> FileResponse:
    """Build a package straight from uploaded images and a rarity plan.

    Multipart body: a ``data`` field holding :class:`DirectGenerateRequest`
    JSON, plus image files named ``tier_{index}_<anything>``.  Nothing is
    persisted in the job store; the archive is returned directly and removed
    once the response has been sent.
    """
    payload, images = await _read_multipart_plan(request, DirectGenerateRequest)
    try:
        collection_config = payload.collection.to_config(str(uuid.uuid4()))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    tiers = _build_tiers(payload.rarity_tiers, images)
    options = payload.advanced_options

    logger.info(
        "Generation request received: %s (supply=%d, tiers=%d, files=%d)",
        collection_config.name,
        collection_config.total_supply,
        len(tiers),
        sum(len(files) for files in images),
    )
    result = await run_in_threadpool(
        request.app.state.direct_builder.build,
        collection_config,
        tiers,
        randomize_order=options.randomize_order,
        calculate_color_palette=options.calculate_color_palette,
        calculate_sha256=options.calculate_sha256,
    )
    background_tasks.add_task(ArtifactStore.delete, result.path)
    return FileResponse(
        result.path,
        media_type="application/zip",
        filename=f"{safe_filename(collection_config.name)}_collection.zip",
        headers={"X-Mintworks-Editions": str(len(result.included))},
    )


@router.post("/metadata/finalize")
def finalize_metadata(req: FinalizeRequest) -> dict:
    """Replace CID placeholders in metadata documents and validate them."""
    try:
        documents = replace_cids_batch(req.metadata, req.cid_mapping)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    errors: dict[str, list[str]] = {}
    for index, document in enumerate(documents):
        problems = validate_metadata(document)
        if problems:
            errors[str(index)] = problems
    return {"metadata": documents, "errors": errors}


# ---------------------------------------------------------------------------
# Application factory and module-level instance.
# ---------------------------------------------------------------------------


def create_app(
    app_config: MintworksConfig | None = None,
    generator: ImageGenerator | None = None,
) -> FastAPI:
    """Build a FastAPI application.

    Args:
        app_config: Settings to use; defaults to the global ``config``.
        generator: Image generator to use instead of the configured backend
            (tests inject a fake here).
    """
    application = FastAPI(
        title="Mintworks",
        description="Batch job queue and package assembly for Solana NFT collections.",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.config = app_config or config
    application.state.generator = generator

    # Allow cross-origin requests so a separately served frontend can call
    # the API during development.
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_exception_handler(MintworksError, _handle_mintworks_error)
    application.include_router(router)
    return application


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~mintworks.core.config.config` (which
    loads from ``MINTWORKS_SERVER_HOST`` and ``MINTWORKS_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:8000``.

    This function is registered as the ``mintworks`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    uvicorn.run(
        "mintworks.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
