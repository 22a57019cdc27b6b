from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import PipelineConfig
from .errors import AdmissionError, JobNotFoundError, ModelNotFoundError
from .rendering import get_diagnostics
from .scheduler import JobScheduler
from .schemas import GenerateBody, error_details

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 3600


def create_app(scheduler: JobScheduler | None = None) -> FastAPI:
    scheduler = scheduler or JobScheduler(PipelineConfig.from_env())
    cleanup_stop = threading.Event()

    def cleanup_loop() -> None:
        while not cleanup_stop.wait(CLEANUP_INTERVAL_SECONDS):
            try:
                scheduler.cleanup_expired()
            except Exception:
                logger.exception("Job registry cleanup failed")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cleanup_thread = threading.Thread(target=cleanup_loop, name="job-cleanup", daemon=True)
        cleanup_thread.start()
        logger.info(
            "Sequence pipeline ready: models=%s sequences=%s workers=%d",
            scheduler.config.models_dir,
            scheduler.config.sequences_dir,
            scheduler.config.max_concurrent_jobs,
        )
        yield
        cleanup_stop.set()
        cleanup_thread.join(timeout=2)
        scheduler.shutdown(wait=False)

    app = FastAPI(title="3D Sequence Pipeline", version="1.0.0", lifespan=lifespan)
    app.state.scheduler = scheduler

    @app.exception_handler(AdmissionError)
    async def admission_error_handler(request: Request, exc: AdmissionError) -> JSONResponse:
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def malformed_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": "Malformed request", "details": error_details(exc.errors())}, status_code=400)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/diagnostics")
    def diagnostics() -> JSONResponse:
        payload = get_diagnostics()
        payload["resources"] = scheduler.monitor.snapshot().to_dict()
        return JSONResponse(payload)

    @app.post("/api/generate")
    def generate(body: GenerateBody) -> JSONResponse:
        job_id = scheduler.submit(body.model_dump(exclude_none=True))
        return JSONResponse({"jobId": job_id, "status": scheduler.status(job_id).to_dict()})

    @app.get("/api/jobs")
    def list_jobs(limit: int | None = None) -> JSONResponse:
        jobs = [item.to_dict() for item in scheduler.list_jobs(limit=limit)]
        return JSONResponse({"jobs": jobs, "metrics": scheduler.metrics().to_dict()})

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str) -> JSONResponse:
        try:
            record = scheduler.status(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        return JSONResponse({"status": record.to_dict()})

    def _cancel(job_id: str) -> JSONResponse:
        if not scheduler.cancel(job_id):
            raise HTTPException(status_code=404, detail="Job not found or cannot be stopped")
        return JSONResponse({"message": "Generation stopped", "status": scheduler.status(job_id).to_dict()})

    @app.post("/api/jobs/{job_id}/cancel")
    def cancel_job(job_id: str) -> JSONResponse:
        return _cancel(job_id)

    @app.delete("/api/jobs/{job_id}")
    def delete_job(job_id: str) -> JSONResponse:
        return _cancel(job_id)

    @app.get("/api/models")
    def list_models() -> JSONResponse:
        return JSONResponse({"models": [item.to_dict() for item in scheduler.catalog.list_models()]})

    @app.delete("/api/models/{model_id}")
    def delete_model(model_id: str) -> JSONResponse:
        try:
            removed = scheduler.delete_model(model_id)
        except ModelNotFoundError:
            raise HTTPException(status_code=404, detail="Model not found")
        return JSONResponse({"message": "Model deleted successfully", "removedSequences": removed})

    @app.get("/api/sequences")
    def list_sequences() -> JSONResponse:
        return JSONResponse({"sequences": [item.to_dict() for item in scheduler.store.list_sequences()]})

    return app

