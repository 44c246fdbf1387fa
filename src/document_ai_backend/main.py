from __future__ import annotations

import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .access import Identity, InvalidCredentialsError
from .configuration import load_settings
from .errors import NotFoundError, TransientInfrastructureError, ValidationError
from .job_manager import JobManager, StrandedJobError
from .models import (
    CreateJobRequest,
    CreateKeyRequest,
    CreateKeyResponse,
    DownloadResponse,
    JobStatusResponse,
    JobSummary,
    UploadGrant,
    UploadGrantRequest,
)
from .services import Services


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Pre-built components (tests). When omitted, they are built
            from configuration on start-up and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or Services.from_settings(load_settings())
        try:
            yield
        finally:
            if owned:
                app.state.services.close()

    app = FastAPI(title="Document AI Jobs API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_job_manager(services: Services = Depends(get_services)) -> JobManager:
    return services.job_manager


def get_identity(
    x_api_key: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> Identity:
    try:
        return services.access.resolve(x_api_key)
    except InvalidCredentialsError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def require_master_key(
    x_api_key: str = Header(...),
    services: Services = Depends(get_services),
) -> None:
    master_key = services.settings.auth.master_key
    if not master_key or not secrets.compare_digest(x_api_key, master_key):
        raise HTTPException(status_code=401, detail="Invalid master key")


def _payload(model) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _register_routes(app: FastAPI) -> None:
    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/upload/presigned-url", response_model=UploadGrant)
    def create_upload_grant(
        body: UploadGrantRequest,
        _identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        try:
            grant = services.storage.issue_upload_grant(body.file_name, body.content_type)
        except TransientInfrastructureError as exc:
            raise HTTPException(status_code=503, detail="Storage temporarily unavailable") from exc
        return JSONResponse(content=_payload(grant))

    @app.post("/jobs", response_model=JobSummary, status_code=status.HTTP_201_CREATED)
    def create_job(
        body: CreateJobRequest,
        identity: Identity = Depends(get_identity),
        manager: JobManager = Depends(get_job_manager),
    ) -> JSONResponse:
        try:
            job = manager.submit_job(identity, body.input_file_key, body.document_type)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except StrandedJobError as exc:
            return JSONResponse(
                status_code=503,
                content={"detail": "Job queued for retry; queue temporarily unavailable", **_payload(exc.job.to_summary())},
            )
        return JSONResponse(status_code=201, content=_payload(job.to_summary()))

    @app.get("/jobs/{job_id}/status", response_model=JobStatusResponse)
    def job_status(
        job_id: str,
        identity: Identity = Depends(get_identity),
        manager: JobManager = Depends(get_job_manager),
    ) -> JSONResponse:
        try:
            job = manager.get_job(job_id, identity)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc
        return JSONResponse(content=_payload(job.to_status()))

    @app.get("/jobs/{job_id}/download", response_model=DownloadResponse)
    def download_job_result(
        job_id: str,
        identity: Identity = Depends(get_identity),
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        try:
            outcome = services.job_manager.resolve_download(job_id, identity)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="Job not found") from exc

        job = outcome.job
        if outcome.state == "processing":
            response = DownloadResponse(status=job.status, message="Document is still being processed")
            return JSONResponse(status_code=202, content=_payload(response))
        if outcome.state == "failed":
            response = DownloadResponse(status=job.status, error=outcome.detail or "Processing failed")
            return JSONResponse(status_code=409, content=_payload(response))

        try:
            grant = services.storage.issue_download_grant(outcome.output_ref)
        except TransientInfrastructureError as exc:
            raise HTTPException(status_code=503, detail="Storage temporarily unavailable") from exc
        response = DownloadResponse(status=job.status, download_url=grant.url, expires_at=grant.expires_at)
        return JSONResponse(content=_payload(response))

    @app.post(
        "/admin/keys",
        response_model=CreateKeyResponse,
        status_code=status.HTTP_201_CREATED,
        dependencies=[Depends(require_master_key)],
    )
    def create_api_key(body: CreateKeyRequest, services: Services = Depends(get_services)) -> CreateKeyResponse:
        try:
            raw_key, record = services.key_manager.create_key(body.owner)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return CreateKeyResponse(api_key=raw_key, record=record)

    @app.get("/admin/keys", dependencies=[Depends(require_master_key)])
    def list_api_keys(services: Services = Depends(get_services)) -> List[Dict[str, Any]]:
        return services.key_manager.list_keys()

    @app.delete("/admin/keys/{key_id}", dependencies=[Depends(require_master_key)])
    def revoke_api_key(key_id: str, services: Services = Depends(get_services)) -> Dict[str, str]:
        if not services.key_manager.revoke_key(key_id):
            raise HTTPException(status_code=404, detail="Key not found")
        return {"status": "revoked"}


app = create_app()
