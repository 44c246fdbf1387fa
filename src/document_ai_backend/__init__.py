"""
Document AI Backend - asynchronous document job pipeline

This package provides a FastAPI service and a queue worker that turn an
uploaded document into a downloadable, structured result. It enables:

- Presigned upload and download URLs, so file bytes never touch the API
- Job submission for authenticated users and anonymous guests
- Queue-decoupled processing with at-least-once delivery and dead-lettering
- Status polling against a durable job store

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Job submission, owner-scoped reads and transitions
    - lifecycle: Job status state machine and update variants
    - database: SQLite job store with atomic conditional updates
    - queue_service: SQS producer/consumer channel
    - s3_service: Presigned grants and worker object access
    - access: Request identity and ownership checks
    - worker: Queue consumer driving extraction and export
    - configuration: OmegaConf settings with environment overrides

Usage:
    Run the API server with:
        uvicorn document_ai_backend.main:app --host 0.0.0.0 --port 8000

    Run a worker with:
        python -m document_ai_backend.worker worker.extractor=my_engine:Extractor

Architecture Principles:
    - The job store is the single source of truth for job state
    - Every status change is one atomic, conditional row update
    - Duplicate message delivery is a no-op, never a race
    - Guest jobs are readable by anyone holding the job id
"""
