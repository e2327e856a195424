"""
AIMS Design Backend - REST API for background PSD generation

This package provides a FastAPI-based web service that turns packaging
specifications into layered Photoshop (PSD) dieline files. It enables:

- Deduplicated job submission (identical requests share one task)
- Distributed locking through Redis so several instances can run side by side
- Task status polling with throttled, monotonic progress
- Download of finished artifacts from local disk or S3

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Submission, background execution and task lifecycle
    - fingerprint: Deterministic request hashing for deduplication
    - stores: Lock and task-status stores (Redis or in-process)
    - progress: Throttled progress reporting for a single task
    - artifacts: Artifact persistence (local filesystem or S3)
    - generator / dieline: Generation engine interface and bundled engine
    - configuration: OmegaConf settings loading
    - models: Pydantic request/response models
    - utils: Identifier validation and filename helpers

Usage:
    Run the API server with:
        uvicorn aims_design_backend.main:app --host 0.0.0.0 --port 8000

    Point several instances at one Redis with REDIS_URL=redis://host:6379/0.

Architecture Principles:
    - Lock ownership is claimed with atomic set-if-absent only
    - A task record has exactly one writer: its background unit
    - Lock and record TTLs bound the damage of a crashed worker
    - The generation engine is a pluggable external collaborator
"""
