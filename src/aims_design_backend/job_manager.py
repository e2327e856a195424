"""
Job orchestration for PSD generation.

This module owns the lifecycle of a generation task:
- Fingerprinting the request and claiming the fingerprint lock
- Creating the task record and spawning the background unit
- Running the generation engine with throttled progress reporting
- Storing the artifact and writing the terminal record
- Releasing the fingerprint lock

Identical requests arriving while a task is in flight (on this instance or
any other sharing the same store) receive the owner's task id instead of
starting new work.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, Optional, Tuple
from urllib.parse import quote
from uuid import uuid4

from omegaconf import DictConfig, OmegaConf

from .artifacts import ArtifactStore, LocalArtifactStore, S3ArtifactStore
from .fingerprint import compute_fingerprint
from .generator import DocumentGenerator, load_generator
from .models import GenerationRequest, TaskRecord, TaskStatus
from .progress import ProgressReporter
from .stores import (
    LockStore,
    MemoryLockStore,
    MemoryTaskStatusStore,
    RedisLockStore,
    RedisTaskStatusStore,
    StoreUnavailableError,
    TaskStatusStore,
    create_redis_client,
)
from .utils import InvalidTaskIdError, build_artifact_filename, sanitize_download_name, validate_task_id

logger = logging.getLogger(__name__)

INITIAL_MESSAGE = "ready"
CREATED_MESSAGE = "task created"
EXISTING_MESSAGE = "task already exists"


class JobRejectedError(RuntimeError):
    """The worker pool refused the job (e.g. during shutdown)."""


@dataclass(frozen=True)
class JobSettings:
    lock_ttl: float = 1800
    record_ttl: float = 1800
    progress_interval: float = 0.3
    stale_lock_grace: float = 30
    max_workers: int = 8
    download_route: str = "/api/design/download"

    @classmethod
    def from_config(cls, settings: DictConfig) -> "JobSettings":
        jobs = settings.jobs
        return cls(
            lock_ttl=float(jobs.lock_ttl_seconds),
            record_ttl=float(jobs.record_ttl_seconds),
            progress_interval=float(jobs.progress_interval_seconds),
            stale_lock_grace=float(jobs.stale_lock_grace_seconds),
            max_workers=int(jobs.max_workers),
            download_route=str(settings.api.download_route),
        )


@dataclass(frozen=True)
class SubmissionResult:
    task_id: str
    message: str
    created: bool


def lock_key_for(fingerprint: str) -> str:
    return f"lock:{fingerprint}"


def _failure_message(exc: BaseException) -> str:
    detail = str(exc).strip() or type(exc).__name__
    return f"Generation failed: {detail}"


class JobManager:
    """
    Central coordinator for generation tasks.

    Thread Safety:
        Handlers call ``submit``/``get_status``/``download`` concurrently
        from the server's threadpool. Cross-request exclusion comes from the
        lock store's atomic set-if-absent; the in-process lock only guards
        the bookkeeping of running futures.

    Attributes:
        settings: TTLs, throttle interval, pool size and download route
    """

    def __init__(
        self,
        lock_store: LockStore,
        status_store: TaskStatusStore,
        artifact_store: ArtifactStore,
        generator: DocumentGenerator,
        settings: Optional[JobSettings] = None,
    ) -> None:
        """
        Args:
            lock_store: Fingerprint locks, shared across instances
            status_store: Task records read by the status endpoint
            artifact_store: Where finished documents are kept
            generator: Engine that renders a request into bytes
            settings: Defaults to ``JobSettings()``
        """
        self.settings = settings or JobSettings()
        self._locks = lock_store
        self._status = status_store
        self._artifacts = artifact_store
        self._generator = generator
        self._executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="psd-job")
        self._futures: Dict[str, Future] = {}
        self._futures_lock = Lock()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, request: GenerationRequest, user_id: Optional[str] = None) -> SubmissionResult:
        """
        Start a task for the request, or return the task already running it.

        Returns:
            SubmissionResult whose ``created`` flag tells whether this call
            spawned the background unit

        Raises:
            StoreUnavailableError: If the lock or status store cannot answer,
                or if the lock keeps changing hands while we look at it
            JobRejectedError: If the worker pool no longer accepts work
        """
        fingerprint = compute_fingerprint(request, user_id)
        lock_key = lock_key_for(fingerprint)
        candidate = uuid4().hex

        for _ in range(2):
            if self._locks.try_acquire(lock_key, candidate, self.settings.lock_ttl):
                logger.info(f"Task {candidate} acquired fingerprint {fingerprint[:12]}")
                self._start(candidate, lock_key, request)
                return SubmissionResult(candidate, CREATED_MESSAGE, created=True)

            owner = self._locks.read(lock_key)
            if owner is None:
                # Released between our attempt and the read
                continue
            if self._is_orphaned(lock_key, owner):
                self._locks.release(lock_key, owner=owner)
                continue

            logger.info(f"Fingerprint {fingerprint[:12]} already owned by task {owner}")
            return SubmissionResult(owner, EXISTING_MESSAGE, created=False)

        raise StoreUnavailableError("Fingerprint lock is changing hands; retry the submission")

    def _is_orphaned(self, lock_key: str, owner: str) -> bool:
        """
        Decide whether a held lock has no live task behind it.

        A lock whose owner has no task record is still honoured for
        ``stale_lock_grace`` seconds after it was taken, since the owner
        writes its record right after acquiring. Past that window the lock is
        treated as orphaned.
        """
        if self._status.get(owner) is not None:
            return False
        remaining = self._locks.remaining_ttl(lock_key)
        if remaining is None:
            return False
        age = self.settings.lock_ttl - remaining
        if age < self.settings.stale_lock_grace:
            return False
        logger.warning(f"Lock {lock_key} held by {owner} for {age:.0f}s without a task record; reclaiming")
        return True

    def _start(self, task_id: str, lock_key: str, request: GenerationRequest) -> None:
        now = datetime.utcnow()
        record = TaskRecord(
            task_id=task_id,
            status=TaskStatus.PROCESSING,
            progress=0,
            message=INITIAL_MESSAGE,
            created_at=now,
            updated_at=now,
        )
        try:
            self._status.put(task_id, record, self.settings.record_ttl)
        except StoreUnavailableError:
            self._release_lock(lock_key, task_id)
            raise

        reporter = ProgressReporter(
            self._status,
            record,
            ttl=self.settings.record_ttl,
            min_interval=self.settings.progress_interval,
        )
        try:
            future = self._executor.submit(self._run_job, task_id, lock_key, request, reporter)
        except RuntimeError as exc:
            logger.error(f"Task {task_id} rejected by worker pool: {exc}")
            try:
                reporter.fail("Server is shutting down")
            except StoreUnavailableError as store_exc:
                logger.warning(f"Task {task_id}: could not record rejection: {store_exc}")
            self._release_lock(lock_key, task_id)
            raise JobRejectedError("Worker pool is not accepting jobs") from exc

        with self._futures_lock:
            self._futures[task_id] = future
        future.add_done_callback(lambda _: self._forget(task_id))

    def _forget(self, task_id: str) -> None:
        with self._futures_lock:
            self._futures.pop(task_id, None)

    # ------------------------------------------------------------------
    # Background unit
    # ------------------------------------------------------------------

    def _run_job(self, task_id: str, lock_key: str, request: GenerationRequest, reporter: ProgressReporter) -> None:
        """
        Execute one task (runs in a worker thread, owner of the lock only).

        Nothing raised in here may escape: the outcome is always written to
        the task record when the store allows it, and the lock is always
        released best-effort.
        """
        logger.info(f"Task {task_id} started for project '{request.project_name}'")
        try:
            try:
                data = self._generator.generate(request, reporter.report)
                if not isinstance(data, (bytes, bytearray)) or not data:
                    raise ValueError("Generator returned no data")
                self._artifacts.write(task_id, bytes(data))

                filename = build_artifact_filename(request.project_name, request.specifications.dimensions)
                reporter.complete(self._download_url(task_id, filename))
                logger.info(f"Task {task_id} completed ({len(data)} bytes)")
            except Exception as exc:
                logger.exception(f"Task {task_id} failed")
                reporter.fail(_failure_message(exc))
        except Exception:
            logger.exception(f"Task {task_id}: could not persist terminal state")
        finally:
            self._release_lock(lock_key, task_id)

    def _release_lock(self, lock_key: str, owner: str) -> None:
        # Best-effort: the lock TTL guarantees eventual release
        try:
            if not self._locks.release(lock_key, owner=owner):
                logger.info(f"Lock {lock_key} was no longer held by {owner}")
        except Exception as exc:
            logger.warning(f"Failed to release lock {lock_key} for {owner}: {exc}")

    def _download_url(self, task_id: str, filename: str) -> str:
        route = self.settings.download_route.rstrip("/")
        return f"{route}/{task_id}?file_name={quote(filename)}"

    # ------------------------------------------------------------------
    # Status and download
    # ------------------------------------------------------------------

    def get_status(self, task_id: str) -> Optional[TaskRecord]:
        """
        Return the task record, or None if unknown, expired or malformed.

        Raises:
            StoreUnavailableError: If the status store cannot be reached
        """
        try:
            validate_task_id(task_id)
        except InvalidTaskIdError:
            return None
        return self._status.get(task_id)

    def download(self, task_id: str, file_name: Optional[str] = None) -> Tuple[bytes, str]:
        """
        Read a finished artifact.

        Returns:
            (artifact bytes, filename to present to the client)

        Raises:
            InvalidTaskIdError: If the task id fails the allow-list check;
                raised before the artifact store is touched
            FileNotFoundError: If no artifact exists for the task
            ArtifactUnavailableError: If the artifact backend cannot be reached
        """
        validate_task_id(task_id)
        data = self._artifacts.read(task_id)
        return data, sanitize_download_name(file_name, task_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def running_tasks(self) -> list[str]:
        with self._futures_lock:
            return list(self._futures)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight tasks; True if all of them finished in time."""
        with self._futures_lock:
            pending = list(self._futures.values())
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def build_job_manager(settings: DictConfig) -> JobManager:
    """
    Construct the job manager and its collaborators from configuration.

    This is the single place where stores, the artifact backend and the
    generation engine are created; handlers only ever receive the result.
    """
    redis_url = settings.redis.url
    if redis_url:
        client = create_redis_client(redis_url, socket_timeout=float(settings.redis.socket_timeout))
        prefix = str(settings.redis.prefix or "")
        lock_store: LockStore = RedisLockStore(client, prefix)
        status_store: TaskStatusStore = RedisTaskStatusStore(client, prefix)
        logger.info("Using Redis for locks and task status")
    else:
        lock_store = MemoryLockStore()
        status_store = MemoryTaskStatusStore()
        logger.warning("REDIS_URL not configured; running in single-instance mode with in-process stores")

    backend = str(settings.artifacts.backend).lower()
    if backend == "s3":
        artifact_store: ArtifactStore = S3ArtifactStore(
            bucket=settings.artifacts.s3_bucket or "",
            prefix=str(settings.artifacts.s3_prefix or ""),
        )
    elif backend == "local":
        artifact_store = LocalArtifactStore(Path(settings.artifacts.local_dir))
    else:
        raise ValueError(f"Unknown artifact backend: {backend}")

    return JobManager(
        lock_store=lock_store,
        status_store=status_store,
        artifact_store=artifact_store,
        generator=load_generator(
            str(settings.generator.target),
            **OmegaConf.to_container(settings.generator.options, resolve=True),
        ),
        settings=JobSettings.from_config(settings),
    )
