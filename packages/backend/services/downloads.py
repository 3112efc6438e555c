"""Model download coordinator.

Drives one model download at a time: streams the file into a ``.part`` file
inside the models directory, reports progress, honors cooperative
cancellation between chunks, verifies size (and checksum when the manifest
has one) and hands the finished file to the ModelStore.

States::

    IDLE -> PREPARING -> IN_PROGRESS -> COMPLETED | CANCELLED | FAILED

A terminal job stays visible until it is acknowledged or a new download
starts. Nothing is retried automatically.
"""

import asyncio
import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import aiofiles
import httpx

from core.errors import AssistantError, ModelDownloadFailure, NetworkFailure, ValidationFailure
from services.manifest import ModelDescriptor
from services.model_store import ModelStore

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 256 * 1024
DEFAULT_TIMEOUT = httpx.Timeout(120.0, connect=30.0)

DownloadProgressCallback = Callable[[float, int], None]


class DownloadState(str, Enum):
    """Download job states."""

    IDLE = "idle"
    PREPARING = "preparing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


_ACTIVE_STATES = (DownloadState.PREPARING, DownloadState.IN_PROGRESS)
_TERMINAL_STATES = (DownloadState.COMPLETED, DownloadState.CANCELLED, DownloadState.FAILED)


@dataclass
class DownloadJob:
    """A single model download."""

    descriptor: ModelDescriptor
    state: DownloadState = DownloadState.PREPARING
    progress: float = 0.0
    bytes_written: int = 0
    total_bytes: int = 0
    path: Path | None = None
    error: AssistantError | None = None
    cancel_requested: bool = field(default=False, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state in _ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL_STATES

    @property
    def reason(self) -> str | None:
        return self.error.reason if self.error else None


class DownloadCoordinator:
    """Runs model downloads into a ModelStore, one at a time."""

    def __init__(
        self,
        store: ModelStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: httpx.Timeout | float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        auto_select: bool = True,
    ):
        self._store = store
        self._chunk_size = chunk_size
        self._timeout = timeout
        self._transport = transport
        self._auto_select = auto_select
        self._job: DownloadJob | None = None
        self._task: asyncio.Task | None = None

    @property
    def job(self) -> DownloadJob | None:
        return self._job

    @property
    def state(self) -> DownloadState:
        return self._job.state if self._job else DownloadState.IDLE

    def start(
        self,
        descriptor: ModelDescriptor,
        on_progress: DownloadProgressCallback | None = None,
    ) -> bool:
        """Start downloading a model.

        Must be called from a running event loop. Returns False, changing
        nothing, if a download is already preparing or in progress.
        """
        if self._job is not None and self._job.is_active:
            logger.info(
                "Download of %s rejected: %s is already %s",
                descriptor.id,
                self._job.descriptor.id,
                self._job.state.value,
            )
            return False

        job = DownloadJob(descriptor=descriptor)
        self._job = job
        self._task = asyncio.get_running_loop().create_task(self._run(job, on_progress))
        logger.info("Download of %s started", descriptor.id)
        return True

    def cancel(self) -> bool:
        """Request cancellation of the active download."""
        if self._job is None or not self._job.is_active:
            return False
        self._job.cancel_requested = True
        logger.info("Cancellation requested for download of %s", self._job.descriptor.id)
        return True

    async def wait(self) -> DownloadJob | None:
        """Wait for the current download to reach a terminal state."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self._job

    def acknowledge(self) -> DownloadJob | None:
        """Consume a terminal job and return to IDLE."""
        job = self._job
        if job is None or not job.is_terminal:
            return None
        self._job = None
        self._task = None
        return job

    async def aclose(self) -> None:
        """Cancel any active download and wait for it to finish."""
        if self.cancel():
            await self.wait()

    # ── Transfer ──────────────────────────────────────────────────────

    async def _run(self, job: DownloadJob, on_progress: DownloadProgressCallback | None) -> DownloadJob:
        descriptor = job.descriptor
        file_name = descriptor.file_name

        try:
            self._store.ensure_directory()
            temp_path = self._store.temp_path_for(file_name)
            job.path = self._store.path_for(file_name)
        except (OSError, ValidationFailure) as exc:
            return self._fail(job, ModelDownloadFailure(f"Cannot prepare download: {exc}"))

        if job.cancel_requested:
            return self._cancelled(job)

        job.state = DownloadState.IN_PROGRESS
        # Verified against the declared size; Content-Length counts encoded bytes
        total_bytes = descriptor.size_bytes
        job.total_bytes = total_bytes
        digest = hashlib.sha256() if descriptor.sha256 else None
        last_pct = -1

        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                async with client.stream("GET", descriptor.source_url) as resp:
                    resp.raise_for_status()

                    async with aiofiles.open(temp_path, "wb") as f:
                        async for chunk in resp.aiter_bytes(chunk_size=self._chunk_size):
                            await f.write(chunk)
                            job.bytes_written += len(chunk)
                            if digest is not None:
                                digest.update(chunk)

                            if job.cancel_requested:
                                break

                            job.progress = min(1.0, job.bytes_written / total_bytes)
                            pct = int(job.progress * 100)
                            if pct != last_pct:
                                last_pct = pct
                                self._notify(on_progress, job)
        except asyncio.CancelledError:
            self._store.discard_temp(file_name)
            job.state = DownloadState.CANCELLED
            raise
        except httpx.HTTPError as exc:
            self._store.discard_temp(file_name)
            return self._fail(job, NetworkFailure(f"Download failed: {exc}"))
        except httpx.InvalidURL as exc:
            self._store.discard_temp(file_name)
            return self._fail(job, NetworkFailure(f"Invalid download URL: {exc}"))
        except (OSError, ValueError) as exc:
            self._store.discard_temp(file_name)
            return self._fail(job, ModelDownloadFailure(f"Download failed: {exc}"))
        except Exception as exc:
            logger.exception("Unexpected error downloading %s", descriptor.id)
            self._store.discard_temp(file_name)
            return self._fail(job, ModelDownloadFailure(f"Download failed: {exc}"))

        # Checked before completion so a late cancel always wins
        if job.cancel_requested:
            return self._cancelled(job)

        if job.bytes_written != total_bytes:
            self._store.discard_temp(file_name)
            return self._fail(job, ModelDownloadFailure(
                f"Size mismatch: expected {total_bytes} bytes, received {job.bytes_written}"
            ))

        if digest is not None and digest.hexdigest() != descriptor.sha256:
            self._store.discard_temp(file_name)
            return self._fail(job, ModelDownloadFailure("Checksum mismatch: downloaded file is corrupted"))

        try:
            job.path = self._store.commit_download(file_name, descriptor)
        except OSError as exc:
            self._store.discard_temp(file_name)
            return self._fail(job, ModelDownloadFailure(f"Cannot store model file: {exc}"))

        job.state = DownloadState.COMPLETED
        job.progress = 1.0
        if last_pct != 100:
            self._notify(on_progress, job)
        logger.info("Download of %s complete: %s", descriptor.id, job.path)

        if self._auto_select and not self._store.has_explicit_selection():
            self._store.select_model(descriptor.id)
            logger.info("Selected %s as the active model", descriptor.id)

        return job

    def _cancelled(self, job: DownloadJob) -> DownloadJob:
        self._store.discard_temp(job.descriptor.file_name)
        job.state = DownloadState.CANCELLED
        logger.info("Download of %s cancelled", job.descriptor.id)
        return job

    def _fail(self, job: DownloadJob, error: AssistantError) -> DownloadJob:
        job.error = error
        job.state = DownloadState.FAILED
        logger.error("Download of %s failed: %s", job.descriptor.id, error.reason)
        return job

    @staticmethod
    def _notify(on_progress: DownloadProgressCallback | None, job: DownloadJob) -> None:
        if on_progress is None:
            return
        try:
            on_progress(job.progress, job.bytes_written)
        except Exception:
            logger.exception("Download progress callback failed")
