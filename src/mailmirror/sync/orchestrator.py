"""
Sync Orchestrator

Drives mirroring jobs through their lifecycle:

    pending -> running -> {paused, completed, failed, cancelled, stopped}
    paused  -> running | stopped | cancelled | failed

Each running job gets one worker thread from the orchestrator's pool. The
worker acquires source and destination sessions from the ConnectionManager,
discovers and replicates the folder tree, pre-counts the source folders,
then migrates folder by folder. Pause, stop and cancel are cooperative:
control calls change the job status at once, and the worker notices at the
next folder or batch checkpoint. A paused job keeps a resume cursor
(folder index, next sequence number) so resume continues with the next
unprocessed batch.

All job state is guarded by one lock. Events are dispatched outside it, so
listeners may call back into the orchestrator.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from mailmirror import config as mm_config
from mailmirror.config import EndpointConfig, SyncOptions
from mailmirror.core.connection_manager import ConnectionManager
from mailmirror.errors import InvalidStateTransition, JobNotFound, SyncError
from mailmirror.events import EventDispatcher, SyncEvent, SyncEventType
from mailmirror.models import (
    ROLE_DESTINATION,
    ROLE_SOURCE,
    JobError,
    ResumeCursor,
    SyncJob,
    SyncMode,
    SyncStatus,
    utcnow,
)
from mailmirror.sync.folder_replicator import FolderReplicator, call_with_reconnect, migration_plan, restrict_tree
from mailmirror.sync.message_migrator import MessageMigrator
from mailmirror.utils.imap_common import safe_print

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"
STALE_JOB_CODE = "STALE_JOB"

_DONE = "done"
_HALTED = "halted"


@dataclass
class _JobPlan:
    folders: list = field(default_factory=list)
    # source path -> destination path
    path_map: dict = field(default_factory=dict)


class SyncOrchestrator:
    def __init__(
        self,
        connection_manager: ConnectionManager | None = None,
        max_workers=None,
        listeners=None,
        stale_threshold=None,
        log_fn=safe_print,
    ):
        self._owns_manager = connection_manager is None
        self._manager = connection_manager or ConnectionManager(log_fn=log_fn)
        self._executor = ThreadPoolExecutor(max_workers=max_workers or mm_config.default_max_workers())
        self._events = EventDispatcher(listeners, log_fn=log_fn)
        self.stale_threshold = mm_config.default_stale_threshold() if stale_threshold is None else stale_threshold
        self._log_fn = log_fn
        self._replicator = FolderReplicator(log_fn=log_fn)

        self._lock = threading.Lock()
        self._jobs: dict[str, SyncJob] = {}
        self._plans: dict[str, _JobPlan] = {}
        self._futures: dict[str, Future] = {}
        self._active: set[str] = set()
        self._retries: dict[str, int] = {}

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    @property
    def connection_manager(self) -> ConnectionManager:
        return self._manager

    def add_listener(self, listener) -> None:
        self._events.add_listener(listener)

    def _emit(self, event_type: SyncEventType, job: SyncJob, snapshot: dict | None = None, **payload) -> None:
        if snapshot is None:
            with self._lock:
                snapshot = job.snapshot()
        self._events.dispatch(SyncEvent(event_type, job.id, snapshot, payload))

    # Job registry

    def create_job(
        self,
        source: EndpointConfig,
        destination: EndpointConfig,
        mode=SyncMode.FULL,
        folders=(),
        options: SyncOptions | None = None,
        job_id: str | None = None,
    ) -> SyncJob:
        kwargs = {"mode": mode, "folders": tuple(folders or ()), "options": options or SyncOptions()}
        if job_id:
            kwargs["id"] = job_id
        job = SyncJob(source, destination, **kwargs)
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
        return job

    def _lookup(self, job_id: str) -> SyncJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Job not found: {job_id}")
        return job

    def get_job(self, job_id: str) -> SyncJob:
        with self._lock:
            return self._lookup(job_id)

    def get_status(self, job_id: str) -> dict:
        with self._lock:
            return self._lookup(job_id).snapshot()

    def list_jobs(self, status: SyncStatus | None = None) -> list[dict]:
        with self._lock:
            return [j.snapshot() for j in self._jobs.values() if status is None or j.status == SyncStatus(status)]

    # Lifecycle

    def _begin(self, job, run_async: bool) -> tuple[SyncJob, Future]:
        with self._lock:
            if isinstance(job, str):
                job = self._lookup(job)
            else:
                self._jobs.setdefault(job.id, job)
            if job.status != SyncStatus.PENDING:
                raise InvalidStateTransition(f"Job {job.id} cannot be started from {job.status.value}")
            job.transition(SyncStatus.RUNNING)
            self._active.add(job.id)
            future = self._executor.submit(self._run, job, SyncEventType.STARTED) if run_async else Future()
            self._futures[job.id] = future
        return job, future

    def start(self, job) -> SyncJob:
        """Runs a pending job to completion (or until paused / stopped) on the calling thread."""
        job, future = self._begin(job, run_async=False)
        future.set_result(self._run(job, SyncEventType.STARTED))
        return job

    def submit(self, job) -> Future:
        """Runs a pending job on the worker pool. The future resolves to the job when its worker exits."""
        _, future = self._begin(job, run_async=True)
        return future

    def pause(self, job_id: str) -> SyncJob:
        with self._lock:
            job = self._lookup(job_id)
            if job.status != SyncStatus.RUNNING:
                raise InvalidStateTransition(f"Job {job_id} cannot be paused from {job.status.value}")
            job.transition(SyncStatus.PAUSED)
            snapshot = job.snapshot()
        self._log_fn(f"Pause requested for job {job_id}")
        self._emit(SyncEventType.PAUSED, job, snapshot)
        return job

    def resume(self, job_id: str) -> Future:
        """
        Continues a paused job from its resume cursor. Returns the future of
        the worker that carries on: the still-exiting worker when it has not
        reached its checkpoint yet, a new one otherwise.
        """
        with self._lock:
            job = self._lookup(job_id)
            if job.status != SyncStatus.PAUSED:
                raise InvalidStateTransition(f"Job {job_id} cannot be resumed from {job.status.value}")
            job.transition(SyncStatus.RUNNING)
            in_flight = job.id in self._active
            if in_flight:
                future = self._futures[job.id]
            else:
                self._active.add(job.id)
                future = self._executor.submit(self._run, job, SyncEventType.RESUMED)
                self._futures[job.id] = future
            snapshot = job.snapshot()
        if in_flight:
            # The exiting worker picks the job up again; a new worker announces itself.
            self._log_fn(f"Resuming job {job_id} at folder #{job.cursor.folder_index + 1}, message {job.cursor.next_seq}")
            self._emit(SyncEventType.RESUMED, job, snapshot)
        return future

    def _terminate(self, job_id: str, status: SyncStatus, event_type: SyncEventType) -> SyncJob:
        with self._lock:
            job = self._lookup(job_id)
            if job.status not in (SyncStatus.RUNNING, SyncStatus.PAUSED):
                raise InvalidStateTransition(f"Job {job_id} cannot be {status.value} from {job.status.value}")
            job.transition(status)
            if job.id not in self._active:
                self._plans.pop(job.id, None)
            snapshot = job.snapshot()
        self._log_fn(f"Job {job_id} {status.value}")
        self._emit(event_type, job, snapshot)
        return job

    def stop(self, job_id: str) -> SyncJob:
        return self._terminate(job_id, SyncStatus.STOPPED, SyncEventType.STOPPED)

    def cancel(self, job_id: str) -> SyncJob:
        return self._terminate(job_id, SyncStatus.CANCELLED, SyncEventType.CANCELLED)

    def fail_job(self, job_id: str, message: str, code: str = STALE_JOB_CODE) -> SyncJob:
        """Force-fails a job, e.g. when a watchdog finds it stuck. A live worker exits at its next checkpoint."""
        with self._lock:
            job = self._lookup(job_id)
            if job.is_terminal:
                raise InvalidStateTransition(f"Job {job_id} is already {job.status.value}")
            job.error = JobError(message=message, code=code, retry_count=self._retries.get(job.id, 0))
            job.transition(SyncStatus.FAILED)
            if job.id not in self._active:
                self._plans.pop(job.id, None)
            snapshot = job.snapshot()
        self._log_fn(f"Job {job_id} failed: {message} [{code}]")
        self._emit(SyncEventType.FAILED, job, snapshot)
        return job

    def find_stale_jobs(self, threshold=None) -> list[dict]:
        """Running jobs without progress for `threshold` seconds (default: stale_threshold)."""
        threshold = self.stale_threshold if threshold is None else threshold
        now = utcnow()
        stale = []
        with self._lock:
            for job in self._jobs.values():
                if job.status != SyncStatus.RUNNING:
                    continue
                last = job.progress.last_progress_at or job.started_at or job.created_at
                if (now - last).total_seconds() >= threshold:
                    stale.append(job.snapshot())
        return stale

    def cleanup_finished_jobs(self, max_age=3600) -> int:
        """Forgets terminal jobs that finished more than max_age seconds ago."""
        now = utcnow()
        with self._lock:
            expired = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal
                and job_id not in self._active
                and job.completed_at
                and (now - job.completed_at).total_seconds() >= max_age
            ]
            for job_id in expired:
                self._jobs.pop(job_id, None)
                self._plans.pop(job_id, None)
                self._futures.pop(job_id, None)
                self._retries.pop(job_id, None)
        return len(expired)

    def shutdown(self, wait=True) -> None:
        """Stops running and paused jobs, waits for their workers, then closes owned connections."""
        with self._lock:
            live = [j.id for j in self._jobs.values() if j.status in (SyncStatus.RUNNING, SyncStatus.PAUSED)]
        for job_id in live:
            try:
                self.stop(job_id)
            except InvalidStateTransition:
                pass
        self._executor.shutdown(wait=wait)
        if self._owns_manager:
            self._manager.close_all()

    # Worker

    def _should_halt(self, job: SyncJob) -> bool:
        with self._lock:
            return job.status != SyncStatus.RUNNING

    def _run(self, job: SyncJob, announce: SyncEventType | None = None) -> SyncJob:
        """Worker body. Loops when the job was resumed while the worker was halting."""
        if announce == SyncEventType.STARTED:
            self._log_fn(
                f"Starting {job.mode.value} sync job {job.id}: "
                f"{job.source.describe()} -> {job.destination.describe()}"
            )
        elif announce == SyncEventType.RESUMED:
            self._log_fn(f"Resuming job {job.id} at folder #{job.cursor.folder_index + 1}, message {job.cursor.next_seq}")
        if announce is not None:
            self._emit(announce, job)
        while True:
            outcome = self._run_once(job)
            with self._lock:
                if outcome == _HALTED and job.status == SyncStatus.RUNNING:
                    continue
                self._active.discard(job.id)
                if job.is_terminal:
                    self._plans.pop(job.id, None)
                return job

    def _run_once(self, job: SyncJob) -> str:
        lease = {ROLE_SOURCE: f"{job.id}:source", ROLE_DESTINATION: f"{job.id}:destination"}
        configs = {ROLE_SOURCE: job.source, ROLE_DESTINATION: job.destination}
        sessions = {}
        failed = False
        try:
            for role in (ROLE_SOURCE, ROLE_DESTINATION):
                sessions[role] = self._manager.get_connection(lease[role], configs[role]).session

            def reconnect(role):
                with self._lock:
                    self._retries[job.id] = self._retries.get(job.id, 0) + 1
                conn = self._manager.reconnect(
                    lease[role], configs[role], job.options.retry_attempts, job.options.retry_delay
                )
                sessions[role] = conn.session
                return conn.session

            outcome = self._traverse(job, sessions, reconnect)
            if outcome == _DONE and not self._finish(job):
                # Paused or ended from outside after the last batch
                outcome = _HALTED
            return outcome
        except SyncError as e:
            failed = True
            self._fail(job, e.message, e.code, getattr(e, "attempts", None))
            return _DONE
        except Exception as e:
            failed = True
            self._log_fn(f"Unexpected error in job {job.id}: {e}")
            self._fail(job, str(e), INTERNAL_ERROR_CODE)
            return _DONE
        finally:
            for role in (ROLE_SOURCE, ROLE_DESTINATION):
                if failed:
                    self._manager.close_connection(lease[role])
                else:
                    self._manager.return_to_pool(lease[role])

    def _prepare(self, job: SyncJob, sessions, reconnect) -> _JobPlan:
        """Discovers, replicates and pre-counts folders on the first run of a job."""
        roots = self._replicator.discover(sessions[ROLE_SOURCE], reconnect=reconnect)
        if job.folders:
            roots = restrict_tree(roots, job.folders)
        folders = migration_plan(roots, job.folders)

        with self._lock:
            job.progress.total_folders = len(folders)
            snapshot = job.snapshot()
        self._emit(SyncEventType.FOLDERS_DISCOVERED, job, snapshot, folders=[f.path for f in folders])

        replication = self._replicator.replicate(sessions[ROLE_DESTINATION], roots, reconnect=reconnect)
        totals = {
            node.path: call_with_reconnect(
                sessions, ROLE_SOURCE, lambda s, path=node.path: s.examine(path), reconnect, self._log_fn
            )
            for node in folders
        }

        with self._lock:
            job.stats.folders_created += replication.created_count
            job.stats.folders_skipped += replication.skipped_count
            job.progress.errors += replication.error_count
            job.folder_totals = totals
            job.progress.total_emails = sum(totals.values())
            job.mark_progress()
        self._log_fn(f"Job {job.id}: {len(folders)} folder(s), {sum(totals.values())} message(s) to process")
        return _JobPlan(folders=folders, path_map=replication.path_map)

    def _grow_total(self, job: SyncJob, path: str, total: int) -> None:
        """Raises the job totals when a folder holds more mail than its pre-count. Caller holds the lock."""
        known = job.folder_totals.get(path, 0)
        if total > known:
            job.progress.total_emails += total - known
            job.folder_totals[path] = total

    def _traverse(self, job: SyncJob, sessions, reconnect) -> str:
        with self._lock:
            plan = self._plans.get(job.id)
        if plan is None:
            plan = self._prepare(job, sessions, reconnect)
            with self._lock:
                self._plans[job.id] = plan
        self._emit(SyncEventType.RUNNING, job)

        migrator = MessageMigrator(job.options, job.mode, reconnect=reconnect, log_fn=self._log_fn)

        with self._lock:
            first_index = job.cursor.folder_index
        for index in range(first_index, len(plan.folders)):
            if self._should_halt(job):
                return _HALTED
            node = plan.folders[index]
            with self._lock:
                start_seq = job.cursor.next_seq if index == job.cursor.folder_index else 1

            def on_batch(batch, result, index=index, path=node.path):
                with self._lock:
                    self._grow_total(job, path, result.total)
                    job.progress.processed_emails += batch.processed
                    job.progress.errors += batch.failed
                    job.stats.emails_synced += batch.synced
                    job.stats.emails_skipped += batch.skipped
                    job.stats.emails_failed += batch.failed
                    job.cursor = ResumeCursor(index, batch.end + 1)
                    job.mark_progress()
                    snapshot = job.snapshot()
                self._emit(
                    SyncEventType.BATCH_COMPLETED,
                    job,
                    snapshot,
                    folder=batch.folder,
                    start=batch.start,
                    end=batch.end,
                    synced=batch.synced,
                    skipped=batch.skipped,
                    failed=batch.failed,
                )

            result = migrator.migrate_folder(
                sessions[ROLE_SOURCE],
                sessions[ROLE_DESTINATION],
                node.path,
                plan.path_map.get(node.path, node.path),
                start_seq=start_seq,
                should_halt=lambda: self._should_halt(job),
                on_batch=on_batch,
            )
            if result.halted:
                return _HALTED

            with self._lock:
                self._grow_total(job, node.path, result.total)
                job.cursor = ResumeCursor(index + 1, 1)
                job.progress.processed_folders += 1
                job.mark_progress()
                snapshot = job.snapshot()
            self._emit(
                SyncEventType.FOLDER_COMPLETED,
                job,
                snapshot,
                folder=node.path,
                synced=result.synced,
                skipped=result.skipped,
                failed=result.failed,
            )
        return _DONE

    def _finish(self, job: SyncJob) -> bool:
        """Marks a running job completed. Returns False when it is no longer running."""
        with self._lock:
            if job.status != SyncStatus.RUNNING:
                return False
            job.mark_progress()
            job.progress.percentage = 100
            job.transition(SyncStatus.COMPLETED)
            snapshot = job.snapshot()
        stats = job.stats
        self._log_fn(
            f"Job {job.id} completed: {stats.emails_synced} synced, {stats.emails_skipped} skipped, "
            f"{stats.emails_failed} failed, {stats.folders_created} folder(s) created"
        )
        self._emit(SyncEventType.COMPLETED, job, snapshot)
        return True

    def _fail(self, job: SyncJob, message: str, code: str, attempts=None) -> None:
        with self._lock:
            if job.is_terminal:
                self._log_fn(f"Job {job.id} error after it was {job.status.value}: {message}")
                return
            retry_count = attempts if attempts is not None else self._retries.get(job.id, 0)
            job.error = JobError(message=message, code=code, retry_count=retry_count)
            job.transition(SyncStatus.FAILED)
            snapshot = job.snapshot()
        self._log_fn(f"Job {job.id} failed: {message} [{code}]")
        self._emit(SyncEventType.FAILED, job, snapshot)
