"""
Message Migrator

Copies the messages of one folder from source to destination in
fixed-size sequence ranges. Each message is checked against the
destination by Message-ID before it is appended, so re-running a job never
duplicates mail. Flags and INTERNALDATE are carried over unless the job
options say otherwise.

Per-message failures are counted and logged, never raised. Connection
drops are handed to the reconnect callback and the affected operation is
retried once on the fresh session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from mailmirror.config import SyncOptions
from mailmirror.errors import ConnectionLostError, ImapCommandError
from mailmirror.models import ROLE_DESTINATION, ROLE_SOURCE, MessageEnvelope, SyncMode
from mailmirror.utils import imap_common
from mailmirror.utils.imap_common import safe_print


@dataclass
class BatchResult:
    folder: str
    start: int
    end: int
    synced: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        """Sequence numbers covered by the batch, whether or not the server returned them all."""
        return self.end - self.start + 1


@dataclass
class FolderResult:
    folder: str
    dest_path: str
    total: int = 0
    start_seq: int = 1
    next_seq: int = 1
    batches: list[BatchResult] = field(default_factory=list)
    halted: bool = False

    @property
    def synced(self) -> int:
        return sum(b.synced for b in self.batches)

    @property
    def skipped(self) -> int:
        return sum(b.skipped for b in self.batches)

    @property
    def failed(self) -> int:
        return sum(b.failed for b in self.batches)

    @property
    def complete(self) -> bool:
        return not self.halted and self.next_seq > self.total


class _FolderContext:
    def __init__(self, source, destination, folder_path, dest_path):
        self.sessions = {ROLE_SOURCE: source, ROLE_DESTINATION: destination}
        self.folder_path = folder_path
        self.dest_path = dest_path


class MessageMigrator:
    """
    `reconnect` is called with ROLE_SOURCE or ROLE_DESTINATION after a
    dropped session and must return a fresh, authenticated session (or
    raise, typically MaxReconnectAttemptsReached).
    """

    def __init__(self, options: SyncOptions | None = None, mode=SyncMode.FULL, reconnect=None, log_fn=safe_print):
        self.options = options or SyncOptions()
        self.mode = SyncMode(mode)
        self._reconnect = reconnect
        self._log_fn = log_fn

    def _reopen(self, ctx: _FolderContext, role: str) -> None:
        session = ctx.sessions[role]
        if role == ROLE_SOURCE:
            session.examine(ctx.folder_path)
        else:
            session.select(ctx.dest_path)

    def _call(self, ctx: _FolderContext, role: str, operation):
        try:
            return operation(ctx.sessions[role])
        except ConnectionLostError as e:
            if self._reconnect is None:
                raise
            self._log_fn(f"[{ctx.folder_path}] {role} connection lost ({e}), reconnecting...")
            ctx.sessions[role] = self._reconnect(role)
            self._reopen(ctx, role)
            return operation(ctx.sessions[role])

    def migrate_folder(
        self,
        source,
        destination,
        folder_path: str,
        dest_path: str | None = None,
        start_seq: int = 1,
        should_halt=None,
        on_batch=None,
    ) -> FolderResult:
        """
        Migrates sequence numbers start_seq..EXISTS of one folder.

        should_halt is consulted between batches; when it returns True the
        folder stops early with result.halted set and result.next_seq
        pointing at the first unprocessed message. on_batch(batch, result)
        runs after every batch.

        Raises:
            EnumerationError: the source or destination folder cannot be opened.
            ConnectionLostError / MaxReconnectAttemptsReached: the session could not be recovered.
        """
        dest_path = dest_path or folder_path
        ctx = _FolderContext(source, destination, folder_path, dest_path)

        total = self._call(ctx, ROLE_SOURCE, lambda s: s.examine(folder_path))
        self._call(ctx, ROLE_DESTINATION, lambda d: d.select(dest_path))

        start_seq = max(1, start_seq)
        result = FolderResult(folder=folder_path, dest_path=dest_path, total=total, start_seq=start_seq)
        result.next_seq = start_seq
        if start_seq > total:
            return result

        known_ids = None
        if self.mode == SyncMode.INCREMENTAL:
            known_ids = self._call(ctx, ROLE_DESTINATION, lambda d: d.list_message_ids())
            self._log_fn(f"[{dest_path}] {len(known_ids)} message(s) already on destination")

        self._log_fn(f"[{folder_path}] Migrating messages {start_seq}..{total} in batches of {self.options.batch_size}")
        first = True
        for start in range(start_seq, total + 1, self.options.batch_size):
            if not first and should_halt is not None and should_halt():
                result.halted = True
                break
            first = False
            end = min(start + self.options.batch_size - 1, total)
            batch = self._migrate_batch(ctx, start, end, known_ids)
            result.batches.append(batch)
            result.next_seq = end + 1
            if on_batch is not None:
                on_batch(batch, result)

        return result

    def _migrate_batch(self, ctx: _FolderContext, start: int, end: int, known_ids) -> BatchResult:
        batch = BatchResult(folder=ctx.folder_path, start=start, end=end)
        try:
            envelopes = self._call(ctx, ROLE_SOURCE, lambda s: self.fetch_batch(s, start, end))
        except ImapCommandError as e:
            batch.failed = batch.processed
            self._log_fn(f"[{ctx.folder_path}] ERROR Fetch | {start}:{end}: {e}")
            return batch

        for envelope in envelopes:
            status = self._call(
                ctx, ROLE_DESTINATION, lambda d: self.migrate_one(d, ctx.dest_path, envelope, known_ids)
            )
            if status == imap_common.STATUS_COPIED:
                batch.synced += 1
            elif status == imap_common.STATUS_SKIPPED:
                batch.skipped += 1
            else:
                batch.failed += 1
        return batch

    def fetch_batch(self, source, start: int, end: int) -> list[MessageEnvelope]:
        """FETCHes start:end with BODY.PEEK so source messages are not marked \\Seen."""
        return source.fetch_range(start, end)

    def migrate_one(self, destination, dest_path: str, envelope: MessageEnvelope, known_ids=None) -> str:
        """
        Appends one message unless the destination folder already holds its
        Message-ID. Messages without a Message-ID cannot be matched and are
        always appended.

        Returns STATUS_COPIED, STATUS_SKIPPED or STATUS_FAILED.
        """
        size_str = imap_common.format_size(envelope.size)
        subject = envelope.subject
        msg_id = envelope.message_id

        if msg_id:
            try:
                if known_ids is not None:
                    exists = msg_id in known_ids
                else:
                    exists = destination.message_id_exists(msg_id)
            except ImapCommandError as e:
                self._log_fn(f"[{dest_path}] {imap_common.STATUS_FAILED:<12} | {size_str:<8} | {subject[:40]} ({e})")
                return imap_common.STATUS_FAILED
            if exists:
                self._log_fn(f"[{dest_path}] {imap_common.STATUS_SKIPPED:<12} | {size_str:<8} | {subject[:40]}")
                return imap_common.STATUS_SKIPPED

        flags = imap_common.filter_preservable_flags(envelope.flags) if self.options.preserve_flags else ()
        if self.options.preserve_dates and envelope.internal_date:
            date_time = f'"{envelope.internal_date}"'
        else:
            date_time = datetime.now(timezone.utc)

        try:
            destination.append(dest_path, envelope.raw, flags, date_time)
        except ImapCommandError as e:
            self._log_fn(f"[{dest_path}] {imap_common.STATUS_FAILED:<12} | {size_str:<8} | {subject[:40]} ({e})")
            return imap_common.STATUS_FAILED

        if msg_id and known_ids is not None:
            known_ids.add(msg_id)
        self._log_fn(f"[{dest_path}] {imap_common.STATUS_COPIED:<12} | {size_str:<8} | {subject[:40]}")
        return imap_common.STATUS_COPIED
