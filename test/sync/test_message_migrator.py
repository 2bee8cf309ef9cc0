"""
Tests for sync/message_migrator.py

Tests cover:
- Batching by sequence range and resuming from a sequence number
- Message-ID deduplication (idempotent reruns)
- Messages without Message-ID always appended
- Flag and INTERNALDATE preservation, and turning both off
- Incremental mode pre-fetching destination Message-IDs instead of SEARCH
- Halting between batches
- Per-message and per-batch failures counted, not raised
- Reconnect-and-retry-once on dropped sessions
"""

from datetime import datetime

import pytest
from fake_imap import FakeServer, FakeSession, make_message

from mailmirror.config import SyncOptions
from mailmirror.errors import ConnectionLostError, EnumerationError, ImapCommandError, MaxReconnectAttemptsReached
from mailmirror.models import SyncMode
from mailmirror.sync.message_migrator import ROLE_DESTINATION, ROLE_SOURCE, MessageMigrator


def _servers(count, folder="INBOX"):
    source = FakeServer({folder: [make_message(n) for n in range(1, count + 1)]})
    destination = FakeServer({folder: []})
    return source, destination


def _migrator(batch_size=50, mode=SyncMode.FULL, reconnect=None, **options):
    return MessageMigrator(
        SyncOptions(batch_size=batch_size, **options), mode=mode, reconnect=reconnect, log_fn=lambda _: None
    )


class TestBatching:
    def test_all_messages_copied_in_batches(self):
        source, destination = _servers(120)
        result = _migrator(50).migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert [(b.start, b.end) for b in result.batches] == [(1, 50), (51, 100), (101, 120)]
        assert result.synced == 120
        assert result.complete is True
        assert destination.count("INBOX") == 120
        assert destination.message_ids("INBOX") == source.message_ids("INBOX")

    def test_empty_folder(self):
        source, destination = _servers(0)
        result = _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert result.batches == []
        assert result.complete is True

    def test_start_seq_resumes(self):
        source, destination = _servers(10)
        result = _migrator(4).migrate_folder(FakeSession(source), FakeSession(destination), "INBOX", start_seq=5)
        assert [(b.start, b.end) for b in result.batches] == [(5, 8), (9, 10)]
        assert destination.message_ids("INBOX") == [f"<msg{n}@example.com>" for n in range(5, 11)]

    def test_dest_path(self):
        source = FakeServer({"INBOX/Archive": [make_message(1)]})
        destination = FakeServer({"INBOX.Archive": []}, delimiter=".")
        _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX/Archive", "INBOX.Archive")
        assert destination.count("INBOX.Archive") == 1

    def test_on_batch_callback(self):
        source, destination = _servers(5)
        seen = []
        _migrator(2).migrate_folder(
            FakeSession(source),
            FakeSession(destination),
            "INBOX",
            on_batch=lambda batch, result: seen.append((batch.processed, result.next_seq)),
        )
        assert seen == [(2, 3), (2, 5), (1, 6)]

    def test_missing_destination_folder_raises(self):
        source = FakeServer({"INBOX": [make_message(1)]})
        destination = FakeServer()
        with pytest.raises(EnumerationError):
            _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")


class TestDeduplication:
    def test_rerun_skips_everything(self):
        source, destination = _servers(30)
        migrator = _migrator(10)
        migrator.migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        second = migrator.migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert second.synced == 0
        assert second.skipped == 30
        assert destination.count("INBOX") == 30

    def test_existing_messages_skipped(self):
        source, destination = _servers(3)
        destination.add_message("INBOX", make_message(2))
        result = _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert (result.synced, result.skipped) == (2, 1)

    def test_deleted_destination_copy_does_not_count(self):
        source, destination = _servers(1)
        destination.add_message("INBOX", make_message(1), flags=("\\Deleted",))
        result = _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert result.synced == 1

    def test_message_without_id_always_appended(self):
        source = FakeServer({"INBOX": [make_message(1, message_id=False)]})
        destination = FakeServer({"INBOX": []})
        migrator = _migrator()
        migrator.migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        migrator.migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert destination.count("INBOX") == 2
        assert destination.searches == 0


class TestIncremental:
    def test_no_per_message_search(self):
        source, destination = _servers(20)
        destination.add_message("INBOX", make_message(3))
        result = _migrator(5, mode=SyncMode.INCREMENTAL).migrate_folder(
            FakeSession(source), FakeSession(destination), "INBOX"
        )
        assert (result.synced, result.skipped) == (19, 1)
        assert destination.searches == 0

    def test_deleted_destination_copy_does_not_count(self):
        source, destination = _servers(1)
        destination.add_message("INBOX", make_message(1), flags=("\\Deleted",))
        result = _migrator(mode=SyncMode.INCREMENTAL).migrate_folder(
            FakeSession(source), FakeSession(destination), "INBOX"
        )
        assert (result.synced, result.skipped) == (1, 0)
        assert destination.count("INBOX") == 2

    def test_duplicates_within_source_copied_once(self):
        source = FakeServer({"INBOX": [make_message(1), make_message(1)]})
        destination = FakeServer({"INBOX": []})
        result = _migrator(mode=SyncMode.INCREMENTAL).migrate_folder(
            FakeSession(source), FakeSession(destination), "INBOX"
        )
        assert (result.synced, result.skipped) == (1, 1)


class TestFlagsAndDates:
    def test_flags_and_date_preserved(self):
        source = FakeServer()
        source.add_message(
            "INBOX", make_message(1), flags=("\\Seen", "\\Recent", "$Label1"), internal_date="02-Feb-2024 09:30:00 +0100"
        )
        destination = FakeServer({"INBOX": []})
        _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        _, raw, flags, date_time = destination.appends[0]
        assert raw == make_message(1)
        assert flags == ("\\Seen", "$Label1")
        assert date_time == '"02-Feb-2024 09:30:00 +0100"'

    def test_preservation_disabled(self):
        source = FakeServer()
        source.add_message("INBOX", make_message(1), flags=("\\Seen",), internal_date="02-Feb-2024 09:30:00 +0100")
        destination = FakeServer({"INBOX": []})
        _migrator(preserve_flags=False, preserve_dates=False).migrate_folder(
            FakeSession(source), FakeSession(destination), "INBOX"
        )
        _, _, flags, date_time = destination.appends[0]
        assert flags == ()
        assert isinstance(date_time, datetime)
        assert date_time.tzinfo is not None


class TestHalting:
    def test_halts_between_batches(self):
        source, destination = _servers(10)
        calls = []

        def should_halt():
            calls.append(1)
            return True

        result = _migrator(3).migrate_folder(
            FakeSession(source), FakeSession(destination), "INBOX", should_halt=should_halt
        )
        # The first batch always runs; the check happens before the second.
        assert len(result.batches) == 1
        assert result.halted is True
        assert result.next_seq == 4
        assert result.complete is False
        assert destination.count("INBOX") == 3


class TestFailures:
    def test_append_failure_counted(self):
        source, destination = _servers(3)
        destination.fail("append", ImapCommandError("APPEND failed: NO [OVERQUOTA]"))
        result = _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert (result.synced, result.failed) == (2, 1)

    def test_search_failure_counted(self):
        source, destination = _servers(2)
        destination.fail("search", ImapCommandError("SEARCH failed"))
        result = _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert (result.synced, result.failed) == (1, 1)

    def test_fetch_failure_fails_whole_range(self):
        source, destination = _servers(6)
        source.fail("fetch", ImapCommandError("FETCH failed"))
        result = _migrator(4).migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert result.batches[0].failed == 4
        assert result.batches[1].synced == 2
        assert result.complete is True


class TestReconnect:
    def test_destination_reconnected_and_retried(self):
        source, destination = _servers(3)
        destination.fail("append", ConnectionLostError("socket error: EOF"))
        roles = []

        def reconnect(role):
            roles.append(role)
            return FakeSession(destination)

        result = _migrator(reconnect=reconnect).migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")
        assert roles == [ROLE_DESTINATION]
        assert result.synced == 3
        assert destination.count("INBOX") == 3

    def test_source_reconnected_and_folder_reopened(self):
        source, destination = _servers(4)
        source.fail("fetch", ConnectionLostError("socket error: EOF"))
        fresh = []

        def reconnect(role):
            session = FakeSession(source)
            fresh.append(session)
            return session

        result = _migrator(2, reconnect=reconnect).migrate_folder(
            FakeSession(source), FakeSession(destination), "INBOX"
        )
        assert result.synced == 4
        assert fresh[0].selected_folder == "INBOX"
        assert fresh[0].readonly is True

    def test_second_drop_propagates(self):
        source, destination = _servers(1)
        destination.fail("append", ConnectionLostError("EOF"), ConnectionLostError("EOF"))
        with pytest.raises(ConnectionLostError):
            _migrator(reconnect=lambda role: FakeSession(destination)).migrate_folder(
                FakeSession(source), FakeSession(destination), "INBOX"
            )

    def test_reconnect_exhausted_propagates(self):
        source, destination = _servers(1)
        source.fail("examine", ConnectionLostError("EOF"))

        def reconnect(role):
            raise MaxReconnectAttemptsReached("gave up", attempts=3)

        with pytest.raises(MaxReconnectAttemptsReached):
            _migrator(reconnect=reconnect).migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")

    def test_without_reconnect_callback_drop_propagates(self):
        source, destination = _servers(1)
        source.fail("fetch", ConnectionLostError("EOF"))
        with pytest.raises(ConnectionLostError):
            _migrator().migrate_folder(FakeSession(source), FakeSession(destination), "INBOX")

    def test_roles(self):
        assert (ROLE_SOURCE, ROLE_DESTINATION) == ("source", "destination")
