"""
IMAP Mailbox Mirroring Script

Mirrors one IMAP account onto another: recreates the source folder
hierarchy on the destination and copies messages folder by folder in
batches, skipping messages whose Message-ID already exists at the
destination. Flags and original received dates are preserved by default.

Configuration (Environment Variables):
  Source Account:
    SRC_IMAP_HOST       : Source IMAP Host (e.g., imap.gmail.com, imap://localhost:143)
    SRC_IMAP_USERNAME   : Source Username/Email
    SRC_IMAP_PASSWORD   : Source Password (or App Password)
    SRC_IMAP_AUTH_METHOD: plain (default), login or xoauth2

    OAuth2 (Optional - instead of password):
    SRC_OAUTH2_CLIENT_ID     : OAuth2 Client ID
    SRC_OAUTH2_CLIENT_SECRET : OAuth2 Client Secret (required for Google)

  Destination Account:
    DEST_IMAP_HOST, DEST_IMAP_USERNAME, DEST_IMAP_PASSWORD, DEST_IMAP_AUTH_METHOD,
    DEST_OAUTH2_CLIENT_ID, DEST_OAUTH2_CLIENT_SECRET : as above

  Options:
    SYNC_MODE           : full (default), incremental or folder
    SYNC_BATCH_SIZE     : Messages per batch (default: 50)
    PRESERVE_FLAGS      : Set to "false" to append messages without flags. Default is "true".
    PRESERVE_DATES      : Set to "false" to use the current time as received date. Default is "true".
    IMAP_TIMEOUT, IMAP_RECONNECT_ATTEMPTS, IMAP_RECONNECT_DELAY : see mailmirror.config

Usage Example:
    # Mirror every folder
    mailmirror \
        --src-host "imap.example.com" --src-user "source@example.com" --src-pass "SOURCE_PASSWORD" \
        --dest-host "imap.example.com" --dest-user "dest@example.com" --dest-pass "DEST_PASSWORD"

    # Only new messages of two folders
    mailmirror --mode incremental INBOX "INBOX/Archive" ...

    # Check credentials without copying anything
    mailmirror --test-connection ...
"""

import argparse
import os
import sys
from concurrent.futures import TimeoutError as FutureTimeoutError

from mailmirror.auth import imap_oauth2
from mailmirror.config import EndpointConfig, SyncOptions, default_batch_size, env_bool
from mailmirror.core.connection_manager import ConnectionManager
from mailmirror.errors import InvalidStateTransition
from mailmirror.models import SyncMode, SyncStatus
from mailmirror.sync.orchestrator import SyncOrchestrator
from mailmirror.utils.imap_common import safe_print


def _add_endpoint_args(parser, prefix, label):
    env = prefix.upper()
    default_host = os.getenv(f"{env}_IMAP_HOST")
    default_user = os.getenv(f"{env}_IMAP_USERNAME")
    default_pass = os.getenv(f"{env}_IMAP_PASSWORD")
    default_client_id = os.getenv(f"{env}_OAUTH2_CLIENT_ID")

    parser.add_argument(
        f"--{prefix}-host",
        default=default_host,
        required=not bool(default_host),
        help=f"{label} IMAP Host (or {env}_IMAP_HOST)",
    )
    parser.add_argument(
        f"--{prefix}-user",
        default=default_user,
        required=not bool(default_user),
        help=f"{label} Username (or {env}_IMAP_USERNAME)",
    )
    auth = parser.add_mutually_exclusive_group(required=not bool(default_pass or default_client_id))
    auth.add_argument(
        f"--{prefix}-pass", default=default_pass, help=f"{label} Password or token (or {env}_IMAP_PASSWORD)"
    )
    auth.add_argument(
        f"--{prefix}-oauth2-client-id",
        default=default_client_id,
        dest=f"{prefix}_client_id",
        help=f"{label} OAuth2 Client ID (or {env}_OAUTH2_CLIENT_ID)",
    )
    parser.add_argument(
        f"--{prefix}-oauth2-client-secret",
        default=os.getenv(f"{env}_OAUTH2_CLIENT_SECRET"),
        dest=f"{prefix}_client_secret",
        help=f"{label} OAuth2 Client Secret (if required) (or {env}_OAUTH2_CLIENT_SECRET)",
    )
    parser.add_argument(
        f"--{prefix}-auth-method",
        default=os.getenv(f"{env}_IMAP_AUTH_METHOD", "plain"),
        choices=["plain", "login", "xoauth2"],
        help=f"{label} authentication method (or {env}_IMAP_AUTH_METHOD)",
    )


def build_parser():
    parser = argparse.ArgumentParser(description="Mirror folders and messages between IMAP accounts.")
    parser.add_argument("folders", nargs="*", help="Folders to mirror (default: all). Required with --mode folder.")

    _add_endpoint_args(parser, "src", "Source")
    _add_endpoint_args(parser, "dest", "Destination")

    parser.add_argument(
        "--mode",
        choices=[m.value for m in SyncMode],
        default=os.getenv("SYNC_MODE", SyncMode.FULL.value),
        help="full: check every message on the destination; incremental: pre-fetch destination "
        "Message-IDs per folder; folder: only the listed folders",
    )
    parser.add_argument("--batch", type=int, default=default_batch_size(), help="Messages per batch")
    parser.add_argument(
        "--no-preserve-flags",
        dest="preserve_flags",
        action="store_false",
        default=env_bool("PRESERVE_FLAGS", True),
        help="Append messages without their flags",
    )
    parser.add_argument(
        "--no-preserve-dates",
        dest="preserve_dates",
        action="store_false",
        default=env_bool("PRESERVE_DATES", True),
        help="Use the current time instead of the original received date",
    )
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Only check that both accounts accept the credentials, then exit",
    )
    return parser


def _endpoint_from_args(args, prefix):
    return EndpointConfig(
        host=getattr(args, f"{prefix}_host"),
        username=getattr(args, f"{prefix}_user"),
        password=getattr(args, f"{prefix}_pass"),
        auth_method=getattr(args, f"{prefix}_auth_method"),
        oauth2_client_id=getattr(args, f"{prefix}_client_id"),
        oauth2_client_secret=getattr(args, f"{prefix}_client_secret"),
    )


def print_summary(source, destination, args):
    print("\n--- Configuration Summary ---")
    print(f"Source Host     : {source.host}:{source.resolved_port}")
    print(f"Source User     : {source.username}")
    print(f"Source Auth     : {imap_oauth2.auth_description(source)}")
    print(f"Destination Host: {destination.host}:{destination.resolved_port}")
    print(f"Destination User: {destination.username}")
    print(f"Destination Auth: {imap_oauth2.auth_description(destination)}")
    print(f"Mode            : {args.mode}")
    print(f"Batch Size      : {args.batch}")
    print(f"Preserve Flags  : {args.preserve_flags}")
    print(f"Preserve Dates  : {args.preserve_dates}")
    if args.folders:
        print(f"Folders         : {', '.join(args.folders)}")
    print("-----------------------------\n")


def run_connection_test(manager, source, destination):
    ok = True
    for label, config in (("Source", source), ("Destination", destination)):
        result = manager.test_connection(config)
        if result.success:
            print(f"{label} connection OK: {config.describe()}")
        else:
            ok = False
            print(f"{label} connection FAILED: {result.error} [{result.code}]")
            if result.hint:
                print(f"  Hint: {result.hint}")
    return ok


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        source = _endpoint_from_args(args, "src")
        destination = _endpoint_from_args(args, "dest")
        options = SyncOptions(batch_size=args.batch, preserve_flags=args.preserve_flags, preserve_dates=args.preserve_dates)
        if args.mode == SyncMode.FOLDER.value and not args.folders:
            raise ValueError("--mode folder requires at least one folder")
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(2)

    print_summary(source, destination, args)
    manager = ConnectionManager()

    if args.test_connection:
        ok = run_connection_test(manager, source, destination)
        sys.exit(0 if ok else 1)

    with SyncOrchestrator(connection_manager=manager, max_workers=1) as orchestrator:
        job = orchestrator.create_job(source, destination, mode=args.mode, folders=args.folders, options=options)
        future = orchestrator.submit(job)
        try:
            while True:
                try:
                    future.result(timeout=1)
                    break
                except FutureTimeoutError:
                    continue
        except KeyboardInterrupt:
            safe_print("\n\n!!! Mirroring interrupted by user. Stopping after the current batch... !!!\n")
            try:
                orchestrator.stop(job.id)
            except InvalidStateTransition:
                # Finished on its own in the meantime
                pass
            future.result()
    manager.close_all()

    status = orchestrator.get_status(job.id)
    stats = status["stats"]
    print("\n--- Summary ---")
    print(f"Status          : {status['status']}")
    print(f"Folders Created : {stats['folders_created']}")
    print(f"Folders Skipped : {stats['folders_skipped']}")
    print(f"Emails Synced   : {stats['emails_synced']}")
    print(f"Emails Skipped  : {stats['emails_skipped']}")
    print(f"Emails Failed   : {stats['emails_failed']}")
    print(f"Duration        : {status['duration']:.1f}s")
    if status["error"]:
        print(f"Error           : {status['error']['message']} [{status['error']['code']}]")

    if status["status"] == SyncStatus.FAILED.value:
        sys.exit(1)


if __name__ == "__main__":
    main()
