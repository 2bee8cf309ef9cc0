"""
IMAP Session

Blocking protocol surface used by the mirroring components: handshake and
authentication, LIST, CREATE, read-only EXAMINE, ranged FETCH, Message-ID
SEARCH and APPEND. Built on imaplib; low-level failures are translated into
the errors of mailmirror.errors so callers can tell a dropped session
(ConnectionLostError) from a rejected command (ImapCommandError).
"""

from __future__ import annotations

import imaplib
import socket
import ssl

from mailmirror.auth import imap_oauth2
from mailmirror.config import AUTH_LOGIN, AUTH_XOAUTH2, EndpointConfig
from mailmirror.core.imap_retry import ConnectionProxy
from mailmirror.errors import (
    AuthenticationError,
    ConnectionLostError,
    ConnectionTimeout,
    EnumerationError,
    FolderExistsError,
    ImapCommandError,
    ImapConnectionError,
    TransportError,
)
from mailmirror.models import MessageEnvelope
from mailmirror.utils import imap_common
from mailmirror.utils.imap_common import safe_print

FETCH_ITEMS = "(UID FLAGS INTERNALDATE BODY.PEEK[])"
MESSAGE_ID_FETCH_ITEMS = "(UID BODY.PEEK[HEADER.FIELDS (MESSAGE-ID)])"
MESSAGE_ID_FETCH_BATCH = 500

GMAIL_AUTH_HINT = (
    "Gmail rejected the credentials. Use an App Password (requires 2-Step Verification) "
    "instead of the regular account password, or sign in with OAuth2."
)
OUTLOOK_AUTH_HINT = (
    "Microsoft rejected the credentials. Basic authentication is disabled for most "
    "Microsoft 365 tenants; sign in with OAuth2 or use an app password."
)
GENERIC_AUTH_HINT = "Invalid username or password. Check the credentials and the authentication method."
TOKEN_EXPIRED_HINT = "The OAuth2 access token has expired. Acquire a fresh token or configure an OAuth2 client id."


def auth_failure_hint(config: EndpointConfig) -> str:
    host = config.host.lower()
    if "gmail" in host or "google" in host:
        return GMAIL_AUTH_HINT
    if "outlook" in host or "office365" in host:
        return OUTLOOK_AUTH_HINT
    return GENERIC_AUTH_HINT


def _login_challenge_responder(username, password):
    """AUTHENTICATE LOGIN: answer the Username: challenge first, then Password:."""
    step = [0]

    def respond(challenge):
        text = imap_common.to_str(challenge or b"").lower()
        step[0] += 1
        if "user" in text or (step[0] == 1 and "pass" not in text):
            return username.encode()
        return password.encode()

    return respond


def _connect(config: EndpointConfig):
    host, port = config.host, config.resolved_port
    try:
        if config.secure:
            return imaplib.IMAP4_SSL(host, port, ssl_context=ssl.create_default_context(), timeout=config.timeout)
        return imaplib.IMAP4(host, port, timeout=config.timeout)
    except socket.timeout as e:
        raise ConnectionTimeout(f"Connection to {host}:{port} timed out after {config.timeout}s") from e
    except ssl.SSLError as e:
        raise TransportError(f"TLS handshake with {host}:{port} failed: {e}") from e
    except imaplib.IMAP4.error as e:
        raise ImapConnectionError(f"IMAP handshake with {host}:{port} failed: {e}") from e
    except OSError as e:
        raise ImapConnectionError(f"Could not connect to {host}:{port}: {e}") from e


def _authenticate(conn, config: EndpointConfig, log_fn) -> None:
    if config.auth_method == AUTH_XOAUTH2:
        token = imap_oauth2.acquire_token(config, log_fn=log_fn) if config.oauth2_client_id else config.password
        auth_string = imap_oauth2.build_xoauth2_string(config.username, token)
        conn.authenticate("XOAUTH2", lambda _: auth_string)
    elif config.auth_method == AUTH_LOGIN:
        conn.authenticate("LOGIN", _login_challenge_responder(config.username, config.password))
    else:
        conn.login(config.username, config.password)


def open_imap_connection(config: EndpointConfig, log_fn=safe_print):
    """
    Connects and authenticates, returning the raw imaplib connection.

    Raises:
        ConnectionTimeout: handshake or login did not finish within config.timeout.
        TransportError: TLS negotiation failed.
        AuthenticationError: credentials rejected (not retryable).
        ImapConnectionError: any other connection failure.
    """
    conn = _connect(config)
    try:
        _authenticate(conn, config, log_fn)
    except socket.timeout as e:
        _shutdown_quietly(conn)
        raise ConnectionTimeout(f"Login to {config.describe()} timed out after {config.timeout}s") from e
    except imaplib.IMAP4.abort as e:
        _shutdown_quietly(conn)
        raise ImapConnectionError(f"Server closed the connection during login to {config.describe()}: {e}") from e
    except imaplib.IMAP4.error as e:
        _shutdown_quietly(conn)
        hint = TOKEN_EXPIRED_HINT if imap_oauth2.is_token_expired_error(e) else auth_failure_hint(config)
        raise AuthenticationError(f"Authentication failed for {config.describe()}: {e}", hint=hint) from e
    except AuthenticationError:
        _shutdown_quietly(conn)
        raise
    except OSError as e:
        _shutdown_quietly(conn)
        raise ImapConnectionError(f"Connection to {config.describe()} failed during login: {e}") from e
    return conn


def _shutdown_quietly(conn) -> None:
    try:
        conn.shutdown()
    except OSError:
        pass


class ImapSession:
    """One authenticated IMAP session. Not thread-safe: one job worker drives it at a time."""

    def __init__(self, conn, config: EndpointConfig | None = None, log_fn=safe_print):
        self._conn = conn
        self.config = config
        self._log_fn = log_fn
        self.selected_folder = None

    @classmethod
    def open(cls, config: EndpointConfig, log_fn=safe_print, max_retries=3, retry_wait=5) -> ImapSession:
        conn = open_imap_connection(config, log_fn=log_fn)
        proxy = ConnectionProxy(conn, max_retries=max_retries, initial_wait=retry_wait, log_fn=log_fn)
        return cls(proxy, config, log_fn)

    @property
    def capabilities(self) -> tuple[str, ...]:
        return tuple(getattr(self._conn, "capabilities", ()) or ())

    def supports(self, capability: str) -> bool:
        wanted = capability.upper()
        return any(c.upper() == wanted for c in self.capabilities)

    def _run(self, command, *args, **kwargs):
        try:
            return getattr(self._conn, command)(*args, **kwargs)
        except imaplib.IMAP4.abort as e:
            raise ConnectionLostError(f"Connection lost during {command.upper()}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise ImapCommandError(f"{command.upper()} failed: {e}") from e
        except OSError as e:
            raise ConnectionLostError(f"Connection lost during {command.upper()}: {e}") from e

    def list_folders(self) -> list[tuple[str, str | None, tuple[str, ...]]]:
        """Returns (name, delimiter, attributes) for every mailbox on the server."""
        try:
            typ, data = self._run("list")
        except ImapCommandError as e:
            raise EnumerationError(str(e)) from e
        if typ != "OK":
            raise EnumerationError(f"LIST failed: {typ} {data}")
        folders = []
        for item in data or []:
            parsed = imap_common.parse_list_response(item)
            if parsed:
                folders.append(parsed)
        return folders

    def hierarchy_delimiter(self) -> str | None:
        try:
            typ, data = self._run("list", '""', '""')
        except ImapCommandError:
            return None
        if typ != "OK":
            return None
        for item in data or []:
            parsed = imap_common.parse_list_response(item, allow_empty_name=True)
            if parsed:
                return parsed[1]
        return None

    def create_folder(self, path: str, special_use: str | None = None) -> bool:
        """
        Creates a mailbox.

        Raises:
            FolderExistsError: the server reports the mailbox already exists.
            ImapCommandError: any other refusal.
        """
        mailbox = imap_common.quote_mailbox(path)
        if special_use and self.supports("CREATE-SPECIAL-USE"):
            try:
                return self._create(f"{mailbox} (USE ({special_use}))", path)
            except FolderExistsError:
                raise
            except ImapCommandError as e:
                self._log_fn(f"CREATE with USE {special_use} refused for {path}, retrying plain: {e}")
        return self._create(mailbox, path)

    def _create(self, argument: str, path: str) -> bool:
        typ, data = self._run("create", argument)
        if typ == "OK":
            return True
        if imap_common.is_already_exists_response(data):
            raise FolderExistsError(f"Folder already exists: {path}")
        raise ImapCommandError(f"CREATE {path} failed: {typ} {data}")

    def _select(self, path: str, readonly: bool) -> int:
        try:
            typ, data = self._run("select", imap_common.quote_mailbox(path), readonly=readonly)
        except ImapCommandError as e:
            raise EnumerationError(f"Cannot open folder {path}: {e}") from e
        if typ != "OK":
            raise EnumerationError(f"Cannot open folder {path}: {typ} {data}")
        self.selected_folder = path
        try:
            return int(data[0]) if data and data[0] else 0
        except (TypeError, ValueError):
            return 0

    def examine(self, path: str) -> int:
        """Opens a folder read-only and returns its message count."""
        return self._select(path, readonly=True)

    def select(self, path: str) -> int:
        """Opens a folder read-write and returns its message count."""
        return self._select(path, readonly=False)

    def fetch_range(self, start: int, end: int) -> list[MessageEnvelope]:
        """Fetches messages start..end of the selected folder without setting \\Seen."""
        typ, data = self._run("fetch", f"{start}:{end}", FETCH_ITEMS)
        if typ != "OK":
            raise ImapCommandError(f"FETCH {start}:{end} failed: {typ} {data}")

        envelopes = []
        current = None
        for item in data or []:
            if isinstance(item, tuple):
                meta = imap_common.parse_fetch_meta(item[0])
                raw = bytes(item[1] or b"")
                current = MessageEnvelope(
                    seq=meta["seq"] if meta["seq"] is not None else start + len(envelopes),
                    raw=raw,
                    uid=meta["uid"],
                    flags=meta["flags"] or (),
                    internal_date=meta["internal_date"],
                    headers=imap_common.parse_envelope_headers(raw),
                )
                envelopes.append(current)
            elif isinstance(item, bytes) and current is not None:
                # Some servers send attributes after the literal: b' FLAGS (\\Seen))'
                extra = imap_common.parse_fetch_meta(item)
                if extra["seq"] is not None:
                    continue
                if not current.flags and extra["flags"]:
                    current.flags = extra["flags"]
                if current.uid is None and extra["uid"] is not None:
                    current.uid = extra["uid"]
                if current.internal_date is None and extra["internal_date"]:
                    current.internal_date = extra["internal_date"]

        envelopes.sort(key=lambda e: e.seq)
        return envelopes

    def message_id_exists(self, message_id: str) -> bool:
        """
        Checks the SELECTED folder for a non-deleted message carrying the
        Message-ID. Messages pending expunge do not count.
        """
        if not message_id:
            return False
        criteria = f'UNDELETED HEADER Message-ID "{imap_common.escape_search_string(message_id)}"'
        typ, data = self._run("search", None, criteria)
        if typ != "OK":
            raise ImapCommandError(f"SEARCH for {message_id} failed: {typ} {data}")
        return bool(data and data[0] and data[0].split())

    def list_message_ids(self) -> set[str]:
        """Returns the Message-IDs of non-deleted messages in the SELECTED folder."""
        typ, data = self._run("uid", "search", None, "UNDELETED")
        if typ != "OK":
            raise ImapCommandError(f"UID SEARCH failed: {typ} {data}")
        uids = data[0].split() if data and data[0] else []

        message_ids = set()
        for i in range(0, len(uids), MESSAGE_ID_FETCH_BATCH):
            batch = uids[i : i + MESSAGE_ID_FETCH_BATCH]
            typ, fetch_data = self._run("uid", "fetch", b",".join(batch).decode(), MESSAGE_ID_FETCH_ITEMS)
            if typ != "OK":
                raise ImapCommandError(f"UID FETCH of Message-IDs failed: {typ} {fetch_data}")
            for item in fetch_data or []:
                if isinstance(item, tuple) and len(item) >= 2:
                    msg_id = imap_common.extract_message_id(item[1])
                    if msg_id:
                        message_ids.add(msg_id)
        return message_ids

    def append(self, path: str, raw: bytes, flags=(), date_time=None) -> None:
        typ, data = self._run("append", imap_common.quote_mailbox(path), imap_common.format_flags(flags), date_time, raw)
        if typ != "OK":
            raise ImapCommandError(f"APPEND to {path} failed: {typ} {data}")

    def noop(self) -> bool:
        try:
            typ, _ = self._run("noop")
        except (ConnectionLostError, ImapCommandError):
            return False
        return typ == "OK"

    def logout(self) -> None:
        self.selected_folder = None
        self._run("logout")
