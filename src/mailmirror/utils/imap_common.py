"""
IMAP Common Utilities

Shared helpers for the mirroring components: thread-safe logging, flag
handling, LIST/FETCH response parsing and header decoding.
"""

from __future__ import annotations

import re
import threading
from email import policy
from email.header import decode_header
from email.parser import BytesParser

# Flags that must not be copied
FLAG_DELETED = "\\Deleted"
FLAG_RECENT = "\\Recent"

# \Recent is session-specific and cannot be set by clients.
# \Deleted should not be preserved as it marks messages for removal.
NON_PRESERVABLE_FLAGS = {FLAG_RECENT.lower(), FLAG_DELETED.lower()}

# Mailbox attributes
ATTR_NOSELECT = "\\Noselect"
ATTR_NONEXISTENT = "\\NonExistent"

# RFC 6154 special-use attributes
SPECIAL_USE_ATTRIBUTES = {"\\All", "\\Archive", "\\Drafts", "\\Flagged", "\\Junk", "\\Sent", "\\Trash"}

# Outcome labels used in per-message log lines
STATUS_COPIED = "COPIED"
STATUS_SKIPPED = "SKIP (exists)"
STATUS_FAILED = "FAILED"

_print_lock = threading.Lock()

_LIST_PATTERN = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$', re.IGNORECASE)
_FLAGS_PATTERN = re.compile(r"FLAGS\s+\(([^)]*)\)", re.IGNORECASE)
_INTERNALDATE_PATTERN = re.compile(r'INTERNALDATE\s+"([^"]*)"', re.IGNORECASE)
_UID_PATTERN = re.compile(r"UID\s+(\d+)", re.IGNORECASE)
_SEQ_PATTERN = re.compile(r"^\s*(\d+)\s+\(")


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


def to_str(value) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="ignore")
    return str(value)


def quote_mailbox(name: str) -> str:
    """Quote a mailbox name for use as an IMAP command argument."""
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def parse_list_response(item, allow_empty_name=False) -> tuple[str, str | None, tuple[str, ...]] | None:
    """
    Parses one LIST response entry into (name, delimiter, attributes).

    Handles quoted names, atom names and names sent as literals, which
    imaplib hands back as a (meta, literal) tuple.
    Returns None for entries that cannot be parsed. `LIST "" ""` answers
    with an empty name and is only accepted with allow_empty_name.
    """
    literal_name = None
    if isinstance(item, tuple):
        meta, literal_name = item[0], item[1]
        text = to_str(meta)
    elif item is None:
        return None
    else:
        text = to_str(item)

    match = _LIST_PATTERN.match(text.strip())
    if not match:
        return None

    flags = tuple(f for f in match.group("flags").split() if f)
    raw_delimiter = match.group("delimiter")
    delimiter = None if raw_delimiter.upper() == "NIL" else _unquote(raw_delimiter)

    if literal_name is not None:
        name = to_str(literal_name)
    else:
        name = _unquote(match.group("name"))
    if not name and not allow_empty_name:
        return None
    return name, delimiter, flags


def has_attribute(attributes, attribute: str) -> bool:
    wanted = attribute.lower()
    return any(a.lower() == wanted for a in attributes)


def special_use_of(attributes) -> str | None:
    """Returns the RFC 6154 special-use attribute among attributes, if any."""
    lowered = {a.lower(): a for a in SPECIAL_USE_ATTRIBUTES}
    for attr in attributes:
        if attr.lower() in lowered:
            return lowered[attr.lower()]
    return None


def filter_preservable_flags(flags) -> tuple[str, ...]:
    """
    Drops flags a client cannot (or should not) set on APPEND.
    Keywords such as $Forwarded are kept.
    """
    return tuple(f for f in flags if f and f.lower() not in NON_PRESERVABLE_FLAGS)


def format_flags(flags) -> str | None:
    """Formats a flag sequence as a parenthesized IMAP list, or None when empty."""
    flags = [f for f in flags if f]
    if not flags:
        return None
    return f"({' '.join(flags)})"


def parse_fetch_meta(meta) -> dict:
    """
    Extracts sequence number, UID, FLAGS and INTERNALDATE from a FETCH
    response prefix like b'3 (UID 12 FLAGS (\\Seen) INTERNALDATE "..." BODY[] {512}'.
    """
    text = to_str(meta)
    result = {"seq": None, "uid": None, "flags": None, "internal_date": None}

    seq_match = _SEQ_PATTERN.match(text)
    if seq_match:
        result["seq"] = int(seq_match.group(1))
    uid_match = _UID_PATTERN.search(text)
    if uid_match:
        result["uid"] = int(uid_match.group(1))
    flags_match = _FLAGS_PATTERN.search(text)
    if flags_match:
        result["flags"] = tuple(flags_match.group(1).split())
    date_match = _INTERNALDATE_PATTERN.search(text)
    if date_match:
        result["internal_date"] = date_match.group(1)
    return result


def decode_mime_header(header_value):
    """
    Decodes MIME encoded headers (Subject, etc.) to a unicode string.
    """
    if not header_value:
        return "(No Subject)"
    try:
        decoded_list = decode_header(header_value)
        text_parts = []
        for data, encoding in decoded_list:
            if isinstance(data, bytes):
                charset = encoding or "utf-8"
                try:
                    text_parts.append(data.decode(charset, errors="ignore"))
                except LookupError:
                    text_parts.append(data.decode("utf-8", errors="ignore"))
            else:
                text_parts.append(str(data))
        return "".join(text_parts)
    except Exception:
        return str(header_value)


def decode_message_id(msg_id):
    """
    Decodes a Message-ID header value by unfolding continuation lines.
    Returns the stripped Message-ID string or None if empty.
    """
    if not msg_id:
        return None
    return re.sub(r"\r?\n[ \t]+", " ", str(msg_id)).strip() or None


def parse_envelope_headers(raw_message) -> dict[str, str | None]:
    """
    Parses Message-ID, From, Subject and Date from RFC822 bytes.

    Uses header-only parsing with compat32 so folded Message-ID headers are
    kept intact and large bodies are not walked.
    """
    headers: dict[str, str | None] = {"Message-ID": None, "From": None, "Subject": None, "Date": None}
    if not raw_message:
        return headers
    try:
        if isinstance(raw_message, str):
            raw_message = raw_message.encode("utf-8", errors="ignore")
        parsed = BytesParser(policy=policy.compat32).parsebytes(bytes(raw_message), headersonly=True)
    except Exception:
        return headers

    headers["Message-ID"] = decode_message_id(parsed.get("Message-ID"))
    raw_from = parsed.get("From")
    headers["From"] = decode_mime_header(raw_from) if raw_from else None
    raw_subject = parsed.get("Subject")
    headers["Subject"] = decode_mime_header(raw_subject) if raw_subject else None
    raw_date = parsed.get("Date")
    headers["Date"] = str(raw_date).strip() if raw_date else None
    return headers


def extract_message_id(header_data):
    """
    Extracts the Message-ID from header bytes or string.
    Returns the stripped Message-ID string or None if not found.
    """
    if not header_data:
        return None
    return parse_envelope_headers(header_data)["Message-ID"]


def escape_search_string(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def is_already_exists_response(data) -> bool:
    """Checks a CREATE failure response for the "mailbox already exists" outcome."""
    for item in data or []:
        text = to_str(item).lower()
        if "alreadyexists" in text or "already exists" in text:
            return True
    return False


def translate_path(path: str, source_delimiter: str | None, dest_delimiter: str | None) -> str:
    """Rewrites a folder path from the source hierarchy delimiter to the destination's."""
    if not source_delimiter or not dest_delimiter or source_delimiter == dest_delimiter:
        return path
    return dest_delimiter.join(path.split(source_delimiter))


def format_size(size: int) -> str:
    return f"{size / 1024:.1f}KB" if size else "0KB"
