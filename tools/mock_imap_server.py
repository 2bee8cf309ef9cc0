"""
Minimal IMAP4rev1 mock server for tests.

Serves the command subset mailmirror speaks: CAPABILITY, LOGIN,
AUTHENTICATE (XOAUTH2, LOGIN), LIST, CREATE (with RFC 6154 USE), SELECT,
EXAMINE, FETCH by sequence range, SEARCH HEADER Message-ID, UID SEARCH /
UID FETCH, APPEND, NOOP and LOGOUT.

Mailboxes live in `server.folders` (path -> list of message dicts with
"uid", "flags", "content", "internal_date"), so tests can seed and inspect
them directly.
"""

import base64
import re
import socketserver
import threading

DEFAULT_INTERNAL_DATE = "01-Jan-2024 10:00:00 +0000"
BAD_PASSWORD = "bad"

RESPONSE_SELECT_FIRST = "NO Select first"

_TOKEN = re.compile(r'"(?:[^"\\]|\\.)*"|\S+')
_CREATE_ARGS = re.compile(r'^(?P<mailbox>"(?:[^"\\]|\\.)*"|\S+)(?:\s+\(USE \((?P<use>[^)]*)\)\))?$', re.IGNORECASE)
_APPEND_ARGS = re.compile(
    r'^(?P<mailbox>"(?:[^"\\]|\\.)*"|\S+)\s*(?:\((?P<flags>[^)]*)\))?\s*(?:"(?P<date>[^"]*)")?\s*\{(?P<size>\d+)\}$'
)
_SEARCH_MSG_ID = re.compile(r'HEADER\s+Message-ID\s+"((?:[^"\\]|\\.)*)"', re.IGNORECASE)


def _unquote(value):
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r"\\(.)", r"\1", value[1:-1])
    return value


def _quote(value):
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _message_id_of(content):
    header = content.split(b"\r\n\r\n", 1)[0].decode("utf-8", errors="ignore")
    match = re.search(r"^Message-ID:\s*(.+)$", header, re.IGNORECASE | re.MULTILINE)
    return match.group(1).strip() if match else None


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for testing purposes.
    Commands listed in server.fail_commands answer with the configured
    response; commands in server.disconnect_on drop the connection.
    """

    def handle(self):
        self.wfile.write(b"* OK [CAPABILITY IMAP4rev1] Mock IMAP Server Ready\r\n")
        self.selected_folder = None
        self.readonly = False

        while True:
            try:
                line = self.rfile.readline()
                if not line:
                    break
                line = line.decode("utf-8").strip()
                if not line:
                    continue

                parts = line.split(" ", 2)
                tag = parts[0]
                cmd = parts[1].upper()
                args = parts[2] if len(parts) > 2 else ""

                with self.server.lock:
                    self.server.commands.append((cmd, args))
                    if self.server.disconnect_on.get(cmd, 0) > 0:
                        self.server.disconnect_on[cmd] -= 1
                        break
                    failure = self.server.fail_commands.get(cmd)
                if failure:
                    if cmd == "APPEND":
                        self._read_literal(args)
                    self.send_response(tag, failure)
                    continue

                handler = getattr(self, f"cmd_{cmd.lower()}", None)
                if handler is None:
                    self.send_response(tag, "BAD Command not recognized")
                    continue
                if handler(tag, args) is False:
                    break

            except (OSError, ValueError, IndexError):
                break

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())

    def _read_literal(self, args):
        match = re.search(r"\{(\d+)\}$", args)
        if not match:
            return None
        self.wfile.write(b"+ Ready\r\n")
        self.wfile.flush()
        data = self.rfile.read(int(match.group(1)))
        self.rfile.readline()
        return data

    def _continue(self, challenge=b""):
        self.wfile.write(b"+ " + base64.b64encode(challenge) + b"\r\n")
        self.wfile.flush()
        return base64.b64decode(self.rfile.readline().strip())

    def cmd_capability(self, tag, args):
        caps = " ".join(self.server.capabilities)
        self.wfile.write(f"* CAPABILITY {caps}\r\n".encode())
        self.send_response(tag, "OK CAPABILITY completed")

    def cmd_login(self, tag, args):
        tokens = [_unquote(t) for t in _TOKEN.findall(args)]
        password = tokens[1] if len(tokens) > 1 else ""
        if password == BAD_PASSWORD:
            self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
            return
        self.server.logins.append(("LOGIN", tokens[0] if tokens else ""))
        self.send_response(tag, "OK LOGIN completed")

    def cmd_authenticate(self, tag, args):
        mechanism = args.strip().upper()
        if mechanism == "XOAUTH2":
            response = self._continue().decode("utf-8", errors="ignore")
            user = re.search(r"user=([^\x01]*)", response)
            if "auth=Bearer " + BAD_PASSWORD in response or not user:
                self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")
                return
            self.server.logins.append(("XOAUTH2", user.group(1)))
            self.send_response(tag, "OK AUTHENTICATE completed")
        elif mechanism == "LOGIN":
            user = self._continue(b"Username:").decode()
            password = self._continue(b"Password:").decode()
            if password == BAD_PASSWORD:
                self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
                return
            self.server.logins.append(("AUTH-LOGIN", user))
            self.send_response(tag, "OK AUTHENTICATE completed")
        else:
            self.send_response(tag, "NO Unsupported authentication mechanism")

    def cmd_list(self, tag, args):
        tokens = [_unquote(t) for t in _TOKEN.findall(args)]
        pattern = tokens[1] if len(tokens) > 1 else "*"
        delimiter = self.server.delimiter
        if pattern == "":
            self.wfile.write(f'* LIST (\\Noselect) "{delimiter}" ""\r\n'.encode())
        else:
            with self.server.lock:
                names = list(self.server.folders)
            for name in names:
                attrs = " ".join(self.server.attributes.get(name, ("\\HasNoChildren",)))
                self.wfile.write(f'* LIST ({attrs}) "{delimiter}" {_quote(name)}\r\n'.encode())
        self.send_response(tag, "OK LIST completed")

    def cmd_create(self, tag, args):
        match = _CREATE_ARGS.match(args.strip())
        if not match:
            self.send_response(tag, "BAD CREATE")
            return
        folder = _unquote(match.group("mailbox"))
        use = match.group("use")
        with self.server.lock:
            if folder.upper() == "INBOX" or folder in self.server.folders:
                self.send_response(tag, "NO [ALREADYEXISTS] Mailbox already exists")
                return
            if use and "CREATE-SPECIAL-USE" not in self.server.capabilities:
                self.send_response(tag, "BAD USE not supported")
                return
            self.server.folders[folder] = []
            if use:
                self.server.special_use[folder] = use
        self.send_response(tag, "OK CREATE completed")

    def _open(self, tag, args, readonly):
        folder = _unquote(args)
        with self.server.lock:
            exists = folder in self.server.folders
            count = len(self.server.folders.get(folder, []))
        if not exists:
            self.send_response(tag, "NO [NONEXISTENT] Folder not found")
            return
        self.selected_folder = folder
        self.readonly = readonly
        self.wfile.write(f"* {count} EXISTS\r\n".encode())
        self.wfile.write(b"* 0 RECENT\r\n")
        self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
        self.wfile.write(b"* OK [UIDVALIDITY 1] UIDs valid\r\n")
        if readonly:
            self.send_response(tag, "OK [READ-ONLY] EXAMINE completed")
        else:
            self.send_response(tag, "OK [READ-WRITE] SELECT completed")

    def cmd_select(self, tag, args):
        self._open(tag, args, readonly=False)

    def cmd_examine(self, tag, args):
        self._open(tag, args, readonly=True)

    def _write_fetch(self, seq, msg, opts):
        content = msg["content"]
        flags = " ".join(sorted(msg["flags"]))
        if "HEADER.FIELDS" in opts:
            header = content.split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"
            prefix = f"* {seq} FETCH (UID {msg['uid']} BODY[HEADER.FIELDS (MESSAGE-ID)] {{{len(header)}}}\r\n"
            payload = header
        else:
            prefix = (
                f"* {seq} FETCH (UID {msg['uid']} FLAGS ({flags}) "
                f'INTERNALDATE "{msg["internal_date"]}" BODY[] {{{len(content)}}}\r\n'
            )
            payload = content
            if "PEEK" not in opts:
                msg["flags"].add("\\Seen")
        self.wfile.write(prefix.encode())
        self.wfile.write(payload)
        self.wfile.write(b")\r\n")

    def cmd_fetch(self, tag, args):
        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        seq_set, _, opts = args.partition(" ")
        start, _, end = seq_set.partition(":")
        with self.server.lock:
            msgs = list(self.server.folders[self.selected_folder])
        first = int(start)
        last = len(msgs) if end == "*" else int(end or start)
        for seq in range(first, min(last, len(msgs)) + 1):
            self._write_fetch(seq, msgs[seq - 1], opts.upper())
        self.send_response(tag, "OK FETCH completed")

    def cmd_search(self, tag, args):
        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        with self.server.lock:
            msgs = list(self.server.folders[self.selected_folder])
        match = _SEARCH_MSG_ID.search(args)
        wanted = _unquote(f'"{match.group(1)}"') if match else None
        seq_nums = []
        for idx, msg in enumerate(msgs, start=1):
            if "UNDELETED" in args.upper() and "\\Deleted" in msg["flags"]:
                continue
            if wanted is not None and _message_id_of(msg["content"]) != wanted:
                continue
            seq_nums.append(str(idx))
        self.wfile.write(f"* SEARCH {' '.join(seq_nums)}\r\n".strip().encode() + b"\r\n")
        self.send_response(tag, "OK SEARCH completed")

    def cmd_uid(self, tag, args):
        if not self.selected_folder:
            self.send_response(tag, RESPONSE_SELECT_FIRST)
            return
        sub_cmd, _, rest = args.partition(" ")
        with self.server.lock:
            msgs = list(self.server.folders[self.selected_folder])
        if sub_cmd.upper() == "SEARCH":
            if "UNDELETED" in rest.upper():
                msgs = [m for m in msgs if "\\Deleted" not in m["flags"]]
            uids = " ".join(str(m["uid"]) for m in msgs)
            self.wfile.write(f"* SEARCH {uids}\r\n".strip().encode() + b"\r\n")
            self.send_response(tag, "OK SEARCH completed")
        elif sub_cmd.upper() == "FETCH":
            uid_set, _, opts = rest.partition(" ")
            wanted = {int(u) for u in uid_set.split(",") if u.isdigit()}
            for seq, msg in enumerate(msgs, start=1):
                if msg["uid"] in wanted:
                    self._write_fetch(seq, msg, opts.upper())
            self.send_response(tag, "OK FETCH completed")
        else:
            self.send_response(tag, "BAD UID command not supported")

    def cmd_append(self, tag, args):
        match = _APPEND_ARGS.match(args.strip())
        if not match:
            self.send_response(tag, "BAD APPEND")
            return
        data = self._read_literal(args)
        folder = _unquote(match.group("mailbox"))
        flags = {f for f in (match.group("flags") or "").split() if f}
        with self.server.lock:
            if folder not in self.server.folders:
                self.send_response(tag, "NO [TRYCREATE] Folder not found")
                return
            dest_msgs = self.server.folders[folder]
            max_uid = max((m["uid"] for m in dest_msgs), default=0)
            dest_msgs.append(
                {
                    "uid": max_uid + 1,
                    "flags": flags,
                    "content": data,
                    "internal_date": match.group("date") or DEFAULT_INTERNAL_DATE,
                }
            )
        self.send_response(tag, "OK APPEND completed")

    def cmd_noop(self, tag, args):
        self.send_response(tag, "OK NOOP completed")

    def cmd_logout(self, tag, args):
        self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
        self.send_response(tag, "OK LOGOUT completed")
        return False


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        server_address,
        request_handler_class,
        initial_folders=None,
        delimiter="/",
        attributes=None,
        special_use=False,
    ):
        super().__init__(server_address, request_handler_class)
        self.lock = threading.Lock()
        self.delimiter = delimiter
        self.attributes = dict(attributes or {})
        self.capabilities = ["IMAP4rev1", "AUTH=PLAIN", "AUTH=LOGIN", "AUTH=XOAUTH2"]
        if special_use:
            self.capabilities.append("CREATE-SPECIAL-USE")
        self.special_use = {}
        self.fail_commands = {}
        self.disconnect_on = {}
        self.commands = []
        self.logins = []
        self.folders = {}
        for fname, contents in (initial_folders or {"INBOX": []}).items():
            self.folders[fname] = []
            for i, c in enumerate(contents):
                if isinstance(c, bytes):
                    c = {"uid": i + 1, "flags": set(), "content": c}
                c.setdefault("internal_date", DEFAULT_INTERNAL_DATE)
                c["flags"] = set(c.get("flags") or ())
                self.folders[fname].append(c)

    def message_ids(self, folder):
        with self.lock:
            return [_message_id_of(m["content"]) for m in self.folders.get(folder, [])]


def start_server_thread(port=0, initial_folders=None, **options):
    """Starts a server on localhost (port 0 picks a free one) and returns (server, port)."""
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, **options)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return server, server.server_address[1]
