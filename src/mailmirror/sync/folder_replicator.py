"""
Folder Replicator

Discovers the source folder hierarchy and recreates it on the destination.
Parents are always created before their children, paths are rewritten to
the destination's hierarchy delimiter and RFC 6154 special-use attributes
are carried over when the destination supports CREATE-SPECIAL-USE.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mailmirror.errors import ConnectionLostError, EnumerationError, FolderExistsError, ImapCommandError
from mailmirror.models import ROLE_DESTINATION, ROLE_SOURCE, FolderNode, iter_tree
from mailmirror.utils import imap_common
from mailmirror.utils.imap_common import safe_print


@dataclass
class ReplicationResult:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[tuple[str, str]] = field(default_factory=list)
    # source path -> destination path
    path_map: dict[str, str] = field(default_factory=dict)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)

    @property
    def error_count(self) -> int:
        return len(self.errors)


def call_with_reconnect(sessions, role, operation, reconnect=None, log_fn=safe_print):
    """
    Runs operation(sessions[role]). After a dropped connection the fresh
    session from reconnect(role) replaces sessions[role] and the operation
    runs once more on it.
    """
    try:
        return operation(sessions[role])
    except ConnectionLostError as e:
        if reconnect is None:
            raise
        log_fn(f"{role.capitalize()} connection lost ({e}), reconnecting...")
        sessions[role] = reconnect(role)
        return operation(sessions[role])


def build_tree(entries) -> list[FolderNode]:
    """
    Builds a folder forest from LIST entries of (path, delimiter, attributes).

    Missing ancestors (servers may list "A/B" without "A") are synthesized
    as \\Noselect placeholders; a later LIST entry for the same path
    replaces the placeholder's attributes. Sibling order follows LIST order.
    """
    roots: list[FolderNode] = []
    by_path: dict[str, FolderNode] = {}

    for path, delimiter, attributes in entries:
        segments = path.split(delimiter) if delimiter else [path]
        parent = None
        for depth in range(1, len(segments) + 1):
            node_path = delimiter.join(segments[:depth]) if delimiter else path
            node = by_path.get(node_path)
            is_leaf = depth == len(segments)
            if node is None:
                node = FolderNode(
                    name=segments[depth - 1],
                    path=node_path,
                    delimiter=delimiter,
                    attributes=tuple(attributes) if is_leaf else (imap_common.ATTR_NOSELECT,),
                )
                by_path[node_path] = node
                if parent is None:
                    roots.append(node)
                else:
                    parent.children.append(node)
            elif is_leaf:
                node.attributes = tuple(attributes)
            parent = node
    return roots


def restrict_tree(roots, folders) -> list[FolderNode]:
    """
    Prunes the forest to the requested folder paths and their ancestors.

    Raises:
        EnumerationError: a requested folder does not exist on the source.
    """
    wanted = set(folders)
    known = {node.path for node in iter_tree(roots)}
    missing = sorted(wanted - known)
    if missing:
        raise EnumerationError(f"Folder(s) not found on source: {', '.join(missing)}")

    def prune(node):
        children = [c for c in (prune(child) for child in node.children) if c is not None]
        if node.path in wanted or children:
            return FolderNode(node.name, node.path, node.delimiter, node.attributes, children)
        return None

    return [n for n in (prune(root) for root in roots) if n is not None]


def migration_plan(roots, folders=()) -> list[FolderNode]:
    """Selectable folders to migrate, in pre-order. With a subset, only the requested folders."""
    wanted = set(folders)
    return [node for node in iter_tree(roots) if node.selectable and (not wanted or node.path in wanted)]


class FolderReplicator:
    def __init__(self, log_fn=safe_print):
        self._log_fn = log_fn

    def discover(self, source, reconnect=None) -> list[FolderNode]:
        """
        Lists the source mailboxes as a folder forest.

        Raises:
            EnumerationError: LIST failed.
        """
        sessions = {ROLE_SOURCE: source}
        entries = call_with_reconnect(sessions, ROLE_SOURCE, lambda s: s.list_folders(), reconnect, self._log_fn)
        roots = build_tree(entries)
        self._log_fn(f"Discovered {len(entries)} folder(s) on source")
        return roots

    def replicate(self, destination, roots, source_delimiter=None, reconnect=None) -> ReplicationResult:
        """
        Creates every node of the forest on the destination in pre-order.

        Existing folders count as skipped; any other refusal is recorded
        as a folder-level error and the traversal continues.
        A dropped destination connection is handed to reconnect and the
        interrupted CREATE is retried once.
        """
        result = ReplicationResult()
        sessions = {ROLE_DESTINATION: destination}
        dest_delimiter = call_with_reconnect(
            sessions, ROLE_DESTINATION, lambda d: d.hierarchy_delimiter(), reconnect, self._log_fn
        )

        for node in iter_tree(roots):
            src_delimiter = node.delimiter or source_delimiter
            dest_path = imap_common.translate_path(node.path, src_delimiter, dest_delimiter)
            result.path_map[node.path] = dest_path
            try:
                call_with_reconnect(
                    sessions,
                    ROLE_DESTINATION,
                    lambda d: d.create_folder(dest_path, special_use=node.special_use),
                    reconnect,
                    self._log_fn,
                )
            except FolderExistsError:
                result.skipped.append(node.path)
                self._log_fn(f"Folder already exists: {dest_path}")
            except ImapCommandError as e:
                result.errors.append((node.path, str(e)))
                self._log_fn(f"Failed to create folder {dest_path}: {e}")
            else:
                result.created.append(node.path)
                self._log_fn(f"Created folder: {dest_path}")

        self._log_fn(
            f"Folder replication: {result.created_count} created, "
            f"{result.skipped_count} skipped, {result.error_count} failed"
        )
        return result
