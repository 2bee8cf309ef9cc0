"""
mailmirror: mirror folders and messages between IMAP accounts.
"""

from mailmirror.config import EndpointConfig, SyncOptions
from mailmirror.core.connection_manager import ConnectionManager
from mailmirror.errors import SyncError
from mailmirror.events import CallbackListener, EventListener, QueueListener, SyncEventType
from mailmirror.models import SyncJob, SyncMode, SyncStatus
from mailmirror.sync.orchestrator import SyncOrchestrator

__version__ = "0.1.0"

__all__ = [
    "CallbackListener",
    "ConnectionManager",
    "EndpointConfig",
    "EventListener",
    "QueueListener",
    "SyncError",
    "SyncEventType",
    "SyncJob",
    "SyncMode",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncStatus",
]
