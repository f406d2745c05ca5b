"""
核心模組
"""

from .errors import (
    SyncError,
    ValidationError,
    StorageError,
    NotFoundError,
    TransportError,
    AnnotationError,
)
from .models import (
    Document,
    RemoteDocument,
    WatchEvent,
    WatchEventKind,
    ChangeKind,
    ChangeNotification,
    WatcherStatus,
    ReconcileResult,
)
from .echo_tracker import EchoSuppressionTracker
from .annotator import ProvenanceAnnotator
from .file_monitor import FileMonitor
from .remote_client import RemoteSyncClient, build_storage_key
from .realtime import RealtimeChannel
from .reconciler import Reconciler
from .dispatcher import ChangeDispatcher
from .path_serializer import PathSerializer
from .sync_engine import SyncEngine

__all__ = [
    'SyncError',
    'ValidationError',
    'StorageError',
    'NotFoundError',
    'TransportError',
    'AnnotationError',
    'Document',
    'RemoteDocument',
    'WatchEvent',
    'WatchEventKind',
    'ChangeKind',
    'ChangeNotification',
    'WatcherStatus',
    'ReconcileResult',
    'EchoSuppressionTracker',
    'ProvenanceAnnotator',
    'FileMonitor',
    'RemoteSyncClient',
    'build_storage_key',
    'RealtimeChannel',
    'Reconciler',
    'ChangeDispatcher',
    'PathSerializer',
    'SyncEngine',
]
