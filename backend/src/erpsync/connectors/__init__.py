"""
Connectors module - module handler framework

Integrations plug into the sync core through a standard port interface
(ModuleHandler). The framework provides:
- The handler port, its SyncResult outcome type and the error hierarchy
- Module key resolution through ModuleRegistry
- A field-mapping base handler over a remote RPC client port
"""

from .ports import (
    ModuleHandler,
    RemoteClientPort,
    SyncResult,
    ErrorKind,
    SyncError,
    TransientSyncError,
    PermanentSyncError,
    PayloadDecodeError,
    UnknownModuleError,
    classify_exception,
)
from .registry import ModuleRegistry

__all__ = [
    "ModuleHandler",
    "RemoteClientPort",
    "SyncResult",
    "ErrorKind",
    "SyncError",
    "TransientSyncError",
    "PermanentSyncError",
    "PayloadDecodeError",
    "UnknownModuleError",
    "classify_exception",
    "ModuleRegistry",
]
