"""
ModuleHandler - Port interface for per-integration sync handlers

This module defines the capability interface that every integration module
implements. The sync engine and batch processor depend only on this port,
never on a concrete field mapper.

It also defines the outcome type handlers return (SyncResult), the two
error kinds the core understands, and the exception hierarchy used to
carry an error kind through a raise.
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ErrorKind(str, enum.Enum):
    """
    Error classification driving retry policy.

    TRANSIENT: network blip, remote 5xx, timeout - retry with backoff.
    PERMANENT: validation failure, malformed payload, business-rule
               rejection - retrying reproduces the same failure.
    """
    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass
class SyncResult:
    """
    Tagged outcome of a push/pull call.

    Attributes:
        success: Whether the operation succeeded
        entity_id: Resulting remote id (push) or local id (pull). On failure,
                   an id created before the failure, so a retry can update
                   instead of creating a duplicate.
        message: Human-readable error message if success=False
        error_kind: Classification of the failure (None on success)
    """
    success: bool
    entity_id: Optional[int] = None
    message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, entity_id: Optional[int] = None) -> "SyncResult":
        return cls(success=True, entity_id=entity_id)

    @classmethod
    def failure(
        cls,
        message: str,
        error_kind: ErrorKind = ErrorKind.TRANSIENT,
        entity_id: Optional[int] = None,
    ) -> "SyncResult":
        return cls(success=False, entity_id=entity_id, message=message, error_kind=error_kind)


class SyncError(Exception):
    """
    Base exception for sync failures that know their error kind.

    Handlers raise subclasses of this to have their failure classified
    without building a SyncResult. Anything that is not a SyncError is
    treated as TRANSIENT by the engine.
    """
    error_kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, entity_id: Optional[int] = None):
        super().__init__(message)
        self.entity_id = entity_id


class TransientSyncError(SyncError):
    """Failure worth retrying (timeouts, remote 5xx, lock contention)."""
    error_kind = ErrorKind.TRANSIENT


class PermanentSyncError(SyncError):
    """Failure that will repeat on retry (validation, access rights)."""
    error_kind = ErrorKind.PERMANENT


class PayloadDecodeError(PermanentSyncError):
    """Raised when a queued job payload is not valid JSON."""
    pass


class UnknownModuleError(SyncError):
    """Raised when a job references a module that is not registered."""
    error_kind = ErrorKind.PERMANENT


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Classify an exception raised by a handler.

    SyncError subclasses carry their own kind. Everything else defaults to
    TRANSIENT: an unexpected error is more likely infrastructure trouble
    than a guaranteed-repeat business error.
    """
    if isinstance(exc, SyncError):
        return exc.error_kind
    return ErrorKind.TRANSIENT


class ModuleHandler(ABC):
    """
    Abstract interface for integration module handlers.

    One implementation per integration (a local content type family). The
    orchestration core only ever calls these methods:

    - push(): local -> remote for one entity
    - pull(): remote -> local for one entity
    - push_batch_creates(): optional bulk create; absence means the engine
      never batches this module

    Implementations:
    - BaseModuleHandler: field-mapping template over a RemoteClientPort
    - InMemoryModuleHandler: dict-backed handler for tests and development
    """

    module_id: str = ""

    @abstractmethod
    def push(
        self,
        entity_type: str,
        action: str,
        local_id: int,
        remote_id: int,
        payload: Dict[str, Any],
    ) -> SyncResult:
        """
        Push one local entity to the remote system.

        Args:
            entity_type: Entity type within this module
            action: 'create', 'update' or 'delete'
            local_id: Local entity id
            remote_id: Known remote id (0 if unknown)
            payload: Decoded job payload (empty = load live data)

        Returns:
            SyncResult with the remote id on success
        """
        pass

    @abstractmethod
    def pull(
        self,
        entity_type: str,
        action: str,
        remote_id: int,
        local_id: int,
        payload: Dict[str, Any],
    ) -> SyncResult:
        """
        Pull one remote record into the local system.

        Returns:
            SyncResult with the local id on success
        """
        pass

    def push_batch_creates(
        self,
        entity_type: str,
        items: List[Dict[str, Any]],
    ) -> Dict[int, SyncResult]:
        """
        Create several entities in one remote call.

        Args:
            entity_type: Entity type shared by all items
            items: [{'local_id': int, 'payload': dict}, ...]

        Returns:
            Map of local_id -> SyncResult
        """
        raise NotImplementedError(f"{self.__class__.__name__} does not support batch creates")

    def supports_batch_creates(self) -> bool:
        """True when the subclass overrides push_batch_creates()."""
        return type(self).push_batch_creates is not ModuleHandler.push_batch_creates

    def get_remote_model(self, entity_type: str) -> str:
        """
        Remote schema name used for an entity type (e.g. 'res.partner').

        Stored on entity map rows; empty when the module does not expose it.
        """
        return ""

    def get_module_id(self) -> str:
        """
        Return the module key.

        Defaults to the class name without the 'Handler' suffix, lowercased.
        """
        return self.module_id or self.__class__.__name__.replace("Handler", "").lower()


class RemoteClientPort(ABC):
    """
    Transport to the remote ERP (RPC client).

    The wire protocol, authentication and timeouts live behind this port.
    Implementations raise TransientSyncError for connectivity problems and
    PermanentSyncError for rejected writes.
    """

    @abstractmethod
    def create(self, model: str, values: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def create_batch(self, model: str, values_list: List[Dict[str, Any]]) -> List[int]:
        pass

    @abstractmethod
    def write(self, model: str, ids: List[int], values: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def unlink(self, model: str, ids: List[int]) -> bool:
        pass

    @abstractmethod
    def read(self, model: str, ids: List[int]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def search(self, model: str, domain: List[Any], limit: int = 0) -> List[int]:
        pass
