"""
Module Registry - Central registration and resolution of module handlers

The ModuleRegistry maintains a mapping of module keys to handler instances,
enabling the sync engine to resolve a job's module at runtime without
depending on any concrete handler.
"""

from typing import Dict, Optional

from .ports import ModuleHandler, UnknownModuleError


class ModuleRegistry:
    """
    Registry for module handler instances.

    One registry is built per worker (and per tenant, since handlers hold a
    tenant-scoped entity map). The engine receives ``registry.resolve`` as
    its module resolver.

    Usage:
        registry = ModuleRegistry()
        registry.register("catalog", CatalogHandler(entity_map, client))

        engine = SyncEngine(db, tenant_id=1, module_resolver=registry.resolve)
    """

    def __init__(self):
        self._handlers: Dict[str, ModuleHandler] = {}

    def register(self, module_id: str, handler: ModuleHandler) -> None:
        """
        Register a handler for a module key.

        Args:
            module_id: Unique module key (e.g. 'catalog')
            handler: Instance implementing ModuleHandler

        Raises:
            ValueError: If module_id is empty or handler doesn't implement ModuleHandler
            RuntimeError: If module_id is already registered (prevents accidental override)
        """
        if not module_id or not module_id.strip():
            raise ValueError("module_id cannot be empty")

        if not isinstance(handler, ModuleHandler):
            raise ValueError(
                f"Handler must implement ModuleHandler, "
                f"got {type(handler).__name__}"
            )

        if module_id in self._handlers:
            raise RuntimeError(
                f"Module '{module_id}' is already registered. "
                f"Use unregister() first if you need to replace it."
            )

        self._handlers[module_id] = handler

    def get(self, module_id: str) -> ModuleHandler:
        """
        Get the handler for a module key.

        Raises:
            UnknownModuleError: If module_id is not registered
        """
        if module_id not in self._handlers:
            available = ', '.join(sorted(self._handlers)) if self._handlers else 'none'
            raise UnknownModuleError(
                f"Unknown module: '{module_id}'. "
                f"Available modules: {available}"
            )
        return self._handlers[module_id]

    def resolve(self, module_id: str) -> Optional[ModuleHandler]:
        """Return the handler for a module key, or None when unregistered."""
        return self._handlers.get(module_id)

    def list_available(self) -> list[str]:
        """List all registered module keys, sorted."""
        return sorted(self._handlers.keys())

    def is_registered(self, module_id: str) -> bool:
        return module_id in self._handlers

    def unregister(self, module_id: str) -> None:
        """
        Remove a module from the registry.

        Raises:
            ValueError: If module_id is not registered
        """
        if module_id not in self._handlers:
            raise ValueError(f"Module '{module_id}' is not registered")

        del self._handlers[module_id]

    def clear(self) -> None:
        """Clear all registered handlers."""
        self._handlers.clear()
