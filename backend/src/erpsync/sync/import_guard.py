"""Per-module reentrancy guard for remote-to-local imports."""

from contextlib import contextmanager
from typing import Iterator, Set


class ImportGuard:
    """
    Marks modules that are currently writing pulled data locally.

    Local change hooks check ``is_importing(module)`` and skip enqueueing a
    push while a pull for the same module is being applied, which would
    otherwise echo the record straight back to the remote system. Other
    modules keep enqueueing normally.

    Usage:
        guard = ImportGuard()
        with guard.importing("catalog"):
            save_local_product(...)
    """

    def __init__(self):
        self._active: Set[str] = set()

    def is_importing(self, module: str) -> bool:
        return module in self._active

    @contextmanager
    def importing(self, module: str) -> Iterator[None]:
        already_active = module in self._active
        self._active.add(module)
        try:
            yield
        finally:
            if not already_active:
                self._active.discard(module)

    def active_modules(self) -> Set[str]:
        return set(self._active)
