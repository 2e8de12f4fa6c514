"""
Handler implementations

Concrete ModuleHandler and RemoteClientPort implementations that ship with
the core. Production integrations live in their own packages.
"""

from .in_memory import InMemoryRemoteClient, InMemoryModuleHandler

__all__ = ["InMemoryRemoteClient", "InMemoryModuleHandler"]
