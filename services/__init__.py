"""Storage adapters for bindings and credentials."""

from .memory import MemoryBindingStore, MemoryCredentialStore

__all__ = ["MemoryBindingStore", "MemoryCredentialStore"]
