"""Backend implementations."""

from issuebranch.backends.git import GitObjectStore

__all__ = ["GitObjectStore"]
