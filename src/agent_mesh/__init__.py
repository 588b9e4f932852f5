"""Top-level package for the agent mesh coordination layer."""

from __future__ import annotations

from .errors import CoordinationError, RemoteControlError
from .storage import MeshPaths

__version__ = "0.1.0"

__all__ = ["CoordinationError", "MeshPaths", "RemoteControlError", "__version__"]
