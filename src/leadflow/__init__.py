"""Task lifecycle manager for lead search and enrichment."""

from .config import settings
from .exceptions import CollaboratorError, LeadflowError, StoreError, TaskValidationError
from .server import main, serve

__all__ = [
    "main",
    "serve",
    "settings",
    "LeadflowError",
    "CollaboratorError",
    "StoreError",
    "TaskValidationError",
]
