"""Persistence of instance metadata."""

from .models import KNOWN_STATUSES, InstanceRecord
from .store import InstanceStore

__all__ = [
    "InstanceRecord",
    "InstanceStore",
    "KNOWN_STATUSES",
]
