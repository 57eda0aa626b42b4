"""Program profile models and loader exports."""

from .loader import ProfileLoadError, ProfileLoader
from .models import ProgramProfile

__all__ = [
    "ProfileLoadError",
    "ProfileLoader",
    "ProgramProfile",
]
