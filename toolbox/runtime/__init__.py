"""
Runtime Module

Unit-of-work coordination and the downloader/converter entry points.
"""

from .coordinator import DownloadCoordinator, UnitOfWork, UnitOutcome

__all__ = [
    "DownloadCoordinator",
    "UnitOfWork",
    "UnitOutcome",
]
