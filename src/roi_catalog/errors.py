"""
Exceptions raised by the ROI engine and the CRS codec.

Validation errors (InvalidGeometry, DuplicateROIName) are raised before any
tile is opened. TileReadFailure is local to the batch that hit it.
"""

from __future__ import annotations

from typing import List, Optional


class RoiCatalogError(Exception):
    """Base class for all roi_catalog errors."""


class InvalidGeometry(RoiCatalogError, ValueError):
    """Non-positive radius/half-extent or mismatched input lengths."""


class DuplicateROIName(RoiCatalogError, ValueError):
    """ROI names are used as output keys and must be unique."""

    def __init__(self, duplicates: List[str]):
        self.duplicates = list(duplicates)
        shown = ", ".join(repr(name) for name in self.duplicates[:5])
        if len(self.duplicates) > 5:
            shown += ", ..."
        super().__init__(f"Duplicated ROI names: {shown}")


class TileReadFailure(RoiCatalogError, IOError):
    """A tile could not be read (I/O error or corrupt header)."""

    def __init__(self, path, cause: Optional[BaseException] = None):
        self.path = str(path)
        self.cause = cause
        message = f"Could not read tile {self.path}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)

    def __reduce__(self):
        # keeps the exception picklable across process pool boundaries
        return (self.__class__, (self.path, self.cause))


class InvalidReferenceSystem(RoiCatalogError, ValueError):
    """EPSG code or WKT string unknown to the registry, or not storable."""


class WorkerCrash(RoiCatalogError, RuntimeError):
    """
    The worker pool broke during a parallel query.

    ``partial`` holds the reassembled results: ROIs of batches that completed
    before the crash keep their subsets, the others are ``None``.
    """

    def __init__(self, message: str, partial=None):
        super().__init__(message)
        self.partial = partial
