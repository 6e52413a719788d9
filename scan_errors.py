# scan_errors.py
# ----------------------------------------------------------------------
# Exceptions shared by the scanner modules.
#
# Backend failures and "nothing found" are not exceptions: the cascade
# swallows the former and returns None for the latter. Only contract
# violations and fatal acquisition problems are raised.
# ----------------------------------------------------------------------

from __future__ import annotations


class ScanError(Exception):
    """Base class for scanner errors."""


class InvalidGeometryError(ScanError, ValueError):
    """A quad handed to the rectifier is degenerate (<= 3 distinct points)."""


class AcquisitionError(ScanError, RuntimeError):
    """The frame source could not deliver a frame (camera denied, EOF, ...)."""


class BackendUnavailableError(ScanError, RuntimeError):
    """A requested decoder backend is not installed or unknown."""
