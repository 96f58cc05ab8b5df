from __future__ import annotations

from typing import Any, Optional, Sequence

import numpy as np


class XCouplerError(Exception):
    """Base class for all errors raised by xcoupler."""


class DuplicateIdentifierError(XCouplerError, ValueError):
    """An entity was added to a GridMap under an identifier already in use."""

    def __init__(self, index: int, what: str = "entity") -> None:
        self.index = index
        super().__init__(
            f"Error adding repeat {what} index={index}. "
            "Cells and Vertices must have unique indices."
        )


class NotFoundError(XCouplerError, KeyError):
    """Lookup of an identifier that is not present."""

    def __init__(self, key: Any, where: str = "") -> None:
        self.key = key
        where = f" in {where}" if where else ""
        self.message = f"Identifier {key!r} not found{where}"
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


class OutOfRangeError(XCouplerError, IndexError):
    """An index lies outside of the valid range ``[0, size)``."""

    def __init__(self, index: Any, size: int, where: str = "") -> None:
        self.index = index
        self.size = size
        where = f" in {where}" if where else ""
        super().__init__(f"Index {index} out of range [0, {size}){where}")


class DimensionMismatchError(XCouplerError, ValueError):
    """Shape or extent of an array/matrix does not match what was expected."""

    def __init__(
        self, message: str, expected: Any = None, actual: Any = None
    ) -> None:
        self.expected = expected
        self.actual = actual
        if expected is not None or actual is not None:
            message = f"{message} (expected {expected}, got {actual})"
        super().__init__(message)


class UnsupportedVersionError(XCouplerError, ValueError):
    """A persisted object was written with a format version we cannot read."""

    def __init__(self, found: Any, supported: int) -> None:
        self.found = found
        self.supported = supported
        super().__init__(
            f"Trying to read version {found}, "
            f"only version {supported} grids can be read"
        )


class MalformedGridError(XCouplerError, ValueError):
    """Structured grid parameters are non-positive or non-monotonic."""


class OptimizationFailedError(XCouplerError, RuntimeError):
    """The external QP solver did not produce an acceptable solution."""


class NaNInInputError(XCouplerError, ValueError):
    """A field contains non-finite values where finite values are required."""

    def __init__(self, name: str, indices: Sequence[Any]) -> None:
        self.name = name
        self.indices = list(indices)
        shown = ", ".join(str(i) for i in self.indices[:10])
        more = "" if len(self.indices) <= 10 else f", ... ({len(self.indices)} total)"
        super().__init__(f"Non-finite values in {name} at index {shown}{more}")


def check_finite(
    values: Any, name: str, index_map: Optional[Sequence[Any]] = None
) -> None:
    """
    Raise NaNInInputError if `values` holds NaN or infinite entries.

    Parameters
    ----------
    values : array_like
        The values to check.
    name : str
        Name of the field, used in the error message.
    index_map : sequence, optional
        Translates positions in `values` into the identifiers reported to
        the caller (e.g. full-space indices for a packed vector).
    """
    bad = np.flatnonzero(~np.isfinite(np.asarray(values, dtype=float)))
    if bad.size:
        if index_map is not None:
            indices = [index_map[int(i)] for i in bad]
        else:
            indices = [int(i) for i in bad]
        raise NaNInInputError(name, indices)
