from __future__ import annotations

import logging
from typing import Any, Dict, Hashable, Iterable, Mapping, Optional, Tuple

import numpy as np

from .errors import DimensionMismatchError, NotFoundError, OutOfRangeError
from .sparse import SparseMatrixCOO

logger = logging.getLogger(__name__)


class IndexSpace:
    """
    Bijection between used identifiers of a full index space and ``[0, k)``.

    Parameters
    ----------
    nfull : int
        Size of the full index space; identifiers must lie in ``[0, nfull)``.
    used : iterable of int
        Full identifiers actually referenced. Duplicates are ignored.
    name : str, optional
        Used in error messages.

    Notes
    -----
    Packed indices follow ascending full identifier, so the same used-set
    always produces the same numbering.
    """

    def __init__(self, nfull: int, used: Iterable[int], name: str = "index space") -> None:
        self.nfull = int(nfull)
        self.name = name
        full = np.unique(np.fromiter((int(u) for u in used), dtype=np.int64))
        if full.size and (full[0] < 0 or full[-1] >= self.nfull):
            bad = full[0] if full[0] < 0 else full[-1]
            raise OutOfRangeError(int(bad), self.nfull, f"full space of {name}")
        self._to_full = full
        self._to_packed: Dict[int, int] = {int(f): p for p, f in enumerate(full)}

    def __len__(self) -> int:
        return len(self._to_full)

    def __contains__(self, full_id: object) -> bool:
        return full_id in self._to_packed

    def __repr__(self) -> str:
        return f"IndexSpace(name={self.name!r}, nfull={self.nfull}, size={self.size()})"

    def size(self) -> int:
        return len(self._to_full)

    @property
    def full_ids(self) -> np.ndarray:
        """Used full identifiers in packed order (read-only view)."""
        view = self._to_full.view()
        view.flags.writeable = False
        return view

    def to_packed(self, full_id: int) -> int:
        try:
            return self._to_packed[int(full_id)]
        except KeyError:
            raise NotFoundError(full_id, self.name) from None

    def to_full(self, packed: int) -> int:
        if not 0 <= packed < len(self._to_full):
            raise OutOfRangeError(packed, len(self._to_full), self.name)
        return int(self._to_full[packed])

    def to_packed_array(self, full_ids: Any) -> np.ndarray:
        """Vectorised `to_packed`; every identifier must be in the used-set."""
        full_ids = np.asarray(full_ids, dtype=np.int64)
        if full_ids.size == 0:
            return full_ids.copy()
        if len(self._to_full) == 0:
            raise NotFoundError(int(full_ids.flat[0]), self.name)
        pos = np.searchsorted(self._to_full, full_ids)
        found = self._to_full[np.minimum(pos, len(self._to_full) - 1)] == full_ids
        if not found.all():
            raise NotFoundError(int(full_ids[~found].flat[0]), self.name)
        return pos

    def to_full_array(self, packed: Any) -> np.ndarray:
        packed = np.asarray(packed, dtype=np.int64)
        bad = (packed < 0) | (packed >= len(self._to_full))
        if bad.any():
            raise OutOfRangeError(int(packed[bad].flat[0]), len(self._to_full), self.name)
        return self._to_full[packed]

    def pack(self, full_vector: Any) -> np.ndarray:
        """Select the used entries of a full-space vector."""
        full_vector = np.asarray(full_vector)
        if full_vector.shape[0] != self.nfull:
            raise DimensionMismatchError(
                f"Vector does not match full space of {self.name}",
                expected=self.nfull,
                actual=full_vector.shape[0],
            )
        return full_vector[self._to_full]

    def unpack(self, packed_vector: Any, fill: float = np.nan) -> np.ndarray:
        """Scatter a packed vector into a full-space vector, `fill` elsewhere."""
        packed_vector = np.asarray(packed_vector, dtype=np.float64)
        if packed_vector.shape[0] != self.size():
            raise DimensionMismatchError(
                f"Vector does not match packed space of {self.name}",
                expected=self.size(),
                actual=packed_vector.shape[0],
            )
        out = np.full((self.nfull,) + packed_vector.shape[1:], fill, dtype=np.float64)
        out[self._to_full] = packed_vector
        return out


class IndexSpace2:
    """
    Packed index space keyed on ``(group, local)`` pairs.

    Used when a domain is decomposed across several sub-grids ("groups"),
    each with its own local index space.

    Parameters
    ----------
    sizes : mapping
        Group identifier -> size of that group's local index space.
    used : iterable of (group, local)
        Pairs actually referenced.
    name : str, optional
        Used in error messages.

    Notes
    -----
    Packed order is by group (in the iteration order of `sizes`), then by
    ascending local index.
    """

    def __init__(
        self,
        sizes: Mapping[Hashable, int],
        used: Iterable[Tuple[Hashable, int]],
        name: str = "index space",
    ) -> None:
        self.name = name
        self.sizes: Dict[Hashable, int] = {g: int(n) for g, n in sizes.items()}
        by_group: Dict[Hashable, set] = {g: set() for g in self.sizes}
        for group, local in used:
            if group not in self.sizes:
                raise NotFoundError(group, f"groups of {name}")
            local = int(local)
            if not 0 <= local < self.sizes[group]:
                raise OutOfRangeError(local, self.sizes[group], f"group {group!r} of {name}")
            by_group[group].add(local)

        self._to_full: list[Tuple[Hashable, int]] = []
        self._to_packed: Dict[Tuple[Hashable, int], int] = {}
        self._group_locals: Dict[Hashable, np.ndarray] = {}
        self._group_offset: Dict[Hashable, int] = {}
        for group in self.sizes:
            locals_ = np.array(sorted(by_group[group]), dtype=np.int64)
            self._group_offset[group] = len(self._to_full)
            self._group_locals[group] = locals_
            for local in locals_:
                key = (group, int(local))
                self._to_packed[key] = len(self._to_full)
                self._to_full.append(key)

    def __len__(self) -> int:
        return len(self._to_full)

    def __contains__(self, key: object) -> bool:
        return key in self._to_packed

    def __repr__(self) -> str:
        return f"IndexSpace2(name={self.name!r}, groups={len(self.sizes)}, size={self.size()})"

    def size(self) -> int:
        return len(self._to_full)

    def groups(self) -> list:
        return list(self.sizes)

    def group_size(self, group: Hashable) -> int:
        """Number of used pairs belonging to `group`."""
        try:
            return len(self._group_locals[group])
        except KeyError:
            raise NotFoundError(group, f"groups of {self.name}") from None

    def to_packed(self, group: Hashable, local: int) -> int:
        try:
            return self._to_packed[(group, int(local))]
        except KeyError:
            raise NotFoundError((group, local), self.name) from None

    def to_full(self, packed: int) -> Tuple[Hashable, int]:
        if not 0 <= packed < len(self._to_full):
            raise OutOfRangeError(packed, len(self._to_full), self.name)
        return self._to_full[packed]

    def group_space(self, group: Hashable) -> IndexSpace:
        """The 1-key IndexSpace of one group's local identifiers."""
        if group not in self.sizes:
            raise NotFoundError(group, f"groups of {self.name}")
        return IndexSpace(self.sizes[group], self._group_locals[group], f"{self.name}[{group}]")

    def packed_slice(self, group: Hashable) -> slice:
        """Contiguous range of packed indices occupied by `group`."""
        start = self._group_offset[group]
        return slice(start, start + len(self._group_locals[group]))

    def pack(self, vectors: Mapping[Hashable, Any]) -> np.ndarray:
        """Concatenate the used entries of per-group local vectors."""
        out = np.empty(self.size(), dtype=np.float64)
        for group in self.sizes:
            locals_ = self._group_locals[group]
            if len(locals_) == 0:
                continue
            vec = np.asarray(vectors[group], dtype=np.float64)
            if vec.shape[0] != self.sizes[group]:
                raise DimensionMismatchError(
                    f"Vector of group {group!r} does not match its local space",
                    expected=self.sizes[group],
                    actual=vec.shape[0],
                )
            out[self.packed_slice(group)] = vec[locals_]
        return out

    def unpack(self, packed_vector: Any, fill: float = np.nan) -> Dict[Hashable, np.ndarray]:
        packed_vector = np.asarray(packed_vector, dtype=np.float64)
        if packed_vector.shape != (self.size(),):
            raise DimensionMismatchError(
                f"Vector does not match packed space of {self.name}",
                expected=(self.size(),),
                actual=packed_vector.shape,
            )
        out = {}
        for group, n in self.sizes.items():
            vec = np.full(n, fill, dtype=np.float64)
            vec[self._group_locals[group]] = packed_vector[self.packed_slice(group)]
            out[group] = vec
        return out


def pack_matrix(
    matrix: SparseMatrixCOO,
    row_space: Optional[IndexSpace],
    col_space: Optional[IndexSpace],
    drop_unused: bool = False,
) -> SparseMatrixCOO:
    """
    Translate a full-space matrix into packed row/column spaces.

    Parameters
    ----------
    matrix : SparseMatrixCOO
        Matrix in full index spaces.
    row_space, col_space : IndexSpace or None
        Translators for rows and columns; None keeps that axis unchanged.
    drop_unused : bool, default False
        Silently drop entries whose row or column is not in the used-set.
        By default such entries raise NotFoundError.
    """
    rows = matrix.row
    cols = matrix.col
    vals = matrix.data
    keep = np.ones(len(vals), dtype=bool)

    for space, idx, axis in ((row_space, rows, 0), (col_space, cols, 1)):
        if space is None:
            continue
        if space.nfull != matrix.shape[axis]:
            raise DimensionMismatchError(
                f"{space.name} does not match matrix axis {axis}",
                expected=matrix.shape[axis],
                actual=space.nfull,
            )
        if drop_unused:
            keep &= np.isin(idx, space.full_ids)

    rows, cols, vals = rows[keep], cols[keep], vals[keep]
    nrow, ncol = matrix.shape
    if row_space is not None:
        rows = row_space.to_packed_array(rows)
        nrow = row_space.size()
    if col_space is not None:
        cols = col_space.to_packed_array(cols)
        ncol = col_space.size()
    logger.debug("pack_matrix: %s -> (%d, %d), nnz=%d", matrix.shape, nrow, ncol, len(vals))
    return SparseMatrixCOO((nrow, ncol), rows, cols, vals)
