from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import numpy as onp
import scipy.sparse

if TYPE_CHECKING:
    from ._term_graph import AddedTerm


@dataclass(frozen=True)
class SparseCooCoordinates:
    """Coordinates of every Hessian block entry, in term order.

    Each `(term, i, j)` block contributes `dim_i * dim_j` consecutive entries,
    laid out row-major to match `block.ravel()`. Coordinates can repeat; they
    are summed during assembly."""

    rows: onp.ndarray
    cols: onp.ndarray
    shape: tuple[int, int]

    @staticmethod
    def make(terms: Sequence[AddedTerm], num_scalars: int) -> SparseCooCoordinates:
        row_parts = list[onp.ndarray]()
        col_parts = list[onp.ndarray]()
        for added in terms:
            for var0 in added.variables:
                local_rows = onp.arange(var0.user_dimension)
                for var1 in added.variables:
                    local_cols = onp.arange(var1.user_dimension)
                    row_parts.append(
                        onp.repeat(local_rows, var1.user_dimension)
                        + var0.global_offset
                    )
                    col_parts.append(
                        onp.tile(local_cols, var0.user_dimension) + var1.global_offset
                    )

        empty = onp.zeros(0, dtype=onp.int64)
        rows = onp.concatenate(row_parts) if row_parts else empty
        cols = onp.concatenate(col_parts) if col_parts else empty
        return SparseCooCoordinates(
            rows=rows.astype(onp.int64),
            cols=cols.astype(onp.int64),
            shape=(num_scalars, num_scalars),
        )

    @property
    def num_entries(self) -> int:
        return self.rows.shape[0]


def gather_block_values(terms: Sequence[AddedTerm], out: onp.ndarray) -> onp.ndarray:
    """Flatten every Hessian block into `out`, following the layout of
    `SparseCooCoordinates.make()`."""
    start = 0
    for added in terms:
        for block_row in added.hessian:
            for block in block_row:
                end = start + block.size
                out[start:end] = block.ravel()
                start = end
    assert start == out.shape[0]
    return out


def assemble_sparse(
    coords: SparseCooCoordinates, values: onp.ndarray
) -> scipy.sparse.csr_matrix:
    """Build a CSR matrix from triplets. Duplicate coordinates are summed.

    Explicit zeros are kept, so the sparsity structure only depends on the
    coordinates."""
    assert values.shape == coords.rows.shape
    coo = scipy.sparse.coo_matrix(
        (values, (coords.rows, coords.cols)), shape=coords.shape
    )
    out = coo.tocsr()
    out.sum_duplicates()
    return out


def assemble_dense(terms: Sequence[AddedTerm], num_scalars: int) -> onp.ndarray:
    """Scatter-add every Hessian block into a dense matrix."""
    out = onp.zeros((num_scalars, num_scalars))
    for added in terms:
        for var0, block_row in zip(added.variables, added.hessian):
            for var1, block in zip(added.variables, block_row):
                out[
                    var0.global_offset : var0.global_offset + var0.user_dimension,
                    var1.global_offset : var1.global_offset + var1.user_dimension,
                ] += block
    return out
