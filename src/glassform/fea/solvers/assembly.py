from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np
import scipy as sp
import scipy.sparse.linalg

from glassform.errors import SingularSystemError

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)


class SparseAssembler:
    """
    Assembles element matrices into a CSR matrix with a fixed sparsity pattern.

    The pattern and, for every element entry, the position in ``data`` are
    computed once; each assembly pass is then a single weighted ``bincount``.
    """

    def __init__(self, element_dofs: npt.NDArray[np.int64], n_equations: int) -> None:
        """
        Args:
            element_dofs: ``(E, n)`` global equation numbers of each element.
            n_equations: Size of the global system.
        """
        self.element_dofs = np.asarray(element_dofs, dtype=np.int64)
        self.n_equations = n_equations
        self._template, self._scatter = self._precompute_pattern_and_scatter(self.element_dofs)

    @property
    def nnz(self) -> int:
        return self._template.nnz

    def _precompute_pattern_and_scatter(
        self,
        element_dofs: npt.NDArray[np.int64],
    ) -> tuple[sp.sparse.csr_matrix, npt.NDArray[np.int64]]:
        """
        Precompute the sparsity pattern of the global matrix and the scatter vector.

        Returns:
            A_template: csr_matrix with correct indptr/indices (float64 data, zeros).
            scatter: ``(E, n * n)`` indices into ``A_template.data`` where
                ``Ke.ravel(order="C")`` of element e adds.
        """
        if element_dofs.size == 0:
            raise ValueError("No elements to assemble.")
        n_el, n_dofs = element_dofs.shape
        rows = np.repeat(element_dofs[:, :, None], n_dofs, axis=2).ravel()
        cols = np.repeat(element_dofs[:, None, :], n_dofs, axis=1).ravel()

        neq = self.n_equations
        pattern = sp.sparse.coo_matrix(
            (np.ones_like(rows, dtype=np.int8), (rows, cols)),
            shape=(neq, neq),
        ).tocsr()
        pattern.sum_duplicates()
        pattern.sort_indices()

        A_template = pattern.astype(np.float64, copy=True)
        A_template.data[:] = 0.0

        self._template = A_template
        self._row_keys = self._keys_of_pattern()
        scatter = self._positions(rows, cols).reshape(n_el, n_dofs * n_dofs)
        return A_template, scatter

    def _keys_of_pattern(self) -> npt.NDArray[np.int64]:
        indptr, indices = self._template.indptr, self._template.indices
        pattern_rows = np.repeat(np.arange(self.n_equations, dtype=np.int64), np.diff(indptr))
        # rows ascending and columns sorted per row, so the keys are sorted
        return pattern_rows * self.n_equations + indices.astype(np.int64)

    def _positions(self, rows: npt.NDArray[np.int64], cols: npt.NDArray[np.int64]) -> npt.NDArray[np.int64]:
        keys = rows * self.n_equations + cols
        pos = np.searchsorted(self._row_keys, keys)
        if np.any(pos >= self._row_keys.size) or np.any(self._row_keys[np.minimum(pos, self._row_keys.size - 1)] != keys):
            raise ValueError("Entries outside the precomputed sparsity pattern.")
        return pos

    def scatter_for(self, dofs: npt.NDArray[np.int64]) -> npt.NDArray[np.int64]:
        """
        Scatter indices for blocks whose dofs are subsets of element dofs
        (boundary edges, coupling blocks).
        """
        dofs = np.asarray(dofs, dtype=np.int64)
        n = dofs.shape[1]
        rows = np.repeat(dofs[:, :, None], n, axis=2).ravel()
        cols = np.repeat(dofs[:, None, :], n, axis=1).ravel()
        return self._positions(rows, cols).reshape(dofs.shape[0], n * n)

    def scatter_rectangular(self, row_dofs: npt.NDArray[np.int64], col_dofs: npt.NDArray[np.int64]) -> npt.NDArray[np.int64]:
        """Scatter indices of ``(E, m, k)`` off-diagonal blocks."""
        row_dofs = np.asarray(row_dofs, dtype=np.int64)
        col_dofs = np.asarray(col_dofs, dtype=np.int64)
        m, k = row_dofs.shape[1], col_dofs.shape[1]
        rows = np.repeat(row_dofs[:, :, None], k, axis=2).ravel()
        cols = np.repeat(col_dofs[:, None, :], m, axis=1).ravel()
        return self._positions(rows, cols).reshape(row_dofs.shape[0], m * k)

    def new_data(self) -> npt.NDArray[np.float64]:
        return np.zeros(self.nnz, dtype=np.float64)

    def add(self, data: npt.NDArray[np.float64], local: npt.NDArray[np.float64], scatter: npt.NDArray[np.int64] | None = None) -> None:
        """Accumulate ``(E, m, k)`` local blocks into ``data`` in place."""
        scatter = self._scatter if scatter is None else scatter
        data += np.bincount(scatter.ravel(), weights=np.asarray(local, dtype=np.float64).ravel(), minlength=self.nnz)

    def to_matrix(self, data: npt.NDArray[np.float64]) -> sp.sparse.csr_matrix:
        t = self._template
        return sp.sparse.csr_matrix((data, t.indices.copy(), t.indptr.copy()), shape=t.shape)

    def assemble(self, local_matrices: npt.NDArray[np.float64]) -> sp.sparse.csr_matrix:
        """
        Assemble a global matrix from ``(E, n, n)`` element matrices.
        """
        data = self.new_data()
        self.add(data, local_matrices)
        return self.to_matrix(data)

    def assemble_vector(self, local_vectors: npt.NDArray[np.float64], dofs: npt.NDArray[np.int64] | None = None) -> npt.NDArray[np.float64]:
        dofs = self.element_dofs if dofs is None else dofs
        return np.bincount(
            np.asarray(dofs).ravel(),
            weights=np.asarray(local_vectors, dtype=np.float64).ravel(),
            minlength=self.n_equations,
        )


def apply_dirichlet(
    A: sp.sparse.csr_matrix,
    rhs: npt.NDArray[np.float64],
    fixed: npt.NDArray[np.int64],
    values: npt.NDArray[np.float64],
) -> tuple[sp.sparse.csr_matrix, npt.NDArray[np.float64]]:
    """
    Row elimination: fixed rows become identity rows with the prescribed value.
    """
    n = A.shape[0]
    mask = np.zeros(n, dtype=np.float64)
    mask[fixed] = 1.0
    A_bc = (sp.sparse.diags(1.0 - mask) @ A + sp.sparse.diags(mask)).tocsc()
    rhs_bc = rhs.copy()
    rhs_bc[fixed] = values
    return A_bc, rhs_bc


def solve_direct(
    A: sp.sparse.spmatrix,
    rhs: npt.NDArray[np.float64],
    tolerance: float = 1e-6,
    label: str = "linear system",
) -> npt.NDArray[np.float64]:
    """
    Sparse LU solve with singularity detection.

    Raises:
        SingularSystemError: If the matrix or right-hand side is not finite, the
            factorization is singular, or the relative residual
            ``|Ax - b| / (|A| |x| + |b|)`` exceeds ``tolerance``.
    """
    A = sp.sparse.csc_matrix(A)
    if not (np.isfinite(A.data).all() and np.isfinite(rhs).all()):
        raise SingularSystemError(f"The {label} contains non-finite entries.")
    try:
        x = sp.sparse.linalg.splu(A).solve(rhs)
    except RuntimeError as e:
        raise SingularSystemError(f"The {label} is singular: {e}") from e
    if not np.isfinite(x).all():
        raise SingularSystemError(f"The {label} produced a non-finite solution.")

    norm_A = sp.sparse.linalg.norm(A, ord=np.inf)
    denominator = norm_A * np.linalg.norm(x, ord=np.inf) + np.linalg.norm(rhs, ord=np.inf)
    if denominator > 0.0:
        residual = np.linalg.norm(A @ x - rhs, ord=np.inf) / denominator
        if residual > tolerance:
            raise SingularSystemError(f"The {label} is near-singular (relative residual {residual:.2e}).")
    return x
