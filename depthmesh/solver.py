"""Linear least-squares solver for the inverse depth factor graph.

This module eliminates the whitened sparse system of a factor graph by
column-pivoted QR and reports, per key, the least-squares value and the
diagonal of the information matrix.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np
from scipy import linalg, sparse

from depthmesh.factors import GaussianFactorGraph

logger = logging.getLogger(__name__)

# Null-space rows with a larger norm mark keys the system does not determine
NULL_SPACE_TOL = 1e-8

# Rows of the whitened system densified at once
ROW_BLOCK_SIZE = 4096


@dataclass
class LinearSolution:
    """Solution of a linear factor graph.

    Attributes:
        values: Least-squares value of each key, NaN for keys the factors
            do not determine
        hessian_diagonal: Diagonal of the information matrix A^T A per key
        rank: Numerical rank of the whitened system
        error: Half the squared norm of the whitened residual
    """

    values: Dict[int, float] = field(default_factory=dict)
    hessian_diagonal: Dict[int, float] = field(default_factory=dict)
    rank: int = 0
    error: float = 0.0

    def exists(self, key: int) -> bool:
        return key in self.values

    def at(self, key: int) -> float:
        return self.values[key]

    def __len__(self) -> int:
        return len(self.values)


def _reduce_rows(
    A: sparse.csr_matrix,
    b: np.ndarray,
    block_size: int = ROW_BLOCK_SIZE
) -> Tuple[np.ndarray, np.ndarray]:
    """Compress a tall sparse system into an equivalent square one.

    Rows are folded in blocks into a running triangular factor, so that
    ||A y - b|| and ||R y - d|| differ by a constant for every y. Only one
    block of rows is dense at a time.

    Returns:
        Tuple of (R, d) with R of shape (n, n)
    """
    m, n = A.shape
    R = np.zeros((n, n))
    d = np.zeros(n)
    for row_start in range(0, m, block_size):
        row_end = min(row_start + block_size, m)
        stacked = np.vstack((R, A[row_start:row_end].toarray()))
        rhs = np.concatenate((d, b[row_start:row_end]))
        Q, R = linalg.qr(stacked, mode="economic")
        d = Q.T @ rhs
    return R, d


def solve_linear_system(graph: GaussianFactorGraph) -> LinearSolution:
    """Solve a linear factor graph in the least-squares sense.

    Reduces the whitened sparse system A y = b to an n x n triangular system
    block by block, then eliminates it by QR with column pivoting, R P = Q R'.
    Keys lying in the null space of A get NaN values.

    Args:
        graph: Linear Gaussian factor graph

    Returns:
        Per-key solution and information diagonal
    """
    if len(graph) == 0:
        logger.warning("Solving an empty factor graph")
        return LinearSolution()

    start_time = time.perf_counter()

    ordering = graph.ordering()
    A, b = graph.whitened_system(ordering)
    m, n = A.shape

    R_rows, d = _reduce_rows(A, b)
    Q, R, P = linalg.qr(R_rows, pivoting=True)

    # Numerical rank from the diagonal of R
    r_diag = np.abs(np.diag(R))
    tol = r_diag[0] * max(m, n) * np.finfo(np.float64).eps if r_diag.size else 0.0
    rank = int(np.count_nonzero(r_diag > tol))

    qtb = Q.T @ d
    x_perm = np.zeros(n)
    if rank > 0:
        x_perm[:rank] = linalg.solve_triangular(R[:rank, :rank], qtb[:rank])

    x = np.empty(n)
    x[P] = x_perm

    # Null space of A is P [-R11^-1 R12; I]
    if rank < n:
        null_perm = np.zeros((n, n - rank))
        if rank > 0:
            null_perm[:rank] = -linalg.solve_triangular(R[:rank, :rank], R[:rank, rank:])
        null_perm[rank:] = np.eye(n - rank)
        null_space = np.empty_like(null_perm)
        null_space[P] = null_perm

        undetermined = np.linalg.norm(null_space, axis=1) > NULL_SPACE_TOL
        x[undetermined] = np.nan
        logger.warning(
            f"Rank deficient system: rank {rank} < {n} unknowns, "
            f"{np.count_nonzero(undetermined)} undetermined"
        )

    residual = A @ np.nan_to_num(x) - b
    error = 0.5 * float(residual @ residual)

    keys = sorted(ordering, key=ordering.get)
    values = {key: float(x[ordering[key]]) for key in keys}

    elapsed_time = time.perf_counter() - start_time
    logger.debug(
        f"QR elimination: {m} factors, {n} unknowns, rank {rank}, "
        f"error {error:.6g} (elapsed time: {elapsed_time:.3f}s)"
    )

    return LinearSolution(
        values=values,
        hessian_diagonal=graph.hessian_diagonal(),
        rank=rank,
        error=error,
    )
