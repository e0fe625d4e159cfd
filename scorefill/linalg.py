from __future__ import annotations

from typing import Optional, Sequence

import numpy as np


SINGULAR_PIVOT = 1e-10


def gaussian_elimination(
    A: Sequence[Sequence[float]] | np.ndarray,
    b: Sequence[float] | np.ndarray,
) -> Optional[np.ndarray]:
    M = np.array(A, dtype=float, copy=True)
    rhs = np.array(b, dtype=float, copy=True)
    n = M.shape[0]
    if M.ndim != 2 or M.shape[1] != n or rhs.shape != (n,):
        raise ValueError(f"Expected an n x n system, got A{M.shape} and b{rhs.shape}")

    for i in range(n):
        pivot_row = i + int(np.argmax(np.abs(M[i:, i])))
        if pivot_row != i:
            M[[i, pivot_row]] = M[[pivot_row, i]]
            rhs[[i, pivot_row]] = rhs[[pivot_row, i]]
        if abs(M[i, i]) < SINGULAR_PIVOT:
            return None
        for k in range(i + 1, n):
            factor = M[k, i] / M[i, i]
            M[k, i:] -= factor * M[i, i:]
            rhs[k] -= factor * rhs[i]

    x = np.zeros(n, dtype=float)
    for i in range(n - 1, -1, -1):
        x[i] = (rhs[i] - float(np.dot(M[i, i + 1 :], x[i + 1 :]))) / M[i, i]
    return x


def invert_matrix(matrix: Sequence[Sequence[float]] | np.ndarray) -> Optional[np.ndarray]:
    M = np.asarray(matrix, dtype=float)
    n = M.shape[0]
    inverse = np.zeros((n, n), dtype=float)
    for col in range(n):
        basis = np.zeros(n, dtype=float)
        basis[col] = 1.0
        solution = gaussian_elimination(M, basis)
        if solution is None:
            return None
        inverse[:, col] = solution
    return inverse
