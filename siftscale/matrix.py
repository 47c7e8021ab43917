"""Small dense matrix kernel for 2x2 and 3x3 systems.

The 3x3 inverse is built from minors, cofactors and the adjugate, then
divided by the determinant. Every function is numba-compiled and callable
both from Python and from other kernels.
"""

from __future__ import annotations

import numba
import numpy as np


@numba.njit(cache=True, nogil=True)
def det2(M) -> float:
    return M[0, 0] * M[1, 1] - M[0, 1] * M[1, 0]


@numba.njit(cache=True, nogil=True)
def minor(M, i, j):
    """2x2 submatrix of a 3x3 matrix with row ``i`` and column ``j`` removed."""
    out = np.empty((2, 2), dtype=np.float64)
    r = 0
    for a in range(3):
        if a == i:
            continue
        c = 0
        for b in range(3):
            if b == j:
                continue
            out[r, c] = M[a, b]
            c += 1
        r += 1
    return out


@numba.njit(cache=True, nogil=True)
def minors3(M):
    out = np.empty((3, 3), dtype=np.float64)
    for i in range(3):
        for j in range(3):
            out[i, j] = det2(minor(M, i, j))
    return out


@numba.njit(cache=True, nogil=True)
def cofactors3(M):
    out = minors3(M)
    for i in range(3):
        for j in range(3):
            if (i + j) % 2 == 1:
                out[i, j] = -out[i, j]
    return out


@numba.njit(cache=True, nogil=True)
def transpose3(M):
    out = np.empty((3, 3), dtype=np.float64)
    for i in range(3):
        for j in range(3):
            out[i, j] = M[j, i]
    return out


@numba.njit(cache=True, nogil=True)
def adjugate3(M):
    return transpose3(cofactors3(M))


@numba.njit(cache=True, nogil=True)
def det3(M) -> float:
    # cofactor expansion along the first row
    return (
        M[0, 0] * (M[1, 1] * M[2, 2] - M[1, 2] * M[2, 1])
        - M[0, 1] * (M[1, 0] * M[2, 2] - M[1, 2] * M[2, 0])
        + M[0, 2] * (M[1, 0] * M[2, 1] - M[1, 1] * M[2, 0])
    )


@numba.njit(cache=True, nogil=True)
def scalar_multiply(M, c):
    out = np.empty(M.shape, dtype=np.float64)
    for i in range(M.shape[0]):
        for j in range(M.shape[1]):
            out[i, j] = M[i, j] * c
    return out


@numba.njit(cache=True, nogil=True)
def inverse3(M):
    det = det3(M)
    if det == 0.0:
        raise ZeroDivisionError("matrix is singular")
    return scalar_multiply(adjugate3(M), 1.0 / det)


@numba.njit(cache=True, nogil=True)
def mat_vec(M, v):
    n = M.shape[0]
    out = np.zeros(n, dtype=np.float64)
    for i in range(n):
        acc = 0.0
        for j in range(M.shape[1]):
            acc += M[i, j] * v[j]
        out[i] = acc
    return out


@numba.njit(cache=True, nogil=True)
def dot(a, b) -> float:
    acc = 0.0
    for i in range(a.shape[0]):
        acc += a[i] * b[i]
    return acc


@numba.njit(cache=True, nogil=True)
def trace(M) -> float:
    acc = 0.0
    for i in range(min(M.shape[0], M.shape[1])):
        acc += M[i, i]
    return acc
