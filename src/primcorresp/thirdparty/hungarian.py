from __future__ import annotations

from typing import List, Tuple

import numpy as np


def solve(cost_matrix) -> List[Tuple[int, int]]:
    """Minimum-cost assignment of a rectangular matrix (Hungarian algorithm).

    Returns ``(row, col)`` pairs sorted by row; ``min(rows, cols)`` pairs in total.
    """
    matrix = np.asarray(cost_matrix, dtype=float)
    if matrix.size == 0:
        return []
    if matrix.ndim != 2:
        raise ValueError("Kostenmatrix muss zweidimensional sein")
    if not np.all(np.isfinite(matrix)):
        raise ValueError("Kostenmatrix enthält nicht-endliche Werte")

    transposed = matrix.shape[0] > matrix.shape[1]
    if transposed:
        matrix = matrix.T
    n, m = matrix.shape

    u = np.zeros(n + 1)
    v = np.zeros(m + 1)
    p = np.zeros(m + 1, dtype=int)
    way = np.zeros(m + 1, dtype=int)
    for i in range(1, n + 1):
        p[0] = i
        minv = np.full(m + 1, np.inf)
        used = np.zeros(m + 1, dtype=bool)
        j0 = 0
        while True:
            used[j0] = True
            i0 = p[j0]
            free = ~used[1:]
            cur = matrix[i0 - 1] - u[i0] - v[1:]
            better = free & (cur < minv[1:])
            minv[1:][better] = cur[better]
            way[1:][better] = j0
            candidates = np.where(free, minv[1:], np.inf)
            j1 = int(np.argmin(candidates)) + 1
            delta = candidates[j1 - 1]
            u[p[used]] += delta
            v[used] -= delta
            minv[~used] -= delta
            j0 = j1
            if p[j0] == 0:
                break
        while True:
            j1 = way[j0]
            p[j0] = p[j1]
            j0 = j1
            if j0 == 0:
                break

    assignment = [(int(p[j]) - 1, j - 1) for j in range(1, m + 1) if p[j] != 0]
    if transposed:
        assignment = [(col, row) for row, col in assignment]
    return sorted(assignment)
