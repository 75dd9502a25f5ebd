# coloring.py
"""
Column coloring for compressed finite-difference Jacobians.

Two columns may share a color when no row has a structural nonzero in both
(structural orthogonality).  One `f` evaluation per color then recovers every
column of that color at once.
"""
from typing import List

import numpy as np
import scipy.sparse as sp


def color_columns(pattern: sp.spmatrix) -> np.ndarray:
    """
    Greedy (largest-first) column-intersection coloring.

    Parameters
    ----------
    pattern : (n, n) sparse matrix; stored entries are the structure

    Returns
    -------
    colors : int array (n,), colors[j] in [0, n_colors)
    """
    csc = sp.csc_matrix(pattern)
    csr = sp.csr_matrix(pattern)
    n_cols = csc.shape[1]
    colors = np.full(n_cols, -1, dtype=np.int64)

    degree = np.diff(csc.indptr)
    order = np.argsort(-degree, kind="stable")

    for j in order:
        rows = csc.indices[csc.indptr[j]:csc.indptr[j + 1]]
        forbidden = set()
        for r in rows:
            neigh = csr.indices[csr.indptr[r]:csr.indptr[r + 1]]
            c = colors[neigh]
            forbidden.update(c[c >= 0].tolist())
        color = 0
        while color in forbidden:
            color += 1
        colors[j] = color
    return colors


def color_groups(colors: np.ndarray) -> List[np.ndarray]:
    """Column indices of each color, color 0 first."""
    n_colors = int(colors.max()) + 1 if colors.size else 0
    return [np.flatnonzero(colors == c) for c in range(n_colors)]
