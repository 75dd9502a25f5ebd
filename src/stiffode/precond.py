# precond.py
"""
Ready-made preconditioners for `KrylovSolver`.

Both follow the narrow interface the Krylov strategy expects: an object with
``apply(v)``, built from the iteration matrix W by a factory that the strategy
calls after every refactorization.
"""
from typing import Callable

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
import torch

from .errors import SingularSystemError
from .linsolve import IterationOperator


def _explicit(W) -> sp.csc_matrix:
    if isinstance(W, IterationOperator):
        raise TypeError("this preconditioner needs an explicit iteration "
                        "matrix; it cannot be built from a matrix-free "
                        "operator")
    if sp.issparse(W):
        return sp.csc_matrix(W)
    return sp.csc_matrix(W.detach().cpu().numpy())


class ILUPreconditioner:
    """
    Incomplete LU of W via `scipy.sparse.linalg.spilu`.

    Parameters
    ----------
    W           : iteration matrix (scipy sparse or torch dense)
    drop_tol    : ILU drop tolerance
    fill_factor : allowed fill relative to nnz(W)
    """

    def __init__(self, W, drop_tol: float = 1e-5, fill_factor: float = 10.0):
        A = _explicit(W)
        self.complex = np.iscomplexobj(A.data)
        try:
            self._ilu = spla.spilu(A, drop_tol=drop_tol,
                                   fill_factor=fill_factor)
        except RuntimeError as exc:
            raise SingularSystemError(f"ILU factorization failed: {exc}") \
                from exc

    def apply(self, v: torch.Tensor) -> torch.Tensor:
        x = v.detach().cpu().numpy()
        if self.complex:
            return torch.as_tensor(self._ilu.solve(x.astype(np.complex128)))
        if np.iscomplexobj(x):
            return torch.complex(
                torch.as_tensor(self._ilu.solve(np.ascontiguousarray(x.real))),
                torch.as_tensor(self._ilu.solve(np.ascontiguousarray(x.imag))))
        return torch.as_tensor(self._ilu.solve(x))


def ilu_factory(drop_tol: float = 1e-5,
                fill_factor: float = 10.0) -> Callable:
    """Factory for `SolverOptions.preconditioner`: W ↦ ILUPreconditioner(W)."""
    def factory(W):
        return ILUPreconditioner(W, drop_tol=drop_tol, fill_factor=fill_factor)
    return factory


class JacobiPreconditioner:
    """Diagonal scaling by 1 / diag(W); zero diagonal entries are left alone."""

    def __init__(self, W):
        if isinstance(W, torch.Tensor):
            d = W.diagonal().detach().clone()
        else:
            d = torch.as_tensor(_explicit(W).diagonal())
        d[d == 0] = 1.0
        self.inv_diag = 1.0 / d

    def apply(self, v: torch.Tensor) -> torch.Tensor:
        d = self.inv_diag
        if v.is_complex() and not d.is_complex():
            d = d.to(v.dtype)
        return v * d
