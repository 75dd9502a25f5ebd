# problem.py
"""
Problem definition consumed by the integrator.

    M u' = f(u, p, t),   u(t0) = u0,   t in [t0, tf]

`f` is either functional, ``f(u, p, t) -> du``, or in-place,
``f(du, u, p, t) -> None``.  The convention is resolved once here, so the
hot loop never inspects the callable again.
"""
import inspect
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple

import numpy as np
import scipy.sparse as sp
import torch

from .errors import ShapeMismatchError, StiffODEError, UserFunctionError


# --------------------------------------------------------------------------- #
# ---- helpers -------------------------------------------------------------- #
def _required_positional(fn: Callable) -> int:
    """Number of positional parameters without a default value."""
    try:
        sig = inspect.signature(fn)
    except (TypeError, ValueError):          # builtins, some C extensions
        return 3
    count = 0
    for prm in sig.parameters.values():
        if prm.kind is inspect.Parameter.VAR_POSITIONAL:
            return 3
        if (prm.kind in (inspect.Parameter.POSITIONAL_ONLY,
                         inspect.Parameter.POSITIONAL_OR_KEYWORD)
                and prm.default is inspect.Parameter.empty):
            count += 1
    return count


def _as_vector(x: Any) -> torch.Tensor:
    if isinstance(x, (torch.Tensor, np.ndarray)):
        u = torch.as_tensor(x)
    else:
        u = torch.as_tensor(x, dtype=torch.float64)
    if not (u.is_floating_point() or u.is_complex()):
        u = u.to(torch.float64)
    if u.ndim != 1:
        raise ShapeMismatchError(f"u0 must be a 1-D vector, got shape "
                                 f"{tuple(u.shape)}")
    return u.detach().clone()


def as_dense(m: Any, *, dtype: torch.dtype) -> torch.Tensor:
    """Tensor / ndarray / scipy sparse → dense torch tensor."""
    if sp.issparse(m):
        m = m.toarray()
    if isinstance(m, torch.Tensor):
        if m.layout != torch.strided:
            m = m.to_dense()
        return m.detach().to(dtype)
    return torch.as_tensor(np.asarray(m), dtype=dtype)


def as_pattern(proto: Any, n: int) -> sp.csr_matrix:
    """
    Boolean CSR sparsity pattern with sorted indices.

    Stored entries of a scipy sparse prototype are structural nonzeros even
    when their value is zero; for dense prototypes the nonzeros count.
    """
    if isinstance(proto, torch.Tensor):
        if proto.layout != torch.strided:
            proto = proto.to_dense()
        proto = proto.detach().cpu().numpy()
    if sp.issparse(proto):
        m = sp.csr_matrix(proto, copy=True)
        m.data = np.ones_like(m.data, dtype=np.float64)
        m.sum_duplicates()
    else:
        m = sp.csr_matrix(np.asarray(proto) != 0, dtype=np.float64)
    if m.shape != (n, n):
        raise ShapeMismatchError(f"jac_prototype has shape {m.shape}, "
                                 f"expected {(n, n)}")
    m.sort_indices()
    return sp.csr_matrix((np.ones(m.nnz, dtype=bool),
                          m.indices.copy(), m.indptr.copy()), shape=(n, n))


def band_prototype(n: int, lower: int, upper: int) -> sp.csr_matrix:
    """Banded structure prototype with `lower` sub- and `upper` super-diagonals."""
    offsets = list(range(-lower, upper + 1))
    bands = [np.ones(n - abs(k)) for k in offsets]
    return sp.diags(bands, offsets, shape=(n, n), format="csr")


def ensure_finite(x: torch.Tensor, what: str, t: float) -> torch.Tensor:
    if not bool(torch.isfinite(x).all()):
        raise UserFunctionError(f"{what} returned non-finite values at t={t}")
    return x


# --------------------------------------------------------------------------- #
@dataclass(frozen=True, eq=False)
class ProblemSpec:
    """
    Immutable description of  M u' = f(u, p, t).

    Parameters
    ----------
    f             : right-hand side, ``f(u, p, t) -> du`` or
                    ``f(du, u, p, t)`` (in-place)
    u0            : initial state (n,)
    tspan         : (t0, tf) with tf >= t0
    p             : parameters handed to every user callable
    mass_matrix   : constant (n, n) matrix, possibly singular (DAE)
    jac           : analytic Jacobian ``jac(u, p, t) -> J`` or
                    ``jac(J, u, p, t)``
    jac_prototype : matrix whose nonzero pattern is the Jacobian structure
    inplace       : force the calling convention of `f` (None → detect)
    jac_inplace   : force the calling convention of `jac` (None → detect)
    """

    f: Callable
    u0: Any
    tspan: Tuple[float, float]
    p: Any = None
    mass_matrix: Any = None
    jac: Optional[Callable] = None
    jac_prototype: Any = None
    inplace: Optional[bool] = None
    jac_inplace: Optional[bool] = None

    n: int = field(init=False)
    pattern: Optional[sp.csr_matrix] = field(init=False, repr=False)
    is_dae: bool = field(init=False)

    def __post_init__(self):
        set_ = object.__setattr__
        if not callable(self.f):
            raise TypeError("f must be callable")
        u0 = _as_vector(self.u0)
        set_(self, "u0", u0)
        n = u0.numel()
        set_(self, "n", n)

        t0, tf = (float(v) for v in self.tspan)
        if not (math.isfinite(t0) and math.isfinite(tf)):
            raise ValueError("tspan must be finite")
        if tf < t0:
            raise ValueError(f"only forward integration is supported "
                             f"(t0={t0}, tf={tf})")
        set_(self, "tspan", (t0, tf))

        if self.inplace is None:
            set_(self, "inplace", _required_positional(self.f) >= 4)
        if self.jac is not None:
            if not callable(self.jac):
                raise TypeError("jac must be callable")
            if self.jac_inplace is None:
                set_(self, "jac_inplace",
                     _required_positional(self.jac) >= 4)

        mass = None
        is_dae = False
        if self.mass_matrix is not None:
            mass = as_dense(self.mass_matrix, dtype=u0.dtype)
            if tuple(mass.shape) != (n, n):
                raise ShapeMismatchError(
                    f"mass matrix has shape {tuple(mass.shape)}, "
                    f"expected {(n, n)}")
            is_dae = int(torch.linalg.matrix_rank(mass)) < n
        set_(self, "mass_matrix", mass)
        set_(self, "is_dae", is_dae)

        pattern = None
        if self.jac_prototype is not None:
            pattern = as_pattern(self.jac_prototype, n)
        set_(self, "pattern", pattern)

    # ------------------------------------------------------------------ #
    @property
    def t0(self) -> float:
        return self.tspan[0]

    @property
    def tf(self) -> float:
        return self.tspan[1]

    @property
    def dtype(self) -> torch.dtype:
        return self.u0.dtype

    def rhs(self, u: torch.Tensor, t: float, p: Any = None) -> torch.Tensor:
        """Evaluate f(u, p, t) into a fresh tensor (`p` defaults to self.p)."""
        p = self.p if p is None else p
        try:
            if self.inplace:
                du = torch.zeros_like(u)
                self.f(du, u, p, t)
            else:
                du = self.f(u, p, t)
        except StiffODEError:
            raise
        except Exception as exc:
            raise UserFunctionError(
                f"right-hand side raised at t={t}: {exc!r}") from exc
        if not isinstance(du, torch.Tensor):
            du = torch.as_tensor(np.asarray(du), dtype=u.dtype)
        elif du.dtype != u.dtype:
            du = du.to(u.dtype)
        if du.shape != u.shape:
            raise ShapeMismatchError(f"f returned shape {tuple(du.shape)}, "
                                     f"expected {tuple(u.shape)}")
        return du

    def mass_apply(self, v: torch.Tensor) -> torch.Tensor:
        """M @ v (identity when no mass matrix was given)."""
        if self.mass_matrix is None:
            return v
        M = self.mass_matrix
        if v.is_complex() and not M.is_complex():
            M = M.to(v.dtype)
        return M @ v

    def algebraic_residual(self, u: torch.Tensor, f0: torch.Tensor) -> float:
        """
        Size of the algebraic part of f at u: ||N^T f|| with N spanning the
        left null space of M.  Zero for ODEs.
        """
        if not self.is_dae:
            return 0.0
        U, S, _ = torch.linalg.svd(self.mass_matrix)
        tol = S.max() * self.n * torch.finfo(S.dtype).eps
        N = U[:, S <= tol]
        return float(torch.linalg.norm(N.T @ f0))

    def differential_projector(self) -> Optional[torch.Tensor]:
        """
        Orthogonal projector onto the row space of M, i.e. the components M
        acts on.  None for ODEs.
        """
        if not self.is_dae:
            return None
        _, S, Vh = torch.linalg.svd(self.mass_matrix)
        tol = S.max() * self.n * torch.finfo(S.dtype).eps
        V = Vh[S > tol]
        return V.T @ V
