# jacobian.py
"""
Jacobian constructor.

Fills a pre-allocated `JacobianBuffer` with  J = df/du  at (u, p, t) by one of
four strategies:

    analytic        user-supplied jac, checked against buffer shape / pattern
    numeric-dense   forward differences, one f evaluation per column
                    (or torch autograd)
    numeric-sparse  colored forward differences, one f evaluation per color
    matrix-free     J @ v by directional differences, no entries stored
"""
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Any, Optional

import numpy as np
import scipy.sparse as sp
import torch

from .buffers import JacobianBuffer, JacobianKind
from .coloring import color_columns, color_groups
from .errors import (StiffODEError, UserFunctionError, UserJacobianError)
from .problem import ProblemSpec, ensure_finite

logger = logging.getLogger(__name__)


class JacobianMode(Enum):
    ANALYTIC       = "analytic"
    NUMERIC_DENSE  = "numeric-dense"
    NUMERIC_SPARSE = "numeric-sparse"
    MATRIX_FREE    = "matrix-free"


_KIND_OF_MODE = {
    JacobianMode.NUMERIC_DENSE:  JacobianKind.DENSE,
    JacobianMode.NUMERIC_SPARSE: JacobianKind.SPARSE,
    JacobianMode.MATRIX_FREE:    JacobianKind.OPERATOR,
}


def resolve_mode(problem: ProblemSpec, jac_mode: str = "auto") -> JacobianMode:
    """'auto' → analytic if jac given, else sparse if a prototype, else dense."""
    if jac_mode == "auto":
        if problem.jac is not None:
            return JacobianMode.ANALYTIC
        if problem.pattern is not None:
            return JacobianMode.NUMERIC_SPARSE
        return JacobianMode.NUMERIC_DENSE
    mode = JacobianMode(jac_mode)
    if mode is JacobianMode.ANALYTIC and problem.jac is None:
        raise ValueError("jac_mode='analytic' but the problem has no jac")
    if mode is JacobianMode.NUMERIC_SPARSE and problem.pattern is None:
        raise ValueError("jac_mode='numeric-sparse' needs a jac_prototype")
    return mode


def kind_for(mode: JacobianMode, problem: ProblemSpec) -> JacobianKind:
    """Buffer kind holding the Jacobian produced by `mode`."""
    if mode is JacobianMode.ANALYTIC:
        return JacobianKind.SPARSE if problem.pattern is not None \
            else JacobianKind.DENSE
    return _KIND_OF_MODE[mode]


# --------------------------------------------------------------------------- #
class JacVecOperator:
    """
    Action of J(u) on vectors without forming J.

        J v ≈ (f(u + eps v) - f(u)) / eps,   eps = sqrt(eps_mach)(1+||u||)/||v||

    A complex v is split into two real directional derivatives.  With
    ``method="autograd"`` the product comes from `torch.autograd.functional.jvp`.
    """

    def __init__(self, problem: ProblemSpec, *, method: str = "fd"):
        self.problem = problem
        self.method = method
        self.u: Optional[torch.Tensor] = None
        self.f0: Optional[torch.Tensor] = None
        self.t = problem.t0
        self.p = problem.p
        self.nfev = 0
        self._sqrt_eps = math.sqrt(torch.finfo(problem.dtype).eps)

    def refresh(self, u: torch.Tensor, p: Any, t: float,
                f0: Optional[torch.Tensor] = None) -> None:
        self.u = u.detach().clone()
        self.p = p
        self.t = t
        if f0 is None and self.method == "fd":
            f0 = self.problem.rhs(self.u, t, p)
            self.nfev += 1
        self.f0 = None if f0 is None else f0.detach().clone()

    @property
    def shape(self):
        return (self.problem.n, self.problem.n)

    def matvec(self, v: torch.Tensor) -> torch.Tensor:
        if self.u is None:
            raise RuntimeError("JacVecOperator used before refresh()")
        if v.is_complex():
            return torch.complex(self._real_matvec(v.real),
                                 self._real_matvec(v.imag))
        return self._real_matvec(v)

    __call__ = matvec

    def _real_matvec(self, v: torch.Tensor) -> torch.Tensor:
        v = v.to(self.u.dtype)
        nv = float(torch.linalg.norm(v))
        if nv == 0.0:
            return torch.zeros_like(self.u)
        self.nfev += 1
        if self.method == "autograd":
            return _jvp(self.problem, self.u, v, self.p, self.t)
        eps = self._sqrt_eps * (1.0 + float(torch.linalg.norm(self.u))) / nv
        return (self.problem.rhs(self.u + eps * v, self.t, self.p)
                - self.f0) / eps


def _functional(problem: ProblemSpec, p: Any, t: float):
    def fun(x):
        if problem.inplace:
            du = x.new_zeros(x.shape)
            problem.f(du, x, p, t)
            return du
        return problem.f(x, p, t)
    return fun


def _jvp(problem, u, v, p, t) -> torch.Tensor:
    try:
        _, jv = torch.autograd.functional.jvp(_functional(problem, p, t),
                                              u, v)
    except StiffODEError:
        raise
    except Exception as exc:
        raise UserFunctionError(f"autograd through f failed at t={t}: "
                                f"{exc!r}") from exc
    return jv.detach()


# --------------------------------------------------------------------------- #
class JacobianConstructor:
    """
    Builds J into a buffer.  Created once per integration; the column coloring
    of a sparse problem is computed here and reused by every build.

    Parameters
    ----------
    problem     : ProblemSpec
    mode        : default JacobianMode for `build`
    method      : "fd" | "autograd" for the numeric modes
    num_threads : worker threads for colored evaluation (1 → serial)
    """

    def __init__(self, problem: ProblemSpec, mode: JacobianMode, *,
                 method: str = "fd", num_threads: int = 1):
        if method not in ("fd", "autograd"):
            raise ValueError(f"unknown Jacobian method {method!r}")
        self.problem = problem
        self.mode = JacobianMode(mode)
        self.method = method
        self.num_threads = max(1, int(num_threads))
        self.nfev = 0
        self.njev = 0
        self._sqrt_eps = math.sqrt(torch.finfo(problem.dtype).eps)

        self._groups = None
        self._entry_sel = None
        if problem.pattern is not None:
            colors = color_columns(problem.pattern)
            self._colors = colors
            self._groups = color_groups(colors)
            logger.debug("sparse Jacobian: n=%d nnz=%d colors=%d",
                         problem.n, problem.pattern.nnz, len(self._groups))
        self._pattern_f = None
        if problem.pattern is not None:
            self._pattern_f = sp.csr_matrix(problem.pattern, dtype=np.float64)

    @property
    def n_colors(self) -> int:
        return 0 if self._groups is None else len(self._groups)

    # ------------------------------------------------------------------ #
    def build(self, buffer: JacobianBuffer, u: torch.Tensor, p: Any,
              t: float, mode: Optional[JacobianMode] = None,
              f0: Optional[torch.Tensor] = None) -> JacobianBuffer:
        """Fill `buffer` with J(u, p, t) and mark it fresh."""
        mode = self.mode if mode is None else JacobianMode(mode)
        p = self.problem.p if p is None else p

        if mode is JacobianMode.ANALYTIC:
            self._analytic(buffer, u, p, t)
        elif mode is JacobianMode.NUMERIC_DENSE:
            self._require(buffer, JacobianKind.DENSE, mode)
            if self.method == "autograd":
                self._autograd_dense(buffer, u, p, t)
            else:
                self._fd_dense(buffer, u, p, t, self._f0(u, p, t, f0))
        elif mode is JacobianMode.NUMERIC_SPARSE:
            self._require(buffer, JacobianKind.SPARSE, mode)
            self._fd_colored(buffer, u, p, t, self._f0(u, p, t, f0))
        else:
            self._require(buffer, JacobianKind.OPERATOR, mode)
            if buffer.operator is None:
                buffer.operator = JacVecOperator(self.problem,
                                                 method=self.method)
            buffer.operator.refresh(u, p, t, f0)

        self.njev += 1
        buffer.mark_fresh()
        return buffer

    @staticmethod
    def _require(buffer, kind, mode):
        if buffer.kind is not kind:
            raise ValueError(f"Jacobian mode {mode.value!r} needs a "
                             f"{kind.value} buffer, got {buffer.kind.value}")

    def _f0(self, u, p, t, f0):
        if f0 is not None:
            return f0
        self.nfev += 1
        return ensure_finite(self.problem.rhs(u, t, p), "f", t)

    # ---- analytic -------------------------------------------------------
    def _call_jac(self, *args):
        try:
            return self.problem.jac(*args)
        except StiffODEError:
            raise
        except Exception as exc:
            raise UserFunctionError(f"jac raised: {exc!r}") from exc

    def _analytic(self, buffer, u, p, t):
        prob = self.problem
        if prob.jac is None:
            raise ValueError("analytic Jacobian requested but jac is None")
        n = buffer.n

        if buffer.kind is JacobianKind.DENSE:
            if prob.jac_inplace:
                self._call_jac(buffer.dense, u, p, t)
                if tuple(buffer.dense.shape) != (n, n):
                    raise UserJacobianError("jac changed the buffer shape")
            else:
                J = self._call_jac(u, p, t)
                if sp.issparse(J):
                    J = J.toarray()
                J = torch.as_tensor(J)
                if J.layout != torch.strided:
                    J = J.to_dense()
                if tuple(J.shape) != (n, n):
                    raise UserJacobianError(f"jac returned shape "
                                            f"{tuple(J.shape)}, expected "
                                            f"{(n, n)}")
                buffer.dense.copy_(J.detach().to(buffer.dense.dtype))
            ensure_finite(buffer.dense, "jac", t)
            return

        if buffer.kind is not JacobianKind.SPARSE:
            raise ValueError("an analytic Jacobian needs an explicit buffer")

        if prob.jac_inplace:
            self._call_jac(buffer.sparse, u, p, t)
            if not buffer.pattern_intact():
                raise UserJacobianError(
                    "in-place jac altered the sparsity pattern of the buffer")
        else:
            J = self._call_jac(u, p, t)
            if isinstance(J, torch.Tensor):
                if J.layout != torch.strided:
                    J = J.to_dense()
                J = J.detach().cpu().numpy()
            J = sp.csr_matrix(J)
            if J.shape != (n, n):
                raise UserJacobianError(f"jac returned shape {J.shape}, "
                                        f"expected {(n, n)}")
            J.eliminate_zeros()
            outside = J - J.multiply(self._pattern_f)
            outside.eliminate_zeros()
            if outside.nnz:
                r, c = outside.nonzero()
                raise UserJacobianError(
                    f"jac has {outside.nnz} nonzero(s) outside the "
                    f"jac_prototype pattern, e.g. at ({r[0]}, {c[0]})")
            buffer.sparse.data[:] = np.asarray(
                J[buffer.rows, buffer.cols]).ravel()
        if not np.all(np.isfinite(buffer.sparse.data)):
            raise UserFunctionError(f"jac returned non-finite values at t={t}")

    # ---- numeric dense --------------------------------------------------
    def _fd_dense(self, buffer, u, p, t, f0):
        J = buffer.dense
        for j in range(buffer.n):
            uj = float(u[j])
            up = u.clone()
            up[j] = uj + self._sqrt_eps * max(1.0, abs(uj))
            d = float(up[j]) - uj                # exactly representable step
            J[:, j] = (self.problem.rhs(up, t, p) - f0) / d
        self.nfev += buffer.n
        ensure_finite(J, "finite-difference Jacobian of f", t)

    def _autograd_dense(self, buffer, u, p, t):
        try:
            J = torch.autograd.functional.jacobian(
                _functional(self.problem, p, t), u.detach())
        except StiffODEError:
            raise
        except Exception as exc:
            raise UserFunctionError(f"autograd through f failed at t={t}: "
                                    f"{exc!r}") from exc
        self.nfev += 1
        buffer.dense.copy_(J.detach())
        ensure_finite(buffer.dense, "autograd Jacobian of f", t)

    # ---- numeric sparse -------------------------------------------------
    def _entry_selection(self, buffer):
        if self._entry_sel is None:
            entry_color = self._colors[buffer.cols]
            self._entry_sel = [np.flatnonzero(entry_color == c)
                               for c in range(len(self._groups))]
        return self._entry_sel

    def _fd_colored(self, buffer, u, p, t, f0):
        if self._groups is None:
            raise ValueError("numeric-sparse Jacobian needs a jac_prototype")
        u_np = u.detach().cpu().numpy()
        steps = self._sqrt_eps * np.maximum(1.0, np.abs(u_np))

        def column_block(cols):
            up = u.clone()
            idx = torch.from_numpy(cols)
            up[idx] = up[idx] + torch.as_tensor(steps[cols], dtype=u.dtype)
            d = (up - u).detach().cpu().numpy()
            df = (self.problem.rhs(up, t, p) - f0).detach().cpu().numpy()
            return df, d

        if self.num_threads > 1 and len(self._groups) > 1:
            with ThreadPoolExecutor(max_workers=self.num_threads) as pool:
                blocks = list(pool.map(column_block, self._groups))
        else:
            blocks = [column_block(cols) for cols in self._groups]
        self.nfev += len(blocks)

        data = buffer.sparse.data
        for sel, (df, d) in zip(self._entry_selection(buffer), blocks):
            data[sel] = df[buffer.rows[sel]] / d[buffer.cols[sel]]
        if not np.all(np.isfinite(data)):
            raise UserFunctionError(f"finite-difference Jacobian of f is "
                                    f"non-finite at t={t}")
