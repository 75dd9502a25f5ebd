# linsolve.py
"""
Linear-solve strategies for the shifted iteration systems

    (σ M - J) x = b,     σ = γ / h   (real or complex)

A strategy turns one iteration matrix into a prepared solve closure
(`factorize`).  `build_solve_fns` produces one closure per shift; this list is
all the step kernels ever see of the linear algebra.
"""
import logging
from contextlib import contextmanager
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
import torch

from .buffers import JacobianBuffer, JacobianKind
from .errors import NonConvergenceError, SingularSystemError
from .gmres import gmres

logger = logging.getLogger(__name__)

SolveFn = Callable[[torch.Tensor], torch.Tensor]


# --------------------------------------------------------------------------- #
# ---- helpers -------------------------------------------------------------- #
@contextmanager
def blas_threads(n: Optional[int]):
    """Run the enclosed block with `n` torch intra-op threads (None → as is)."""
    if n is None:
        yield
        return
    old = torch.get_num_threads()
    torch.set_num_threads(int(n))
    try:
        yield
    finally:
        torch.set_num_threads(old)


def _torch_csr(t: torch.Tensor) -> sp.csr_matrix:
    """Torch → SciPy CSR."""
    return sp.csr_matrix(t.detach().cpu().numpy())


def _split_complex(solve: SolveFn, dtype: torch.dtype) -> SolveFn:
    """Apply a real solver to complex right-hand sides part by part."""
    def wrapped(b: torch.Tensor) -> torch.Tensor:
        if b.is_complex():
            return torch.complex(solve(b.real.to(dtype)),
                                 solve(b.imag.to(dtype)))
        return solve(b.to(dtype))
    return wrapped


def _complex_shift(shift) -> bool:
    return isinstance(shift, complex) or (
        isinstance(shift, torch.Tensor) and shift.is_complex())


class IterationOperator:
    """Matrix-free  W v = shift · M v - J v."""

    def __init__(self, buffer: JacobianBuffer, mass: Optional[torch.Tensor],
                 shift: Union[float, complex]):
        self.buffer = buffer
        self.mass = mass
        self.shift = shift
        self.n = buffer.n
        self.dtype = (torch.complex128 if _complex_shift(shift)
                      else torch.float64)

    @property
    def shape(self):
        return (self.n, self.n)

    def matvec(self, v: torch.Tensor) -> torch.Tensor:
        v = v.to(self.dtype)
        if self.mass is None:
            Mv = v
        else:
            M = self.mass if self.mass.dtype == v.dtype else self.mass.to(v.dtype)
            Mv = M @ v
        return (self.shift * Mv - self.buffer.matvec(v)).to(self.dtype)

    __matmul__ = matvec


def iteration_matrix(buffer: JacobianBuffer, mass: Any, shift):
    """
    shift·M - J in the form matching the Jacobian kind:
    torch tensor (dense), scipy CSC (sparse) or `IterationOperator`.
    `mass` is None (identity), a torch tensor or a scipy sparse matrix.
    """
    if buffer.kind is JacobianKind.OPERATOR:
        if sp.issparse(mass):
            mass = torch.as_tensor(mass.toarray())
        return IterationOperator(buffer, mass, shift)

    if buffer.kind is JacobianKind.DENSE:
        cplx = _complex_shift(shift)
        J = buffer.dense
        dtype = torch.complex128 if cplx else J.dtype
        if mass is None:
            M = torch.eye(buffer.n, dtype=dtype)
        elif sp.issparse(mass):
            M = torch.as_tensor(mass.toarray(), dtype=dtype)
        else:
            M = mass.to(dtype)
        return shift * M - J.to(dtype)

    if mass is None:
        M = sp.identity(buffer.n, format="csr")
    elif sp.issparse(mass):
        M = mass
    else:
        M = _torch_csr(mass)
    return (complex(shift) * M if _complex_shift(shift) else float(shift) * M) \
        - buffer.sparse


def _matvec_of(W) -> SolveFn:
    if isinstance(W, IterationOperator):
        return W.matvec
    if sp.issparse(W):
        dtype = torch.complex128 if np.iscomplexobj(W.data) else torch.float64
        return lambda v: torch.as_tensor(W @ v.detach().cpu().numpy(),
                                         dtype=dtype)
    return lambda v: W @ v.to(W.dtype)


# --------------------------------------------------------------------------- #
# ---- strategies ----------------------------------------------------------- #
class _Strategy:
    """Common counters and BLAS-thread handling."""

    name = "base"

    def __init__(self, *, num_threads: Optional[int] = None):
        self.num_threads = num_threads
        self.nfact = 0
        self.nsolve = 0
        self.nkrylov = 0

    def factorize(self, system) -> SolveFn:
        with blas_threads(self.num_threads):
            solve = self._factorize(system)
        self.nfact += 1

        def counted(b: torch.Tensor) -> torch.Tensor:
            self.nsolve += 1
            with blas_threads(self.num_threads):
                return solve(b)
        return counted

    def solve(self, system, rhs: torch.Tensor) -> torch.Tensor:
        return self.factorize(system)(rhs)

    def _factorize(self, system) -> SolveFn:
        raise NotImplementedError


class DirectSolver(_Strategy):
    """
    LU factorization: `torch.linalg.lu_factor_ex` for dense systems and
    `scipy.sparse.linalg.splu` for sparse ones.

    Rows are equilibrated (divided by their largest magnitude) before the
    factorization, so the pivot test compares like with like.  A zero row, or
    a zero or relatively tiny pivot of the equilibrated factor
    (|U_ii| <= singular_tol · max|U_ii|), raises `SingularSystemError`.
    """

    name = "lu"

    def __init__(self, singular_tol: float = 1e-14, *,
                 num_threads: Optional[int] = None):
        super().__init__(num_threads=num_threads)
        self.singular_tol = singular_tol

    def _check_pivots(self, diag: np.ndarray):
        mags = np.abs(diag)
        big = mags.max() if mags.size else 0.0
        small = mags.min() if mags.size else 0.0
        if not np.isfinite(big) or big == 0.0 or \
                small <= self.singular_tol * big:
            raise SingularSystemError(
                f"iteration matrix is singular to working precision "
                f"(min |pivot| = {small:.3e}, max |pivot| = {big:.3e})",
                pivot=float(small))

    @staticmethod
    def _check_rows(rmax: np.ndarray):
        if rmax.size and (not np.all(np.isfinite(rmax)) or rmax.min() == 0.0):
            bad = int(np.argmin(np.where(np.isfinite(rmax), rmax, 0.0)))
            raise SingularSystemError(
                f"iteration matrix row {bad} is zero or not finite",
                pivot=0.0)

    def _factorize(self, W) -> SolveFn:
        if isinstance(W, IterationOperator):
            raise TypeError("a direct solver needs an explicit matrix")

        if sp.issparse(W):
            W = sp.csr_matrix(W)
            rmax = np.asarray(abs(W).max(axis=1).todense()).ravel()
            self._check_rows(rmax)
            rinv = 1.0 / rmax
            try:
                lu = spla.splu(sp.csc_matrix(sp.diags(rinv) @ W))
            except RuntimeError as exc:           # "Factor is exactly singular"
                raise SingularSystemError(str(exc)) from exc
            self._check_pivots(lu.U.diagonal())
            cplx = np.iscomplexobj(W.data)
            dtype = torch.complex128 if cplx else torch.float64

            def solve(b: torch.Tensor) -> torch.Tensor:
                rhs = b.detach().cpu().numpy().astype(
                    np.complex128 if cplx else np.float64)
                return torch.as_tensor(lu.solve(rinv * rhs), dtype=dtype)
            return solve if cplx else _split_complex(solve, dtype)

        rmax = W.abs().amax(dim=-1)
        self._check_rows(rmax.detach().cpu().numpy())
        rinv = 1.0 / rmax
        LU, piv, info = torch.linalg.lu_factor_ex(W * rinv.unsqueeze(-1))
        if int(info) > 0:
            raise SingularSystemError(
                f"exactly zero pivot U[{int(info) - 1}, {int(info) - 1}]",
                pivot=0.0)
        self._check_pivots(LU.diagonal().abs().cpu().numpy())

        def solve(b: torch.Tensor) -> torch.Tensor:
            rhs = (b.to(LU.dtype) * rinv).unsqueeze(-1)
            return torch.linalg.lu_solve(LU, piv, rhs).squeeze(-1)
        return solve if W.is_complex() else _split_complex(solve, W.dtype)


class KrylovSolver(_Strategy):
    """
    Restarted GMRES (`stiffode.gmres.gmres`) on explicit matrices or
    matrix-free operators.

    Parameters
    ----------
    rtol, atol     : GMRES stopping test  ||r|| <= max(rtol·||b||, atol)
    maxiters       : inner-iteration cap; exceeding it raises
                     `NonConvergenceError`
    restart        : Krylov dimension between restarts
    preconditioner : object with ``apply(v)``, or a factory ``f(W)`` called
                     once per `factorize` with the iteration matrix/operator
    side           : "left" | "right" preconditioning
    """

    name = "gmres"

    def __init__(self, rtol: float = 1e-6, atol: float = 0.0,
                 maxiters: int = 200, restart: int = 30,
                 preconditioner: Any = None, side: str = "right", *,
                 num_threads: Optional[int] = None):
        super().__init__(num_threads=num_threads)
        self.rtol = rtol
        self.atol = atol
        self.maxiters = maxiters
        self.restart = restart
        self.preconditioner = preconditioner
        self.side = side

    def _precond_for(self, W) -> Optional[SolveFn]:
        pc = self.preconditioner
        if pc is None:
            return None
        if not hasattr(pc, "apply"):
            pc = pc(W)                            # factory
        return pc.apply if hasattr(pc, "apply") else pc

    def _factorize(self, W) -> SolveFn:
        matvec = _matvec_of(W)
        precond = self._precond_for(W)
        dtype = W.dtype if isinstance(W, (torch.Tensor, IterationOperator)) \
            else (torch.complex128 if np.iscomplexobj(W.data) else torch.float64)

        def solve(b: torch.Tensor) -> torch.Tensor:
            b = b.to(dtype)
            x, info = gmres(matvec, b, rtol=self.rtol, atol=self.atol,
                            restart=self.restart, maxiter=self.maxiters,
                            precond=precond, side=self.side)
            self.nkrylov += info.iterations
            if not info.converged:
                raise NonConvergenceError(
                    f"GMRES did not converge in {info.iterations} iterations "
                    f"(residual {info.residual:.3e} > {info.target:.3e})",
                    iterations=info.iterations, residual=info.residual)
            return x
        return solve if dtype.is_complex else _split_complex(solve, dtype)


class PETScSolver(_Strategy):
    """
    PETSc KSP (GMRES + PETSc preconditioner) on explicit matrices.  A complex
    system is handed to PETSc in its real 2n × 2n block form
    [[Re W, -Im W], [Im W, Re W]].
    """

    name = "petsc"

    def __init__(self, rtol: float = 1e-6, atol: float = 0.0,
                 maxiters: int = 200, pc_type: str = "ilu", *,
                 num_threads: Optional[int] = None):
        super().__init__(num_threads=num_threads)
        try:
            from petsc4py import PETSc
        except ImportError as exc:
            raise ImportError("linsolve='petsc' requires petsc4py "
                              "(install the 'petsc' extra)") from exc
        self.PETSc = PETSc
        self.rtol = rtol
        self.atol = atol
        self.maxiters = maxiters
        self.pc_type = pc_type

    def _make_ksp(self, A):
        ksp = self.PETSc.KSP().create()
        ksp.setOperators(A)
        ksp.setType("gmres")
        ksp.setTolerances(rtol=self.rtol, atol=self.atol, max_it=self.maxiters)
        ksp.pc.setType(self.pc_type)
        ksp.setFromOptions()                 # honour -ksp_* command-line flags
        return ksp

    def _to_aij(self, csr: sp.csr_matrix):
        PETSc = self.PETSc
        csr = sp.csr_matrix(csr)
        csr.sort_indices()
        A = PETSc.Mat().createAIJ(
            size=csr.shape,
            csr=(csr.indptr.astype(PETSc.IntType),
                 csr.indices.astype(PETSc.IntType),
                 csr.data.astype(PETSc.ScalarType)))
        A.assemble()
        return A

    def _factorize(self, W) -> SolveFn:
        if isinstance(W, IterationOperator):
            raise TypeError("the PETSc backend needs an explicit matrix")
        csr = W if sp.issparse(W) else _torch_csr(W)
        n = csr.shape[0]
        cplx = np.iscomplexobj(csr.data)
        if cplx:
            re, im = csr.real, csr.imag
            csr = sp.bmat([[re, -im], [im, re]], format="csr")

        PETSc = self.PETSc
        A = self._to_aij(csr)
        ksp = self._make_ksp(A)
        try:
            ksp.setUp()
        except PETSc.Error as exc:
            raise SingularSystemError(f"PETSc preconditioner setup failed: "
                                      f"{exc}") from exc
        x_vec, b_vec = A.createVecs()
        dtype = torch.complex128 if cplx else torch.float64

        def solve(b: torch.Tensor) -> torch.Tensor:
            b_np = b.detach().cpu().numpy()
            if cplx:
                b_np = np.concatenate([b_np.real, b_np.imag])
            b_vec.array[:] = b_np
            try:
                ksp.solve(b_vec, x_vec)
            except PETSc.Error as exc:
                raise SingularSystemError(f"PETSc solve failed: {exc}") \
                    from exc
            reason = ksp.getConvergedReason()
            its = ksp.getIterationNumber()
            self.nkrylov += its
            if reason < 0:
                raise NonConvergenceError(
                    f"PETSc KSP diverged (reason {reason}) after {its} "
                    f"iterations", iterations=its,
                    residual=ksp.getResidualNorm())
            x = x_vec.array.copy()
            if cplx:
                x = x[:n] + 1j * x[n:]
            return torch.as_tensor(x, dtype=dtype)
        return solve if cplx else _split_complex(solve, dtype)


# --------------------------------------------------------------------------- #
def make_strategy(options, kind: JacobianKind) -> _Strategy:
    """Linear-solve strategy selected by `options.linsolve`."""
    choice = options.linsolve
    if kind is JacobianKind.OPERATOR and choice != "gmres":
        logger.info("matrix-free Jacobian: linear solver %r replaced by "
                    "'gmres'", choice)
        choice = "gmres"
    if choice == "lu":
        return DirectSolver(options.singular_tol,
                            num_threads=options.blas_threads)
    if choice == "gmres":
        return KrylovSolver(options.krylov_rtol, options.krylov_atol,
                            options.krylov_maxiters, options.krylov_restart,
                            options.preconditioner, options.precond_side,
                            num_threads=options.blas_threads)
    return PETScSolver(options.krylov_rtol, options.krylov_atol,
                       options.krylov_maxiters, options.petsc_pc,
                       num_threads=options.blas_threads)


def build_solve_fns(strategy: _Strategy, buffer: JacobianBuffer, mass: Any,
                    shifts: Sequence) -> List[SolveFn]:
    """
    Return closures ``solve_fns[k](b)`` solving  (shifts[k] · M - J) x = b,
    each prepared once (factorized / preconditioned) for the current J and h.
    """
    return [strategy.factorize(iteration_matrix(buffer, mass, s))
            for s in shifts]
