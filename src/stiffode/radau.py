# radau.py
"""
3-stage Radau IIA step kernel (order 5).

Stage equations for  M y' = f(t, y)  with stage increments Z (3 × n):

    M Z_i = h Σ_j a_ij f(t + c_j h, y + Z_j)

are solved by simplified Newton in the transformed variables W = TI Z, which
decouples the iteration matrix into one real system (σ_r M - J) and one complex
system (σ_c M - J), σ = MU / h.
"""
import logging
import math
from typing import Sequence

import torch

from . import radau_tables as rt
from .buffers import BufferManager
from .errors import LinearSolveError
from .problem import ProblemSpec
from .simplified_newton import NewtonResult, NewtonStatus, simplified_newton
from .stepcontext import StepAttempt, StepContext

logger = logging.getLogger(__name__)


def _rms(x: torch.Tensor) -> float:
    return float(torch.linalg.norm(x)) / math.sqrt(x.numel())


class RadauKernel:
    """Radau IIA (s = 3) stage algebra, error estimate and dense output."""

    name = "radau5"
    order = rt.ORDER
    error_order = rt.ERROR_ORDER
    initial_step_order = rt.ERROR_ORDER

    def __init__(self, problem: ProblemSpec, options, buffers: BufferManager):
        self.problem = problem
        self.buffers = buffers
        self.rtol = options.reltol
        self.atol = options.abstol
        self.max_iters = options.newton_maxiters
        self.divergence = options.newton_divergence
        self.eps = torch.finfo(problem.dtype).eps
        self.tol = options.resolved_newton_tol(self.eps)
        self.nfev = 0

        # dense output of the last accepted step
        self._t_old = None
        self._y_old = None
        self._h = None
        self._Q = None

    def shifts(self, h: float):
        return rt.shifts(h)

    # ------------------------------------------------------------------ #
    def attempt(self, ctx: StepContext, h: float, solve_fns) -> StepAttempt:
        prob = self.problem
        t, y, f0 = ctx.t, ctx.y, ctx.f
        n = y.numel()
        solve_real, solve_complex = solve_fns
        mu_r, mu_c = self.shifts(h)
        tc = [t + float(c) * h for c in rt.C]

        if self._Q is None or ctx.first_step:
            Z0 = self.buffers.scratch("radau_z0", (3, n), y.dtype).zero_()
        else:
            Z0 = self.dense(torch.tensor(tc, dtype=y.dtype)).T - y
        W0 = rt.TI.to(y.dtype) @ Z0

        T = rt.T.to(y.dtype)
        TI_real = rt.TI_REAL.to(y.dtype)
        TI_complex = rt.TI_COMPLEX
        scale = self.atol + y.abs() * self.rtol
        M = prob.mass_apply

        def correction(W):
            Z = T @ W
            F = self.buffers.scratch("radau_f", (3, n), y.dtype)
            for i in range(3):
                F[i] = prob.rhs(y + Z[i], tc[i])
            self.nfev += 3
            if not bool(torch.isfinite(F).all()):
                return None
            f_real = F.T @ TI_real - mu_r * M(W[0])
            f_complex = (F.T.to(TI_complex.dtype) @ TI_complex
                         - mu_c * M(torch.complex(W[1], W[2])))
            dW_real = solve_real(f_real)
            dW_complex = solve_complex(f_complex)
            return torch.stack([dW_real.real.to(y.dtype),
                                dW_complex.real.to(y.dtype),
                                dW_complex.imag.to(y.dtype)])

        try:
            newton = simplified_newton(
                correction, W0, lambda dW: _rms(dW / scale),
                tol=self.tol, max_iters=self.max_iters,
                fac_conv=ctx.fac_conv,
                divergence_threshold=self.divergence, eps=self.eps)
        except LinearSolveError as exc:
            logger.debug("t=%.6g linear solve failed inside Newton: %s",
                         t, exc)
            failed = NewtonResult(NewtonStatus.DIVERGED, W0, 0, 0.0,
                                  ctx.fac_conv, 0.5)
            return StepAttempt(failed, failure=exc)

        if not newton.converged:
            return StepAttempt(newton)

        Z = T @ newton.x
        y_new = y + Z[-1]
        err = self._error(ctx, h, y, y_new, Z, solve_real)
        return StepAttempt(newton, y_new=y_new, err=err, stages=Z)

    def _error(self, ctx, h, y, y_new, Z, solve_real) -> float:
        prob = self.problem
        ZE = Z.T @ rt.E.to(y.dtype) / h
        MZE = prob.mass_apply(ZE)
        scale = self.atol + torch.maximum(y.abs(), y_new.abs()) * self.rtol

        try:
            err_vec = solve_real(ctx.f + MZE).real.to(y.dtype)
            err = _rms(err_vec / scale)
            if err > 1.0 and (ctx.first_step or ctx.last_rejected):
                f_pert = prob.rhs(y + err_vec, ctx.t)
                self.nfev += 1
                if bool(torch.isfinite(f_pert).all()):
                    err_vec = solve_real(f_pert + MZE).real.to(y.dtype)
                    err = _rms(err_vec / scale)
        except LinearSolveError as exc:
            logger.debug("t=%.6g error estimate solve failed: %s", ctx.t, exc)
            return math.inf
        return err if math.isfinite(err) else math.inf

    # ------------------------------------------------------------------ #
    def accept(self, ctx: StepContext, h: float, attempt: StepAttempt) -> None:
        self._t_old = ctx.t
        self._y_old = ctx.y.clone()
        self._h = h
        self._Q = attempt.stages.T @ rt.P.to(ctx.y.dtype)        # (n, 3)

    def dense(self, t) -> torch.Tensor:
        """
        Collocation polynomial of the last accepted step at `t`.

        Parameters
        ----------
        t : scalar → (n,),  1-D tensor / sequence of m times → (n, m)
        """
        if self._Q is None:
            raise RuntimeError("no accepted step yet")
        scalar = not isinstance(t, (torch.Tensor, Sequence)) or \
            (isinstance(t, torch.Tensor) and t.ndim == 0)
        tt = torch.as_tensor(t, dtype=self._y_old.dtype).reshape(-1)
        x = (tt - self._t_old) / self._h
        p = torch.stack([x, x ** 2, x ** 3])                      # (3, m)
        y = self._y_old.unsqueeze(1) + self._Q @ p
        return y[:, 0] if scalar else y
