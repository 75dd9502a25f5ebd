# bdf2_step.py
"""
Variable-step BDF-2 kernel, started with backward Euler.

With  ω = h / h_prev  the corrector solves

    M (y - ψ) = h β f(t + h, y),
    ψ = a1 y_n - a2 y_{n-1},  a1 = (1+ω)²/(1+2ω),  a2 = ω²/(1+2ω),
    β = (1+ω)/(1+2ω),

so only ONE shifted system, σ = 1/(h β), is factorized per step.  Backward
Euler (ψ = y_n, β = 1) is used until three history points exist.
"""
import logging
import math
from typing import List

import torch

from .buffers import BufferManager
from .errors import LinearSolveError
from .problem import ProblemSpec
from .simplified_newton import NewtonResult, NewtonStatus, simplified_newton
from .stepcontext import StepAttempt, StepContext

logger = logging.getLogger(__name__)


def _rms(x: torch.Tensor) -> float:
    return float(torch.linalg.norm(x)) / math.sqrt(x.numel())


def _lagrange(ts: List[float], ys: List[torch.Tensor], t) -> torch.Tensor:
    """Interpolating polynomial through (ts, ys) evaluated at scalar t."""
    out = torch.zeros_like(ys[0])
    for i, (ti, yi) in enumerate(zip(ts, ys)):
        w = 1.0
        for j, tj in enumerate(ts):
            if j != i:
                w *= (t - tj) / (ti - tj)
        out = out + w * yi
    return out


class Bdf2Kernel:
    """BDF-2 stage algebra, Milne-type error estimate, Lagrange dense output."""

    name = "bdf2"
    order = 2
    initial_step_order = 1

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

        # accepted history, oldest first (at most 3 points)
        self._ts: List[float] = [problem.t0]
        self._ys: List[torch.Tensor] = [problem.u0.clone()]
        self._dense_ts: List[float] = []
        self._dense_ys: List[torch.Tensor] = []
        # a DAE started off its constraint jumps in the algebraic components on
        # the first step; that jump is kept out of the error estimate
        self._diff_proj = problem.differential_projector()
        self._started = False

    # ---- coefficients ---------------------------------------------------
    @property
    def current_order(self) -> int:
        return 2 if len(self._ts) >= 3 else 1

    @property
    def error_order(self) -> int:
        return self.current_order

    def _coefficients(self, h: float):
        """(a1, a2, β) of the corrector for step h."""
        if self.current_order == 1:
            return 1.0, 0.0, 1.0
        w = h / (self._ts[-1] - self._ts[-2])
        d = 1.0 + 2.0 * w
        return (1.0 + w) ** 2 / d, w * w / d, (1.0 + w) / d

    def shifts(self, h: float):
        return (1.0 / (h * self._coefficients(h)[2]),)

    # ---- predictor / error constant -------------------------------------
    def _predict(self, ctx: StepContext, h: float) -> torch.Tensor:
        t_new = ctx.t + h
        if len(self._ts) == 1:
            f0 = ctx.f
            M = self.problem.mass_matrix
            if M is not None:
                f0 = torch.linalg.lstsq(M, f0.unsqueeze(-1)).solution \
                    .squeeze(-1)
            return ctx.y + h * f0
        return _lagrange(self._ts, self._ys, t_new)

    def _error_constant(self, h: float) -> float:
        hp = self._ts[-1] - self._ts[-2] if len(self._ts) >= 2 else 0.0
        if self.current_order == 1:
            return h / (2.0 * h + hp)
        hpp = self._ts[-2] - self._ts[-3]
        a = h * (h + hp) / (2.0 * h + hp)
        return a / (a + (h + hp + hpp))

    # ------------------------------------------------------------------ #
    def attempt(self, ctx: StepContext, h: float, solve_fns) -> StepAttempt:
        prob = self.problem
        y, t_new = ctx.y, ctx.t + h
        a1, a2, _ = self._coefficients(h)
        psi = torch.mul(y, a1, out=self.buffers.scratch("bdf2_psi", y.shape,
                                                         y.dtype))
        if a2 != 0.0:
            psi.sub_(a2 * self._ys[-2])
        (sigma,) = self.shifts(h)
        (solve,) = solve_fns
        M = prob.mass_apply
        y_pred = self._predict(ctx, h)
        scale = self.atol + y.abs() * self.rtol

        def correction(x):
            F = prob.rhs(x, t_new)
            self.nfev += 1
            if not bool(torch.isfinite(F).all()):
                return None
            return solve(F - sigma * M(x - psi)).real.to(y.dtype)

        try:
            newton = simplified_newton(
                correction, y_pred, lambda dx: _rms(dx / scale),
                tol=self.tol, max_iters=self.max_iters,
                fac_conv=ctx.fac_conv,
                divergence_threshold=self.divergence, eps=self.eps)
        except LinearSolveError as exc:
            logger.debug("t=%.6g linear solve failed inside Newton: %s",
                         ctx.t, exc)
            failed = NewtonResult(NewtonStatus.DIVERGED, y_pred, 0, 0.0,
                                  ctx.fac_conv, 0.5)
            return StepAttempt(failed, failure=exc)

        if not newton.converged:
            return StepAttempt(newton)

        y_new = newton.x
        err_vec = self._error_constant(h) * (y_new - y_pred)
        if not self._started and self._diff_proj is not None:
            err_vec = self._diff_proj @ err_vec
        scale = self.atol + torch.maximum(y.abs(), y_new.abs()) * self.rtol
        err = _rms(err_vec / scale)
        return StepAttempt(newton, y_new=y_new,
                           err=err if math.isfinite(err) else math.inf)

    # ------------------------------------------------------------------ #
    def accept(self, ctx: StepContext, h: float, attempt: StepAttempt) -> None:
        self._dense_ts = self._ts[-2:] + [ctx.t + h]
        self._dense_ys = self._ys[-2:] + [attempt.y_new.clone()]
        self._ts = self._dense_ts[-3:]
        self._ys = self._dense_ys[-3:]
        if not self._started and self._diff_proj is not None:
            # restart the history from the first point on the constraint
            self._ts, self._ys = self._ts[-1:], self._ys[-1:]
        self._started = True

    def dense(self, t) -> torch.Tensor:
        """Lagrange polynomial through the last (up to 3) accepted points."""
        if not self._dense_ts:
            raise RuntimeError("no accepted step yet")
        if isinstance(t, torch.Tensor) and t.ndim > 0:
            return torch.stack([self.dense(float(s)) for s in t], dim=1)
        return _lagrange(self._dense_ts, self._dense_ys, float(t))
