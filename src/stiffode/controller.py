# controller.py
"""
Adaptive step-size control and Jacobian refresh policy.

Step-size factors follow the predictive controller of Gustafsson as used in
RADAU5 and scipy's Radau: after an accepted step the error history of the two
last steps enters the factor, which damps oscillations of h on stiff problems.
"""
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import torch

from .errors import StepFailure
from .options import SolverOptions

logger = logging.getLogger(__name__)


class RejectReason(Enum):
    ERROR_TEST   = "error test"
    NEWTON       = "newton"
    LINEAR_SOLVE = "linear solve"


@dataclass
class StepDecision:
    accepted: bool
    h_next:   float
    reason:   Optional[RejectReason] = None
    hold:     bool = False             # h (and the factorization) kept


def error_norm(err_vec: torch.Tensor, y: torch.Tensor, y_new: torch.Tensor,
               atol: float, rtol: float) -> float:
    """RMS of err / (atol + rtol·max(|y|, |y_new|))."""
    scale = atol + rtol * torch.maximum(y.abs(), y_new.abs())
    return float(torch.linalg.norm(err_vec / scale)) / math.sqrt(err_vec.numel())


def predict_factor(h: float, h_old: Optional[float], err: float,
                   err_old: Optional[float], k: float) -> float:
    """Gustafsson:  min(1, (h/h_old)(err_old/err)^k) · err^-k."""
    if err == 0.0:
        return math.inf
    if err_old is None or h_old is None:
        multiplier = 1.0
    else:
        multiplier = h / h_old * (err_old / err) ** k
    return min(1.0, multiplier) * err ** -k


class StepController:
    """
    Parameters
    ----------
    options : SolverOptions
    t0, tf  : integration interval
    """

    def __init__(self, options: SolverOptions, t0: float, tf: float):
        self.rtol = options.reltol
        self.atol = options.abstol
        self.tf = tf
        span = tf - t0
        self.hmax = options.dt_max if options.dt_max is not None else \
            (span if span > 0 else math.inf)
        self.dt_min = options.dt_min or 0.0
        self.safety = options.safety
        self.min_factor = options.min_factor
        self.max_factor = options.max_factor
        self.hold_band = options.hold_band
        self.max_rejects = options.max_rejects
        self.k_max = options.newton_maxiters

        self.refresh_steps = options.jac_refresh_steps
        self.refresh_ratio = options.jac_refresh_ratio
        self.refresh_rate = options.jac_refresh_rate
        self.fail_refresh = options.newton_fail_refresh

        self.rejects = 0                 # consecutive
        self.h_old: Optional[float] = None
        self.err_old: Optional[float] = None

    # ---- bounds ---------------------------------------------------------
    def hmin(self, t: float) -> float:
        return max(self.dt_min, 10.0 * math.ulp(t))

    def propose_step(self, ctx) -> float:
        """Step to attempt from ctx.t: ctx.h clamped to [hmin, hmax] and tf."""
        h = min(max(ctx.h, self.hmin(ctx.t)), self.hmax)
        remaining = ctx.tf - ctx.t
        # never leave a sliver shorter than hmin in front of tf
        if h >= remaining or remaining - h < self.hmin(ctx.tf):
            h = remaining
        return h

    def _clamp(self, h: float, t: float) -> float:
        return min(max(h, self.hmin(t)), self.hmax)

    def _check(self, h_next: float, t: float, why: str) -> None:
        if self.rejects > self.max_rejects:
            raise StepFailure(f"{self.rejects} consecutive step rejections "
                              f"at t={t} (last: {why})", t=t, h=h_next)
        if h_next < self.hmin(t) and h_next < self.tf - t:
            raise StepFailure(f"step size {h_next:.3e} fell below the "
                              f"minimum {self.hmin(t):.3e} at t={t} "
                              f"({why})", t=t, h=h_next)

    # ---- decisions ------------------------------------------------------
    def accept_or_reject(self, err: float, h: float, *, n_iter: int,
                         order: int, t: float, after_reject: bool = False,
                         allow_hold: bool = True) -> StepDecision:
        """
        Error test and next step size.

        Parameters
        ----------
        err          : weighted RMS error of the step (<= 1 passes)
        h            : size of the attempted step
        n_iter       : Newton iterations the step needed
        order        : order of the error estimate (exponent 1/(order+1))
        after_reject : the previous attempt from this t was rejected
        allow_hold   : permit keeping h inside `hold_band`
        """
        k = 1.0 / (order + 1)
        safety = self.safety * (2 * self.k_max + 1) / (2 * self.k_max + n_iter)
        factor = predict_factor(h, self.h_old, err, self.err_old, k)

        if err > 1.0:
            self.rejects += 1
            h_next = h * max(self.min_factor, safety * factor)
            self._check(h_next, t, RejectReason.ERROR_TEST.value)
            logger.debug("t=%.6g h=%.3e rejected: err=%.3e → h=%.3e",
                         t, h, err, h_next)
            return StepDecision(False, h_next, RejectReason.ERROR_TEST)

        factor = min(self.max_factor, safety * factor)
        if after_reject:
            factor = min(1.0, factor)
        self.rejects = 0
        self.h_old = h
        self.err_old = max(err, 1e-10)

        lo, hi = self.hold_band
        if allow_hold and lo <= factor <= hi:
            return StepDecision(True, h, None, hold=True)
        return StepDecision(True, self._clamp(h * factor, t + h))

    def reject_failed_solve(self, h: float, factor: float,
                            reason: RejectReason, t: float) -> StepDecision:
        """Reject after a Newton or linear-solve failure, h ← factor·h."""
        self.rejects += 1
        h_next = h * factor
        self._check(h_next, t, reason.value)
        logger.debug("t=%.6g h=%.3e rejected (%s) → h=%.3e",
                     t, h, reason.value, h_next)
        return StepDecision(False, h_next, reason)

    # ---- Jacobian refresh -----------------------------------------------
    def jacobian_due(self, ctx, newton=None) -> bool:
        """Refresh triggers that do not depend on the next step size."""
        if self.refresh_steps is not None and \
                ctx.steps_since_jac >= self.refresh_steps:
            return True
        if newton is not None and newton.n_iter > 2 and \
                newton.rate > self.refresh_rate:
            return True
        return ctx.newton_failures >= self.fail_refresh

    def maybe_mark_stale(self, ctx, buffer, h_next: float,
                         newton=None) -> bool:
        """Mark the Jacobian buffer stale when a refresh trigger fires."""
        due = self.jacobian_due(ctx, newton)
        if not due and self.refresh_ratio is not None and ctx.h_jac:
            q = h_next / ctx.h_jac
            due = q > self.refresh_ratio or q < 1.0 / self.refresh_ratio
        if due and not buffer.is_stale():
            buffer.mark_stale()
            logger.debug("t=%.6g Jacobian marked stale", ctx.t)
        return due
