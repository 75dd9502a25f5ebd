# common_integrator.py
"""
Integrator driver: owns the time loop, wires the step kernel to the Jacobian
constructor, the linear-solve strategy and the step controller, and turns
persistent failures into `IntegrationError`.
"""
import logging
import math
from typing import Optional

import scipy.sparse as sp
import torch

from .bdf2_step import Bdf2Kernel
from .buffers import BufferManager, JacobianKind
from .controller import RejectReason, StepController
from .errors import (IntegrationError, MaxItersExceeded, SingularSystemError,
                     StepFailure)
from .jacobian import JacobianConstructor, kind_for, resolve_mode
from .linsolve import build_solve_fns, make_strategy
from .options import SolverOptions
from .problem import ProblemSpec, ensure_finite
from .radau import RadauKernel
from .stepcontext import StepContext
from .trajectory import ReturnCode, Trajectory

logger = logging.getLogger(__name__)

KERNELS = {"radau5": RadauKernel, "bdf2": Bdf2Kernel}


# --------------------------------------------------------------------------- #
def _rms(x: torch.Tensor) -> float:
    return float(torch.linalg.norm(x)) / math.sqrt(max(1, x.numel()))


def select_initial_step(problem: ProblemSpec, t0: float, y0: torch.Tensor,
                        f0: torch.Tensor, order: int, rtol: float,
                        atol: float) -> float:
    """
    Starting step from the size of y0, y'(t0) and a second derivative
    estimate (Hairer, Nørsett & Wanner, Sec. II.4).  With a mass matrix the
    derivative is the least-squares solution of M y' = f.
    """
    M = problem.mass_matrix

    def deriv(f):
        if M is None:
            return f
        return torch.linalg.lstsq(M, f.unsqueeze(-1)).solution.squeeze(-1)

    scale = atol + y0.abs() * rtol
    yp0 = deriv(f0)
    d0, d1 = _rms(y0 / scale), _rms(yp0 / scale)
    h0 = 1e-6 if d0 < 1e-5 or d1 < 1e-5 else 0.01 * d0 / d1

    f1 = problem.rhs(y0 + h0 * yp0, t0 + h0)
    if not bool(torch.isfinite(f1).all()):
        return 1e-3 * h0
    d2 = _rms((deriv(f1) - yp0) / scale) / h0
    if d1 <= 1e-15 and d2 <= 1e-15:
        h1 = max(1e-6, h0 * 1e-3)
    else:
        h1 = (0.01 / max(d1, d2)) ** (1.0 / (order + 1))
    return min(100.0 * h0, h1)


def _abort_requested(abort) -> bool:
    if abort is None:
        return False
    if hasattr(abort, "is_set"):
        return bool(abort.is_set())
    return bool(abort())


# --------------------------------------------------------------------------- #
class CommonIntegrator:
    """
    Adaptive implicit integrator for  M u' = f(u, p, t)  with pluggable step
    kernels (Radau IIA, BDF-2), Jacobian modes and linear-solve strategies.

    Parameters
    ----------
    problem          : ProblemSpec
    options          : SolverOptions (defaults when None)
    **option_overrides : individual SolverOptions fields
    """

    # ---- construction -----------------------------------------------------
    def __init__(self, problem: ProblemSpec,
                 options: Optional[SolverOptions] = None, **option_overrides):
        self.problem = problem
        self.options = opts = SolverOptions.from_kwargs(options,
                                                        **option_overrides)
        t0, tf = problem.tspan
        if opts.saveat is not None and opts.saveat and (
                opts.saveat[0] < t0 or opts.saveat[-1] > tf):
            raise ValueError(f"saveat points must lie inside [{t0}, {tf}]")

        # explicit build step: Jacobian kind, buffers, constructor, strategy
        self.jac_mode = resolve_mode(problem, opts.jac_mode)
        kind = kind_for(self.jac_mode, problem)
        self.buffers = BufferManager(problem, kind)
        self.jacobian = JacobianConstructor(problem, self.jac_mode,
                                            method=opts.jac_method,
                                            num_threads=opts.num_threads)
        self.strategy = make_strategy(opts, kind)
        self.mass = problem.mass_matrix
        if kind is JacobianKind.SPARSE and self.mass is not None:
            self.mass = sp.csr_matrix(self.mass.numpy())
        self.kernel = KERNELS[opts.method](problem, opts, self.buffers)
        self.controller = StepController(opts, t0, tf)
        logger.debug("%s: n=%d jacobian=%s linsolve=%s dae=%s",
                     self.kernel.name, problem.n, self.jac_mode.value,
                     self.strategy.name, problem.is_dae)

        y0 = self.buffers.u.clone()
        f0 = ensure_finite(problem.rhs(y0, t0), "f at u0", t0)
        self._nfev = 1
        if problem.is_dae and opts.check_dae_init:
            res = problem.algebraic_residual(y0, f0)
            if res > opts.abstol:
                logger.warning("initial condition violates the algebraic "
                               "equations (residual %.3e > abstol %.3e)",
                               res, opts.abstol)

        if opts.dt_init is not None:
            h = opts.dt_init
        elif tf > t0:
            h = select_initial_step(problem, t0, y0, f0,
                                    self.kernel.initial_step_order,
                                    opts.reltol, opts.abstol)
            self._nfev += 1
        else:
            h = 0.0
        self.ctx = StepContext(t=t0, y=y0, h=h, tf=tf, f=f0)

        self.trajectory = Trajectory()
        self._save_idx = 0
        if opts.saveat is None:
            self.trajectory.append(t0, y0.clone())
        else:
            self._emit_saveat(t0, y0)

    # ---- output -----------------------------------------------------------
    def _emit_saveat(self, t_new: float, y_new: torch.Tensor) -> None:
        saveat = self.options.saveat
        while self._save_idx < len(saveat) and saveat[self._save_idx] <= t_new:
            ts = saveat[self._save_idx]
            u = y_new.clone() if ts == t_new else self.kernel.dense(ts)
            self.trajectory.append(ts, u)
            self._save_idx += 1

    def record_output(self) -> None:
        if self.options.saveat is None:
            self.trajectory.append(self.ctx.t, self.ctx.y.clone())
        else:
            self._emit_saveat(self.ctx.t, self.ctx.y)

    # ---- Jacobian / factorization ----------------------------------------
    def _rebuild_jacobian(self, h: float) -> None:
        ctx = self.ctx
        self.jacobian.build(self.buffers.jacobian, ctx.y, self.problem.p,
                            ctx.t, f0=ctx.f)
        ctx.jac_current = True
        ctx.h_jac = h
        ctx.steps_since_jac = 0
        ctx.invalidate_factorization()
        logger.debug("t=%.6g Jacobian rebuilt (%s)", ctx.t,
                     self.jac_mode.value)

    def _reject(self, decision) -> bool:
        ctx = self.ctx
        ctx.h = decision.h_next
        ctx.last_rejected = True
        ctx.stats["nreject"] += 1
        return False

    # ---- main loop --------------------------------------------------------
    def _outer_pass(self) -> bool:
        """Do *one* accept/reject cycle; return True if step accepted."""
        ctx, ctrl = self.ctx, self.controller
        buffer = self.buffers.jacobian
        h = ctrl.propose_step(ctx)

        if buffer.is_stale():
            self._rebuild_jacobian(h)

        shifts = tuple(self.kernel.shifts(h))
        if ctx.solve_fns is None or ctx.fact_shifts != shifts:
            try:
                ctx.solve_fns = build_solve_fns(self.strategy, buffer,
                                                self.mass, shifts)
                ctx.fact_shifts = shifts
            except SingularSystemError as exc:
                ctx.invalidate_factorization()
                logger.debug("t=%.6g singular iteration matrix: %s",
                             ctx.t, exc)
                return self._reject(ctrl.reject_failed_solve(
                    h, 0.5, RejectReason.LINEAR_SOLVE, ctx.t))

        attempt = self.kernel.attempt(ctx, h, ctx.solve_fns)
        newton = attempt.newton
        ctx.stats["nnewton"] += newton.n_iter

        if not newton.converged:
            ctx.newton_failures += 1
            if not ctx.jac_current:
                # retry the same h with a Jacobian at the current point
                buffer.mark_stale()
                factor = 1.0
            else:
                factor = newton.h_factor
            reason = RejectReason.LINEAR_SOLVE if attempt.failure is not None \
                else RejectReason.NEWTON
            decision = ctrl.reject_failed_solve(h, factor, reason, ctx.t)
            ctrl.maybe_mark_stale(ctx, buffer, decision.h_next, newton)
            return self._reject(decision)

        ctx.newton_failures = 0
        ctx.fac_conv = newton.fac_conv
        decision = ctrl.accept_or_reject(
            attempt.err, h, n_iter=newton.n_iter,
            order=self.kernel.error_order, t=ctx.t,
            after_reject=ctx.last_rejected,
            allow_hold=not ctrl.jacobian_due(ctx, newton))
        if not decision.accepted:
            return self._reject(decision)

        # step accepted ----------------------------------------------------
        t_new = ctx.tf if h >= ctx.tf - ctx.t else ctx.t + h
        y_new = attempt.y_new
        f_new = ensure_finite(self.problem.rhs(y_new, t_new),
                              "f at an accepted state", t_new)
        self._nfev += 1
        self.kernel.accept(ctx, h, attempt)

        ctx.t, ctx.y, ctx.f = t_new, y_new, f_new
        self.buffers.commit(y_new)
        ctx.h = decision.h_next
        ctx.jac_current = False
        ctx.steps_since_jac += 1
        ctx.first_step = False
        ctx.last_rejected = False
        ctx.stats["naccept"] += 1
        ctrl.maybe_mark_stale(ctx, buffer, decision.h_next, newton)

        self.record_output()
        return True

    def step_once(self):
        """Advance exactly one accepted step and return (t, y)."""
        if self.ctx.t >= self.ctx.tf:
            return self.ctx.t, self.ctx.y.clone()
        while not self._outer_pass():
            pass
        return self.ctx.t, self.ctx.y.clone()

    def run(self) -> Trajectory:
        """Integrate to tf (or until aborted) and return the trajectory."""
        ctx, opts, traj = self.ctx, self.options, self.trajectory
        try:
            while ctx.t < ctx.tf:
                if _abort_requested(opts.abort):
                    traj.status = ReturnCode.CANCELLED
                    logger.info("integration cancelled at t=%.6g", ctx.t)
                    break
                if ctx.stats["naccept"] >= opts.maxiters:
                    raise MaxItersExceeded(
                        f"maxiters={opts.maxiters} accepted steps reached "
                        f"at t={ctx.t} before tf={ctx.tf}", t=ctx.t, h=ctx.h)
                self._outer_pass()
        except StepFailure as exc:
            traj.status = ReturnCode.FAILED
            traj.error = exc
            traj.stats = self.stats()
            logger.info("integration failed at t=%.6g: %s", ctx.t, exc)
            if opts.raise_on_failure:
                raise IntegrationError(
                    f"integration failed at t={ctx.t}: {exc}", t=ctx.t,
                    u=ctx.y.clone(), reason=exc, trajectory=traj) from exc
            return traj

        traj.stats = self.stats()
        if traj.status is ReturnCode.SUCCESS:
            logger.info("%s reached t=%.6g: %d steps, %d rejected, "
                        "%d f-evals, %d Jacobians, %d factorizations",
                        self.kernel.name, ctx.t, traj.stats["naccept"],
                        traj.stats["nreject"], traj.stats["nfev"],
                        traj.stats["njev"], traj.stats["nlu"])
        return traj

    # ---------------------------------------------------------------------
    def stats(self) -> dict:
        """Counters of the run so far."""
        s = dict(self.ctx.stats)
        op = self.buffers.jacobian.operator
        s["nfev"] = (self._nfev + self.kernel.nfev + self.jacobian.nfev
                     + (op.nfev if op is not None else 0))
        s["njev"] = self.jacobian.njev
        s["nlu"] = self.strategy.nfact
        s["nsolve"] = self.strategy.nsolve
        s["nkrylov"] = self.strategy.nkrylov
        return s


def integrate(problem: ProblemSpec, options: Optional[SolverOptions] = None,
              **option_overrides) -> Trajectory:
    """
    Solve  M u' = f(u, p, t)  over problem.tspan.

    Returns a `Trajectory`; persistent failure raises `IntegrationError`
    unless ``raise_on_failure=False``.  `UserFunctionError` and
    `ShapeMismatchError` always propagate unchanged.
    """
    return CommonIntegrator(problem, options, **option_overrides).run()
