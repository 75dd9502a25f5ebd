import math

import pytest
import torch

from stiffode import (NewtonStatus, RejectReason, SolverOptions,
                      StepController, StepFailure, allocate,
                      simplified_newton)
from stiffode.simplified_newton import newton_tolerance
from stiffode.stepcontext import StepContext


def _abs(x):
    return float(x.abs().max())


# --- simplified Newton -----------------------------------------------------

def test_newton_converges_with_frozen_slope():
    # x^2 = 2 with the derivative frozen at x = 1.4
    res = simplified_newton(lambda x: (2.0 - x * x) / 2.8,
                            torch.tensor([1.0], dtype=torch.float64), _abs,
                            tol=1e-10, max_iters=20)
    assert res.status is NewtonStatus.CONVERGED
    assert res.converged
    assert abs(float(res.x) - math.sqrt(2.0)) < 1e-8
    assert res.rate < 0.1
    assert res.h_factor == 1.0


def test_newton_divergence():
    res = simplified_newton(lambda x: x + 1.0,
                            torch.tensor([1.0], dtype=torch.float64), _abs,
                            tol=1e-6)
    assert res.status is NewtonStatus.DIVERGED
    assert res.h_factor == 0.5
    assert res.rate >= 0.99


def test_non_finite_residual_is_divergence():
    res = simplified_newton(lambda x: None,
                            torch.zeros(2, dtype=torch.float64), _abs, tol=1e-6)
    assert res.status is NewtonStatus.DIVERGED
    assert res.n_iter == 0


def test_slow_contraction_predicts_failure():
    res = simplified_newton(lambda x: -0.1 * x,
                            torch.tensor([1.0], dtype=torch.float64), _abs,
                            tol=1e-3, max_iters=7)
    assert res.status is NewtonStatus.MAX_ITER_EXCEEDED
    assert 0.0 < res.h_factor < 1.0
    assert res.rate == pytest.approx(0.9)


def test_newton_tolerance_formula():
    eps = torch.finfo(torch.float64).eps
    assert newton_tolerance(1e-3, eps) == pytest.approx(0.03)
    assert newton_tolerance(1e-6, eps) == pytest.approx(1e-3)


# --- step controller -------------------------------------------------------

def _ctx(t=0.0, h=0.1, tf=1.0):
    y = torch.ones(2, dtype=torch.float64)
    return StepContext(t=t, y=y, h=h, tf=tf, f=torch.zeros_like(y))


def test_accept_grows_step():
    ctrl = StepController(SolverOptions(), 0.0, 10.0)
    dec = ctrl.accept_or_reject(1e-4, 0.1, n_iter=1, order=3, t=0.0)
    assert dec.accepted
    assert dec.h_next == pytest.approx(0.9)        # 0.9 · (1e-4)^(-1/4)


def test_growth_capped_by_max_factor():
    ctrl = StepController(SolverOptions(max_factor=5.0), 0.0, 10.0)
    dec = ctrl.accept_or_reject(0.0, 0.1, n_iter=1, order=3, t=0.0)
    assert dec.h_next == pytest.approx(0.5)


def test_reject_shrinks_step():
    ctrl = StepController(SolverOptions(), 0.0, 10.0)
    dec = ctrl.accept_or_reject(10.0, 0.1, n_iter=1, order=3, t=0.0)
    assert not dec.accepted
    assert dec.reason is RejectReason.ERROR_TEST
    assert 0.02 <= dec.h_next < 0.1


def test_hold_band_keeps_step():
    ctrl = StepController(SolverOptions(), 0.0, 10.0)
    err = (0.9 / 1.1) ** 4                        # factor 1.1
    dec = ctrl.accept_or_reject(err, 0.1, n_iter=1, order=3, t=0.0)
    assert dec.accepted and dec.hold and dec.h_next == 0.1

    ctrl = StepController(SolverOptions(), 0.0, 10.0)
    dec = ctrl.accept_or_reject(err, 0.1, n_iter=1, order=3, t=0.0,
                                allow_hold=False)
    assert not dec.hold
    assert dec.h_next == pytest.approx(0.11)


def test_too_many_rejections():
    ctrl = StepController(SolverOptions(max_rejects=3), 0.0, 10.0)
    for _ in range(3):
        ctrl.reject_failed_solve(1.0, 0.9, RejectReason.NEWTON, 0.0)
    with pytest.raises(StepFailure):
        ctrl.reject_failed_solve(1.0, 0.9, RejectReason.NEWTON, 0.0)


def test_step_below_minimum():
    ctrl = StepController(SolverOptions(dt_min=1e-3), 0.0, 10.0)
    with pytest.raises(StepFailure) as exc:
        ctrl.reject_failed_solve(1e-3, 0.5, RejectReason.LINEAR_SOLVE, 2.0)
    assert exc.value.t == 2.0


def test_propose_step_clips_to_tf():
    ctrl = StepController(SolverOptions(), 0.0, 1.0)
    assert ctrl.propose_step(_ctx(t=0.95, h=0.5)) == pytest.approx(0.05)
    assert ctrl.propose_step(_ctx(t=0.0, h=0.01)) == 0.01
    ctrl = StepController(SolverOptions(dt_max=0.2), 0.0, 1.0)
    assert ctrl.propose_step(_ctx(t=0.0, h=0.5)) == 0.2


def test_jacobian_refresh_triggers():
    opts = SolverOptions(jac_refresh_steps=5, jac_refresh_ratio=10.0)
    ctrl = StepController(opts, 0.0, 1.0)
    buf = allocate(2)

    ctx = _ctx()
    ctx.h_jac = 0.1
    buf.mark_fresh()
    assert not ctrl.maybe_mark_stale(ctx, buf, 0.2)
    assert not buf.is_stale()

    assert ctrl.maybe_mark_stale(ctx, buf, 2.0)             # ratio 20
    assert buf.is_stale()

    buf.mark_fresh()
    ctx.steps_since_jac = 5
    assert ctrl.maybe_mark_stale(ctx, buf, 0.1)
    assert buf.is_stale()

    buf.mark_fresh()
    ctx.steps_since_jac = 0
    ctx.newton_failures = 2
    assert ctrl.maybe_mark_stale(ctx, buf, 0.1)


# --- Radau IIA coefficients -------------------------------------------------

def test_radau_stage_matrix_eigenvalues():
    from stiffode import radau_tables as rt

    A = rt.butcher_matrix()
    # stiffly accurate: last row are the quadrature weights
    assert float(A[-1].sum()) == pytest.approx(1.0)
    torch.testing.assert_close(A.sum(dim=1), rt.C)

    ev = torch.linalg.eigvals(torch.linalg.inv(A))
    real = ev[ev.imag.abs() < 1e-8].real
    cplx = ev[ev.imag > 1e-8]
    assert float(real[0]) == pytest.approx(rt.MU_REAL, rel=1e-10)
    assert complex(cplx[0]) == pytest.approx(rt.MU_COMPLEX.conjugate(),
                                             rel=1e-10)


def test_radau_transformation_diagonalizes():
    from stiffode import radau_tables as rt

    Ainv = torch.linalg.inv(rt.butcher_matrix())
    L = rt.TI @ Ainv @ rt.T
    mu_c = rt.MU_COMPLEX
    expected = torch.tensor([[rt.MU_REAL, 0.0, 0.0],
                             [0.0, mu_c.real, -mu_c.imag],
                             [0.0, mu_c.imag, mu_c.real]], dtype=torch.float64)
    torch.testing.assert_close(L, expected, rtol=1e-8, atol=1e-8)
