import numpy as np
import pytest
import scipy.sparse as sp
import torch

from stiffode import ProblemSpec, band_prototype


# --- right-hand sides ------------------------------------------------------

def rober(u, p, t):
    k1, k2, k3 = p
    y1, y2, y3 = u[0], u[1], u[2]
    return torch.stack([
        -k1 * y1 + k3 * y2 * y3,
        k1 * y1 - k3 * y2 * y3 - k2 * y2 ** 2,
        k2 * y2 ** 2,
    ])


def rober_dae(u, p, t):
    k1, k2, k3 = p
    y1, y2, y3 = u[0], u[1], u[2]
    return torch.stack([
        -k1 * y1 + k3 * y2 * y3,
        k1 * y1 - k3 * y2 * y3 - k2 * y2 ** 2,
        y1 + y2 + y3 - 1.0,
    ])


def rober_jac(u, p, t):
    k1, k2, k3 = p
    y1, y2, y3 = float(u[0]), float(u[1]), float(u[2])
    return torch.tensor([
        [-k1, k3 * y3, k3 * y2],
        [k1, -k3 * y3 - 2 * k2 * y2, -k3 * y2],
        [0.0, 2 * k2 * y2, 0.0],
    ], dtype=torch.float64)


def brusselator_1d(n):
    """Diffusive 1-D Brusselator on n cells; state [u_1..u_n, v_1..v_n]."""
    A, B, alpha = 1.0, 3.0, 0.02
    dx2 = (1.0 / (n + 1)) ** 2

    def lap(w, bc):
        wp = torch.cat([torch.tensor([bc], dtype=w.dtype), w,
                        torch.tensor([bc], dtype=w.dtype)])
        return (wp[:-2] - 2 * wp[1:-1] + wp[2:]) / dx2

    def f(y, p, t):
        u, v = y[:n], y[n:]
        du = A + u * u * v - (B + 1) * u + alpha * lap(u, 1.0)
        dv = B * u - u * u * v + alpha * lap(v, 3.0)
        return torch.cat([du, dv])

    x = torch.arange(1, n + 1, dtype=torch.float64) / (n + 1)
    u0 = torch.cat([1.0 + torch.sin(2 * np.pi * x), torch.full((n,), 3.0,
                                                              dtype=torch.float64)])
    tri = band_prototype(n, 1, 1)
    eye = sp.identity(n, format="csr")
    proto = sp.bmat([[tri, eye], [eye, tri]], format="csr")
    return f, u0, proto


# --- fixtures --------------------------------------------------------------

ROBER_K = (0.04, 3e7, 1e4)
ROBER_U0 = (1.0, 0.0, 0.0)


@pytest.fixture
def rober_problem():
    return ProblemSpec(rober, ROBER_U0, (0.0, 1e5),
                       p=ROBER_K)


@pytest.fixture
def rober_dae_problem():
    return ProblemSpec(rober_dae, ROBER_U0, (0.0, 1e5),
                       p=ROBER_K,
                       mass_matrix=torch.diag(torch.tensor([1.0, 1.0, 0.0])))


@pytest.fixture
def linear_system():
    """u' = A u with a stiff, diagonalizable A; exact solution via expm."""
    A = torch.tensor([[-1.0, 0.5, 0.0],
                      [0.0, -100.0, 1.0],
                      [0.0, 0.0, -1000.0]], dtype=torch.float64)
    u0 = torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)

    def f(u, p, t):
        return A @ u

    def exact(t):
        return torch.linalg.matrix_exp(A * t) @ u0

    return A, u0, f, exact


@pytest.fixture
def brusselator():
    return brusselator_1d(16)
