# gmres.py
"""
Restarted GMRES in plain torch, real or complex, left or right preconditioned.

Works on anything with a matrix-vector product, so the same routine serves
explicit torch matrices, scipy matrices wrapped in a closure and matrix-free
iteration operators.
"""
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import torch


@dataclass
class GmresInfo:
    converged:  bool
    iterations: int      # total inner (Arnoldi) iterations
    residual:   float    # last residual norm (preconditioned if side="left")
    target:     float


def _givens(a, b):
    """c, s, r with [c s; -conj(s) c] @ [a; b] = [r; 0] and c real."""
    abs_a, abs_b = abs(a), abs(b)
    if abs_b == 0.0:
        return 1.0, 0.0 * a, a
    if abs_a == 0.0:
        return 0.0, b.conjugate() / abs_b, abs_b
    d = math.hypot(abs_a, abs_b)
    phase = a / abs_a
    return abs_a / d, phase * b.conjugate() / d, phase * d


def gmres(matvec: Callable[[torch.Tensor], torch.Tensor],
          b: torch.Tensor,
          x0: Optional[torch.Tensor] = None,
          *,
          rtol: float = 1e-6,
          atol: float = 0.0,
          restart: int = 30,
          maxiter: int = 200,
          precond: Optional[Callable[[torch.Tensor], torch.Tensor]] = None,
          side: str = "right") -> Tuple[torch.Tensor, GmresInfo]:
    """
    Solve A x = b.

    Parameters
    ----------
    matvec  : v ↦ A v
    b       : right-hand side (n,)
    x0      : initial guess (zeros when None)
    rtol    : stop when ||r|| <= max(rtol·||b||, atol)
    restart : Krylov subspace dimension between restarts
    maxiter : cap on the total number of inner iterations
    precond : v ↦ P⁻¹ v
    side    : "right" (A P⁻¹ y = b, true residual) or "left" (P⁻¹ A x = P⁻¹ b)

    Returns
    -------
    x, info : the last iterate and a `GmresInfo`
    """
    if side not in ("left", "right"):
        raise ValueError("side must be 'left' or 'right'")
    n = b.numel()
    dtype = b.dtype
    P = precond if precond is not None else (lambda v: v)
    left = side == "left" and precond is not None

    x = torch.zeros_like(b) if x0 is None else x0.detach().clone().to(dtype)
    bnorm = float(torch.linalg.norm(P(b) if left else b))
    target = max(rtol * bnorm, atol)
    if bnorm == 0.0:
        return torch.zeros_like(b), GmresInfo(True, 0, 0.0, target)

    m = max(1, min(restart, n))
    tiny = torch.finfo(b.real.dtype if b.is_complex() else dtype).eps
    total = 0

    while True:
        r = b - matvec(x)
        if left:
            r = P(r)
        beta = float(torch.linalg.norm(r))
        if beta <= target:
            return x, GmresInfo(True, total, beta, target)
        if total >= maxiter:
            return x, GmresInfo(False, total, beta, target)

        V = torch.zeros(m + 1, n, dtype=dtype)
        H = torch.zeros(m + 1, m, dtype=dtype)
        g = [beta] + [0.0] * m
        rot = []
        V[0] = r / beta
        k_used = 0

        for k in range(m):
            if total >= maxiter:
                break
            w = P(matvec(V[k])) if left else matvec(P(V[k]))
            total += 1

            # modified Gram-Schmidt
            for i in range(k + 1):
                hik = torch.vdot(V[i], w)
                H[i, k] = hik
                w = w - hik * V[i]
            h_next = float(torch.linalg.norm(w))
            H[k + 1, k] = h_next

            col = [H[i, k].item() for i in range(k + 2)]
            for i, (c, s) in enumerate(rot):
                col[i], col[i + 1] = (c * col[i] + s * col[i + 1],
                                      -s.conjugate() * col[i] + c * col[i + 1])
            c, s, rkk = _givens(col[k], col[k + 1])
            rot.append((c, s))
            col[k], col[k + 1] = rkk, 0.0
            for i in range(k + 2):
                H[i, k] = col[i]
            g[k], g[k + 1] = c * g[k], -s.conjugate() * g[k]
            k_used = k + 1

            if abs(g[k + 1]) <= target or h_next <= tiny * beta:
                break                              # converged or breakdown
            V[k + 1] = w / h_next

        if k_used == 0:
            return x, GmresInfo(False, total, beta, target)

        R = H[:k_used, :k_used]
        rhs = torch.tensor(g[:k_used], dtype=dtype).unsqueeze(-1)
        y = torch.linalg.solve_triangular(R, rhs, upper=True).squeeze(-1)
        dx = V[:k_used].T @ y
        x = x + (dx if left or precond is None else P(dx))
