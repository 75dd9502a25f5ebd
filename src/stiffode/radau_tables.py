# radau_tables.py
"""
Coefficients of the 3-stage Radau IIA method (order 5).

The stage matrix A is diagonalised as  A⁻¹ = T Λ TI  with one real eigenvalue
MU_REAL and a complex pair MU_COMPLEX, conj(MU_COMPLEX); the Newton system then
splits into one real and one complex linear system of size n.
"""
import math
from typing import Tuple

import torch

S6 = math.sqrt(6.0)

C = torch.tensor([(4.0 - S6) / 10.0, (4.0 + S6) / 10.0, 1.0],
                 dtype=torch.float64)
E = torch.tensor([-13.0 - 7.0 * S6, -13.0 + 7.0 * S6, -1.0],
                 dtype=torch.float64) / 3.0

MU_REAL = 3.0 + 3.0 ** (2.0 / 3.0) - 3.0 ** (1.0 / 3.0)
MU_COMPLEX = (3.0 + 0.5 * (3.0 ** (1.0 / 3.0) - 3.0 ** (2.0 / 3.0))
              - 0.5j * (3.0 ** (5.0 / 6.0) + 3.0 ** (7.0 / 6.0)))

T = torch.tensor([
    [0.09443876248897524, -0.14125529502095421, 0.03002919410514742],
    [0.25021312296533332, 0.20412935229379994, -0.38294211275726192],
    [1.0, 1.0, 0.0]], dtype=torch.float64)
TI = torch.tensor([
    [4.17871859155190428, 0.32768282076106237, 0.52337644549944951],
    [-4.17871859155190428, -0.32768282076106237, 0.47662355450055044],
    [0.50287263494578682, -2.57192694985560522, 0.59603920482822492]],
    dtype=torch.float64)
TI_REAL = TI[0]
TI_COMPLEX = TI[1] + 1j * TI[2]

# dense output: y(t_old + x h) = y_old + Z.T @ P @ [x, x², x³]
P = torch.tensor([
    [13.0 / 3.0 + 7.0 * S6 / 3.0, -23.0 / 3.0 - 22.0 * S6 / 3.0,
     10.0 / 3.0 + 5.0 * S6],
    [13.0 / 3.0 - 7.0 * S6 / 3.0, -23.0 / 3.0 + 22.0 * S6 / 3.0,
     10.0 / 3.0 - 5.0 * S6],
    [1.0 / 3.0, -8.0 / 3.0, 10.0 / 3.0]], dtype=torch.float64)

ORDER = 5
ERROR_ORDER = 3          # order of the embedded estimate


# --------------------------------------------------------------------------- #
def _vandermonde(c: torch.Tensor, power: int) -> torch.Tensor:
    """Row-wise Vandermonde: V[i,j] = c[i]**j  for j=0…power-1."""
    exps = torch.arange(power, dtype=c.dtype)
    return c.unsqueeze(1).pow(exps)


def _integral_vandermonde(c: torch.Tensor) -> torch.Tensor:
    """Q[i,j] = c[i]**(j+1)/(j+1)  (∫₀ᶜ τʲ dτ)."""
    exps = torch.arange(1, c.numel() + 1, dtype=c.dtype)
    return c.unsqueeze(1).pow(exps) / exps


def butcher_matrix(c: torch.Tensor = C) -> torch.Tensor:
    """Collocation stage matrix A for abscissae `c`."""
    return _integral_vandermonde(c) @ torch.linalg.inv(_vandermonde(c, c.numel()))


def shifts(h: float) -> Tuple[float, complex]:
    """Shifts σ of the two iteration matrices σ M - J."""
    return MU_REAL / h, MU_COMPLEX / h
