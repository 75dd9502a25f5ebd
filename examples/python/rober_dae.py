#!/usr/bin/env python3
# rober_dae.py  –  Robertson kinetics as an index-1 DAE, Radau5 vs BDF2

import argparse
import logging

import torch

from stiffode import ProblemSpec, integrate

p = argparse.ArgumentParser()
p.add_argument('--tf', type=float, default=4e5)
p.add_argument('--rtol', type=float, default=1e-6)
p.add_argument('--atol', type=float, default=1e-10)
p.add_argument('--method', choices=['radau5', 'bdf2'], default='radau5')
p.add_argument('-v', '--verbose', action='store_true')
args = p.parse_args()

logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                    format='%(name)s: %(message)s')

k1, k2, k3 = 0.04, 3e7, 1e4

def rober(u, p, t):
    y1, y2, y3 = u[0], u[1], u[2]
    return torch.stack([-k1*y1 + k3*y2*y3,
                        k1*y1 - k3*y2*y3 - k2*y2**2,
                        y1 + y2 + y3 - 1.0])            # algebraic row

M = torch.diag(torch.tensor([1.0, 1.0, 0.0], dtype=torch.float64))
prob = ProblemSpec(rober, [1.0, 0.0, 0.0], (0.0, args.tf), mass_matrix=M)

saveat = [0.0] + [4.0 * 10**k for k in range(-5, 6) if 4.0 * 10**k <= args.tf]
traj = integrate(prob, method=args.method, reltol=args.rtol,
                 abstol=args.atol, saveat=saveat)

for t, u in traj:
    print(f"t={t:10.3e}  y1={u[0]:.6e}  y2={u[1]:.6e}  y3={u[2]:.6e}  "
          f"sum-1={float(u.sum()) - 1.0:+.1e}")
print(f"status={traj.status.value}  stats={traj.stats}")
