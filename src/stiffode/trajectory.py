# trajectory.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Tuple

import torch


class ReturnCode(Enum):
    SUCCESS   = "success"
    CANCELLED = "cancelled"
    FAILED    = "failed"


@dataclass
class Trajectory:
    """Append-only time samples of the solution plus the run outcome."""

    t:      List[float]        = field(default_factory=list)
    u:      List[torch.Tensor] = field(default_factory=list)
    status: ReturnCode         = ReturnCode.SUCCESS
    error:  Optional[BaseException] = None
    stats:  dict               = field(default_factory=dict)

    def append(self, t: float, u: torch.Tensor) -> None:
        self.t.append(float(t))
        self.u.append(u)

    @property
    def success(self) -> bool:
        return self.status is ReturnCode.SUCCESS

    def as_tensors(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """(t, u) with t of shape (m,) and u of shape (m, n)."""
        t = torch.tensor(self.t, dtype=torch.float64)
        if not self.u:
            return t, torch.empty(0, 0, dtype=torch.float64)
        return t, torch.stack(self.u)

    def __len__(self) -> int:
        return len(self.t)

    def __iter__(self) -> Iterator[Tuple[float, torch.Tensor]]:
        return iter(zip(self.t, self.u))

    def __getitem__(self, i) -> Tuple[float, torch.Tensor]:
        return self.t[i], self.u[i]
