"""Evaluation counters.

Every public evaluation of a problem increments exactly one counter. The
counters are plain mutable Python state, kept outside of any traced JAX
computation.
"""

from collections.abc import Iterable, Mapping
from types import MappingProxyType

PROBLEM_COUNTERS = (
    "neval_obj",
    "neval_grad",
    "neval_cons",
    "neval_jac",
    "neval_jprod",
    "neval_jtprod",
    "neval_hess",
    "neval_hprod",
)

NLS_COUNTERS = (
    "neval_residual",
    "neval_jac_residual",
    "neval_jprod_residual",
    "neval_jtprod_residual",
    "neval_hess_residual",
    "neval_jhess_residual",
    "neval_hprod_residual",
)


class Counters:
    """Per-kind evaluation counts.

    Attributes:
        kinds: The evaluation kinds tracked by this instance.
    """

    def __init__(self, kinds: Iterable[str] = PROBLEM_COUNTERS):
        self.kinds = tuple(kinds)
        self._counts = dict.fromkeys(self.kinds, 0)

    def increment(self, kind: str, by: int = 1) -> None:
        if kind not in self._counts:
            raise KeyError(f"Unknown evaluation counter {kind!r}")
        self._counts[kind] += by

    def __getitem__(self, kind: str) -> int:
        return self._counts[kind]

    def __contains__(self, kind: object) -> bool:
        return kind in self._counts

    def snapshot(self) -> Mapping[str, int]:
        """Read-only copy of the current counts."""
        return MappingProxyType(dict(self._counts))

    def total(self) -> int:
        return sum(self._counts.values())

    def reset(self) -> None:
        for kind in self._counts:
            self._counts[kind] = 0

    def __repr__(self) -> str:
        nonzero = {k: v for k, v in self._counts.items() if v}
        return f"{type(self).__name__}({nonzero})"
