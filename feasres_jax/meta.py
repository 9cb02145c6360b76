"""Problem metadata.

``ProblemMeta`` describes a constrained problem

    min f(x)  s.t.  lcon <= c(x) <= ucon,  lvar <= x <= uvar

and ``NLSMeta`` the residual space of a nonlinear least-squares problem.
Both are equinox Modules: immutable once built, with shapes validated in
``__check_init__``. Array fields are host-side numpy arrays because the
index sets derived from them must be static.
"""

from typing import Optional

import equinox as eqx
import numpy as np
from jaxtyping import Float, Int


def _as_vector(value, size: int, fill: float, dtype) -> np.ndarray:
    if value is None:
        return np.full(size, fill, dtype=dtype)
    return np.array(value, dtype=dtype).reshape(-1)


def _float_dtype(x0):
    if x0 is None:
        return np.float64
    return np.result_type(np.asarray(x0).dtype, np.float32)


def _check_length(name: str, array: np.ndarray, size: int) -> None:
    if array.shape != (size,):
        raise ValueError(f"{name} must have length {size}, got shape {array.shape}")


def _check_indices(name: str, indices: tuple[int, ...], size: int) -> None:
    for i in indices:
        if not 0 <= i < size:
            raise ValueError(f"{name} index {i} out of range for size {size}")


class ProblemMeta(eqx.Module):
    """Metadata of a (possibly constrained) optimization problem.

    Attributes:
        nvar: Number of variables.
        x0: Initial point.
        lvar: Lower bounds on the variables (``-inf`` if unbounded).
        uvar: Upper bounds on the variables (``+inf`` if unbounded).
        ncon: Number of general constraints.
        y0: Initial Lagrange multipliers.
        lcon: Lower bounds on the constraints.
        ucon: Upper bounds on the constraints.
        nnzj: Number of structural nonzeros of the constraint Jacobian.
        nnzh: Number of structural nonzeros of the lower triangle of the
            Lagrangian Hessian.
        lin: Indices of the linear constraints.
        minimize: Whether the objective is minimized.
        name: Human-readable problem name.
    """

    nvar: int = eqx.field(static=True)
    x0: Float[np.ndarray, " nvar"]
    lvar: Float[np.ndarray, " nvar"]
    uvar: Float[np.ndarray, " nvar"]
    ncon: int = eqx.field(static=True)
    y0: Float[np.ndarray, " ncon"]
    lcon: Float[np.ndarray, " ncon"]
    ucon: Float[np.ndarray, " ncon"]
    nnzj: int = eqx.field(static=True)
    nnzh: int = eqx.field(static=True)
    lin: tuple[int, ...] = eqx.field(static=True)
    minimize: bool = eqx.field(static=True)
    name: str = eqx.field(static=True)

    def __init__(
        self,
        nvar: int,
        x0=None,
        lvar=None,
        uvar=None,
        ncon: int = 0,
        y0=None,
        lcon=None,
        ucon=None,
        nnzj: Optional[int] = None,
        nnzh: Optional[int] = None,
        lin=(),
        minimize: bool = True,
        name: str = "generic",
    ):
        dtype = _float_dtype(x0)
        self.nvar = int(nvar)
        self.x0 = _as_vector(x0, self.nvar, 0.0, dtype)
        self.lvar = _as_vector(lvar, self.nvar, -np.inf, dtype)
        self.uvar = _as_vector(uvar, self.nvar, np.inf, dtype)
        self.ncon = int(ncon)
        self.y0 = _as_vector(y0, self.ncon, 0.0, dtype)
        self.lcon = _as_vector(lcon, self.ncon, 0.0, dtype)
        self.ucon = _as_vector(ucon, self.ncon, 0.0, dtype)
        self.nnzj = self.ncon * self.nvar if nnzj is None else int(nnzj)
        self.nnzh = self.nvar * (self.nvar + 1) // 2 if nnzh is None else int(nnzh)
        self.lin = tuple(int(i) for i in lin)
        self.minimize = bool(minimize)
        self.name = name

    def __check_init__(self):
        if self.nvar < 0 or self.ncon < 0:
            raise ValueError("nvar and ncon must be non-negative")
        _check_length("x0", self.x0, self.nvar)
        _check_length("lvar", self.lvar, self.nvar)
        _check_length("uvar", self.uvar, self.nvar)
        _check_length("y0", self.y0, self.ncon)
        _check_length("lcon", self.lcon, self.ncon)
        _check_length("ucon", self.ucon, self.ncon)
        _check_indices("lin", self.lin, self.ncon)
        if self.nnzj < 0 or self.nnzh < 0:
            raise ValueError("nnzj and nnzh must be non-negative")

    # Variable index sets

    @property
    def ifix(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(self.lvar == self.uvar)

    @property
    def ilow(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(np.isfinite(self.lvar) & np.isposinf(self.uvar))

    @property
    def iupp(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(np.isneginf(self.lvar) & np.isfinite(self.uvar))

    @property
    def irng(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(
            np.isfinite(self.lvar) & np.isfinite(self.uvar) & (self.lvar < self.uvar)
        )

    @property
    def ifree(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(np.isneginf(self.lvar) & np.isposinf(self.uvar))

    # Constraint index sets

    @property
    def jfix(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(self.lcon == self.ucon)

    @property
    def jlow(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(np.isfinite(self.lcon) & np.isposinf(self.ucon))

    @property
    def jupp(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(np.isneginf(self.lcon) & np.isfinite(self.ucon))

    @property
    def jrng(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(
            np.isfinite(self.lcon) & np.isfinite(self.ucon) & (self.lcon < self.ucon)
        )

    @property
    def jfree(self) -> Int[np.ndarray, " k"]:
        return np.flatnonzero(np.isneginf(self.lcon) & np.isposinf(self.ucon))

    @property
    def jinf(self) -> Int[np.ndarray, " k"]:
        """Rows with ``lcon > ucon``, which no point can satisfy."""
        return np.flatnonzero(self.lcon > self.ucon)

    @property
    def nlin(self) -> int:
        return len(self.lin)

    @property
    def nnln(self) -> int:
        return self.ncon - self.nlin

    @property
    def nln(self) -> tuple[int, ...]:
        linear = set(self.lin)
        return tuple(i for i in range(self.ncon) if i not in linear)

    # Predicates

    @property
    def has_bounds(self) -> bool:
        return bool(np.any(np.isfinite(self.lvar)) or np.any(np.isfinite(self.uvar)))

    @property
    def bound_constrained(self) -> bool:
        return self.ncon == 0 and self.has_bounds

    @property
    def unconstrained(self) -> bool:
        return self.ncon == 0 and not self.has_bounds

    @property
    def equality_constrained(self) -> bool:
        return self.ncon > 0 and len(self.jfix) == self.ncon

    @property
    def has_equalities(self) -> bool:
        return len(self.jfix) > 0

    @property
    def has_inequalities(self) -> bool:
        return self.ncon > len(self.jfix)

    @property
    def linearly_constrained(self) -> bool:
        return self.ncon > 0 and self.nlin == self.ncon


class NLSMeta(eqx.Module):
    """Metadata of the residual space of a nonlinear least-squares problem.

    Attributes:
        nequ: Number of residuals.
        nvar: Number of variables.
        x0: Initial point.
        nnzj: Number of structural nonzeros of the residual Jacobian.
        nnzh: Number of structural nonzeros of the lower triangle of a
            weighted residual Hessian.
        lin: Indices of the linear residuals.
    """

    nequ: int = eqx.field(static=True)
    nvar: int = eqx.field(static=True)
    x0: Float[np.ndarray, " nvar"]
    nnzj: int = eqx.field(static=True)
    nnzh: int = eqx.field(static=True)
    lin: tuple[int, ...] = eqx.field(static=True)

    def __init__(
        self,
        nequ: int,
        nvar: int,
        x0=None,
        nnzj: Optional[int] = None,
        nnzh: Optional[int] = None,
        lin=(),
    ):
        dtype = _float_dtype(x0)
        self.nequ = int(nequ)
        self.nvar = int(nvar)
        self.x0 = _as_vector(x0, self.nvar, 0.0, dtype)
        self.nnzj = self.nequ * self.nvar if nnzj is None else int(nnzj)
        self.nnzh = self.nvar * (self.nvar + 1) // 2 if nnzh is None else int(nnzh)
        self.lin = tuple(int(i) for i in lin)

    def __check_init__(self):
        if self.nequ < 0 or self.nvar < 0:
            raise ValueError("nequ and nvar must be non-negative")
        _check_length("x0", self.x0, self.nvar)
        _check_indices("lin", self.lin, self.nequ)

    @property
    def nlin(self) -> int:
        return len(self.lin)

    @property
    def nnln(self) -> int:
        return self.nequ - self.nlin

    @property
    def nln(self) -> tuple[int, ...]:
        linear = set(self.lin)
        return tuple(i for i in range(self.nequ) if i not in linear)
