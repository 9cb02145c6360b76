"""Type definitions for feasres-jax.

This module contains type aliases used throughout the package.
All array types use jaxtyping; functions that only receive JAX arrays are
checked at runtime with beartype.
"""

from collections.abc import Callable
from typing import Any, Optional, Union

import numpy as np
from jaxtyping import Array, Float, Int

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Anything that can be passed where a point or direction is expected
VectorLike = Union[Array, np.ndarray]

# Caller-owned output buffer. Must be a writable numpy array.
OutBuffer = Optional[np.ndarray]

# Sparse coordinate structure: (rows, cols) index arrays
Structure = tuple[Int[np.ndarray, " nnz"], Int[np.ndarray, " nnz"]]

# Objective function type: takes parameters and args, returns a scalar
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Constraint function type: takes parameters and args, returns constraint values
# Bounds are given separately: lcon <= c(x) <= ucon
ConstraintFn = Callable[[Vector, Any], Float[Array, " m"]]

# Residual function type for least-squares problems: F(x, args)
ResidualFn = Callable[[Vector, Any], Float[Array, " nequ"]]

# Gradient function type: takes parameters and args, returns gradient of objective
# grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Jacobian function type: takes parameters and args, returns Jacobian matrix
# jac_fn(x, args) -> J(x) where J[i, j] = dc_i/dx_j
JacobianFn = Callable[[Vector, Any], Float[Array, "m n"]]
