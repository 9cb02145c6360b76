"""feasres-jax: feasibility residual least-squares models in JAX.

This package turns a constrained nonlinear problem

    min f(x)  s.t.  c_L <= c(x) <= c_U,  l <= x <= u

into the bound-constrained nonlinear least-squares problem

    min 1/2 ||c(x) - s||^2  s.t.  l <= x <= u,  c_L <= s <= c_U,

exposing the residual, its Jacobian and Hessians, and exact objective
Hessians and Hessian-vector products. Problems are described with
JAX-traceable callables; missing derivatives come from automatic
differentiation.
"""

from feasres_jax.counters import NLS_COUNTERS, PROBLEM_COUNTERS, Counters
from feasres_jax.errors import (
    ConfigurationError,
    FeasresError,
    ProblemClosedError,
    UnsupportedOperationError,
)
from feasres_jax.feasibility import FeasibilityResidual
from feasres_jax.meta import NLSMeta, ProblemMeta
from feasres_jax.nls import AbstractNLSProblem, NLSProblem
from feasres_jax.problem import AbstractProblem, Problem
from feasres_jax.slack import SlackNLSProblem, SlackProblem, slack_problem, slack_rows
from feasres_jax.types import (
    ConstraintFn,
    GradFn,
    JacobianFn,
    ObjectiveFn,
    ResidualFn,
)

__all__ = [
    # Feasibility residual
    "FeasibilityResidual",
    # Problems
    "AbstractProblem",
    "Problem",
    "AbstractNLSProblem",
    "NLSProblem",
    # Slack reformulation
    "SlackProblem",
    "SlackNLSProblem",
    "slack_problem",
    "slack_rows",
    # Metadata and counters
    "ProblemMeta",
    "NLSMeta",
    "Counters",
    "PROBLEM_COUNTERS",
    "NLS_COUNTERS",
    # Errors
    "FeasresError",
    "ConfigurationError",
    "UnsupportedOperationError",
    "ProblemClosedError",
    # Types
    "ObjectiveFn",
    "ConstraintFn",
    "ResidualFn",
    "GradFn",
    "JacobianFn",
]
