"""Tests for problem metadata and evaluation counters."""

import numpy as np
import pytest

from feasres_jax import NLS_COUNTERS, PROBLEM_COUNTERS, Counters, NLSMeta, ProblemMeta


def _meta(**kwargs):
    return ProblemMeta(
        5,
        lvar=[0.0, -np.inf, 1.0, -np.inf, -1.0],
        uvar=[0.0, 1.0, 2.0, np.inf, np.inf],
        ncon=6,
        lcon=[1.0, -1.0, -np.inf, 0.0, -np.inf, 3.0],
        ucon=[1.0, np.inf, 2.0, 4.0, np.inf, 2.0],
        lin=(1, 4),
        **kwargs,
    )


class TestProblemMeta:
    """Tests for ProblemMeta defaults, index sets and validation."""

    def test_defaults(self):
        meta = ProblemMeta(3, ncon=2)

        np.testing.assert_array_equal(meta.x0, np.zeros(3))
        np.testing.assert_array_equal(meta.lvar, np.full(3, -np.inf))
        np.testing.assert_array_equal(meta.uvar, np.full(3, np.inf))
        np.testing.assert_array_equal(meta.lcon, np.zeros(2))
        np.testing.assert_array_equal(meta.ucon, np.zeros(2))
        assert meta.x0.dtype == np.float64
        assert meta.nnzj == 6
        assert meta.nnzh == 6
        assert meta.minimize
        assert meta.name == "generic"

    def test_dtype_follows_x0(self):
        meta = ProblemMeta(2, x0=np.ones(2, dtype=np.float32))
        assert meta.lvar.dtype == np.float32

    def test_variable_index_sets(self):
        meta = _meta()
        np.testing.assert_array_equal(meta.ifix, [0])
        np.testing.assert_array_equal(meta.iupp, [1])
        np.testing.assert_array_equal(meta.irng, [2])
        np.testing.assert_array_equal(meta.ifree, [3])
        np.testing.assert_array_equal(meta.ilow, [4])

    def test_constraint_index_sets(self):
        meta = _meta()
        np.testing.assert_array_equal(meta.jfix, [0])
        np.testing.assert_array_equal(meta.jlow, [1])
        np.testing.assert_array_equal(meta.jupp, [2])
        np.testing.assert_array_equal(meta.jrng, [3])
        np.testing.assert_array_equal(meta.jfree, [4])
        np.testing.assert_array_equal(meta.jinf, [5])

    def test_linear_rows(self):
        meta = _meta()
        assert meta.nlin == 2
        assert meta.nnln == 4
        assert meta.nln == (0, 2, 3, 5)

    def test_predicates(self):
        meta = _meta()
        assert meta.has_bounds
        assert meta.has_equalities
        assert meta.has_inequalities
        assert not meta.equality_constrained
        assert not meta.bound_constrained
        assert not meta.linearly_constrained

        assert ProblemMeta(2).unconstrained
        assert ProblemMeta(2, lvar=[0.0, 0.0]).bound_constrained
        assert ProblemMeta(2, ncon=1, lin=(0,)).equality_constrained
        assert ProblemMeta(2, ncon=1, lin=(0,)).linearly_constrained

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"x0": np.zeros(3)}, "x0"),
            ({"lvar": np.zeros(1)}, "lvar"),
            ({"ncon": 1, "lcon": [0.0, 1.0]}, "lcon"),
            ({"ncon": 1, "lin": (1,)}, "lin"),
        ],
    )
    def test_validation(self, kwargs, match):
        with pytest.raises(ValueError, match=match):
            ProblemMeta(2, **kwargs)

    def test_immutable(self):
        meta = ProblemMeta(2)
        with pytest.raises(AttributeError):
            meta.nvar = 3


class TestNLSMeta:
    def test_defaults(self):
        meta = NLSMeta(4, 3, lin=(0, 2))
        assert meta.nnzj == 12
        assert meta.nnzh == 6
        assert meta.nlin == 2
        assert meta.nnln == 2
        assert meta.nln == (1, 3)

    def test_validation(self):
        with pytest.raises(ValueError, match="lin"):
            NLSMeta(2, 2, lin=(2,))


class TestCounters:
    """Tests for the evaluation counters."""

    def test_increment_and_total(self):
        counters = Counters()
        counters.increment("neval_obj")
        counters.increment("neval_hprod", by=3)

        assert counters["neval_obj"] == 1
        assert counters["neval_hprod"] == 3
        assert counters.total() == 4
        assert repr(counters) == "Counters({'neval_obj': 1, 'neval_hprod': 3})"

    def test_unknown_kind(self):
        counters = Counters(PROBLEM_COUNTERS)
        assert "neval_residual" not in counters
        with pytest.raises(KeyError, match="neval_residual"):
            counters.increment("neval_residual")

    def test_snapshot_is_frozen_copy(self):
        counters = Counters(PROBLEM_COUNTERS + NLS_COUNTERS)
        counters.increment("neval_residual")
        snap = counters.snapshot()
        counters.increment("neval_residual")

        assert snap["neval_residual"] == 1
        with pytest.raises(TypeError):
            snap["neval_residual"] = 5

    def test_reset(self):
        counters = Counters()
        counters.increment("neval_grad")
        counters.reset()
        assert counters.total() == 0
