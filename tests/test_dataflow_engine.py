# tests/test_dataflow_engine.py
"""
Tests for the lattices and the bounded worklist solver.
"""

import pytest

from cwecheck.dataflow_engine import (
    EnvLattice,
    FlatLattice,
    PowersetLattice,
    ProductLattice,
    WorklistSolver,
    iteration_bound,
    reverse_post_order,
)
from cwecheck.errors import InternalInvariantError
from cwecheck.ir import Def
from tests.conftest import block, make_function

# 0x10 branches to 0x30 or falls through to 0x20; both reach 0x40,
# which loops back to itself.
DIAMOND = make_function(0x10, [
    (0x10, ["when RDI goto 0x30"]),
    (0x20, ["RAX := 1", "goto 0x40"]),
    (0x30, ["RAX := 2", "goto 0x40"]),
    (0x40, ["RBX := RAX", "when RBX goto 0x40"]),
    (0x50, ["return"]),
    (0x60, ["return"]),   # unreachable
])


def _assigned_constants(blk, env):
    env = dict(env)
    for term in blk.terms:
        if isinstance(term, Def):
            env[term.var] = getattr(term.value, "value", "top")
    return env


class TestLattices:

    def test_flat_join(self):
        lat = FlatLattice("top")
        assert lat.join(1, 1) == 1
        assert lat.join(1, 2) == "top"
        assert lat.leq(1, "top")
        assert not lat.leq(1, 2)

    def test_powerset(self):
        lat = PowersetLattice(3)
        assert lat.height == 3
        assert lat.join(frozenset({1}), frozenset({2})) == {1, 2}
        assert lat.leq(frozenset({1}), frozenset({1, 2}))

    def test_product(self):
        lat = ProductLattice(FlatLattice(None), PowersetLattice(2))
        assert lat.height == 3
        joined = lat.join((1, frozenset({1})), (2, frozenset({2})))
        assert joined == (None, frozenset({1, 2}))

    def test_env_drops_default(self):
        lat = EnvLattice(FlatLattice("top"), "top")
        assert lat.join({"a": 1, "b": 2}, {"a": 1, "b": 3}) == {"a": 1}
        assert lat.leq({"a": 1}, {})
        assert not lat.leq({}, {"a": 1})


class TestOrdering:

    def test_reverse_post_order_starts_at_entry(self):
        order = [b.address for b in reverse_post_order(DIAMOND)]
        assert order[0] == 0x10
        assert order.index(0x20) < order.index(0x40)
        assert order.index(0x30) < order.index(0x40)
        assert order[-1] == 0x60

    def test_bound_grows_with_height(self):
        assert iteration_bound(DIAMOND, 2) > iteration_bound(DIAMOND, 1)


class TestSolver:

    def _solve(self, **kwargs):
        lat = EnvLattice(FlatLattice("top"), "top")
        return WorklistSolver(DIAMOND, lat, _assigned_constants, {}, **kwargs).solve()

    def test_merge_goes_to_top(self):
        result = self._solve()
        assert result.fact_at(block(DIAMOND, 0x20)) == {}
        assert result.fact_at(block(DIAMOND, 0x40)) == {}
        assert result.fact_at(block(DIAMOND, 0x40), before=False) == {"RBX": "top"}

    def test_unreachable_block_has_no_fact(self):
        result = self._solve()
        assert not result.reached(block(DIAMOND, 0x60))
        assert result.fact_at(block(DIAMOND, 0x60)) is None

    def test_terminates_within_bound(self):
        result = self._solve()
        assert 0 < result.iterations <= result.bound

    def test_exceeding_bound_is_internal_error(self):
        with pytest.raises(InternalInvariantError) as info:
            self._solve(max_iterations=1, name="probe")
        assert "probe" in str(info.value)
        assert info.value.context["bound"] == 1
