"""Tests for address fitting and cross-unit alias queries."""

import unittest

from vecscout.alias_analysis import (
    AddressExpr, AliasAnalysis, AliasResult, ConflictKind, fit_affine,
)
from vecscout.ddg import NodeKind
from vecscout.tests.conftest import (
    A, B, copy_loop, gather_loop, loop_region, memory_sum, prefix_chain, run_passes, unresolved_copy,
)


def _arena(tb):
    return run_passes(loop_region(tb), upto="graph-build").arena


class TestFitAffine(unittest.TestCase):

    def test_affine(self):
        self.assertEqual(fit_affine([(0, 100), (1, 108), (2, 116)]), (100, 8))

    def test_gaps_between_units(self):
        self.assertEqual(fit_affine([(1, 108), (3, 124), (6, 148)]), (100, 8))

    def test_negative_stride(self):
        self.assertEqual(fit_affine([(0, 64), (1, 56), (4, 32)]), (64, -8))

    def test_invariant(self):
        self.assertEqual(fit_affine([(0, 7), (1, 7), (2, 7)]), (7, 0))

    def test_single_unit(self):
        self.assertEqual(fit_affine([(2, 50), (2, 50)]), (50, None))
        self.assertIsNone(fit_affine([(2, 50), (2, 51)]))

    def test_not_affine(self):
        self.assertIsNone(fit_affine([(0, 0), (1, 8), (2, 24)]))
        self.assertIsNone(fit_affine([(0, 0), (2, 3)]))
        self.assertIsNone(fit_affine([]))


class TestAddressExpr(unittest.TestCase):

    def test_properties(self):
        contiguous = AddressExpr(base=A, stride=8, width=8)
        self.assertTrue(contiguous.is_contiguous)
        self.assertFalse(contiguous.is_strided)
        self.assertEqual(contiguous.at(3), A + 24)

        strided = AddressExpr(base=B, stride=-16, width=8, offset=8)
        self.assertTrue(strided.is_strided)
        self.assertEqual(strided.at(1), B - 8)

        self.assertTrue(AddressExpr(base=A, stride=0, width=4).is_invariant)
        single = AddressExpr(base=A, stride=None, width=4)
        self.assertFalse(single.is_contiguous or single.is_strided or single.is_invariant)

    def test_str(self):
        self.assertEqual(str(AddressExpr(0x100, 8, 8, base_register="rsi")), "rsi@entry + 8*i (8B)")
        self.assertEqual(str(AddressExpr(0x100, None, 4, offset=4)), "0x100 + ?*i + 4 (4B)")


class TestSiteFitting:

    def test_copy_loop_sites(self):
        arena = _arena(copy_loop(n=8))
        load_site, store_site = arena.memory_sites()
        assert load_site.address == AddressExpr(B, 8, 8, 0, "rsi")
        assert store_site.address == AddressExpr(A, 8, 8, 0, "rdi")
        assert all(n.address is store_site.address for n in store_site.nodes)

    def test_displacement_kept_as_offset(self):
        arena = _arena(prefix_chain(n=4))
        store = next(s for s in arena.memory_sites() if s.kind == NodeKind.STORE)
        assert store.address.base == A
        assert store.address.offset == 8
        assert store.address.at(0) == A + 8

    def test_unresolved_site(self):
        arena = _arena(unresolved_copy(n=6, unresolved_unit=2))
        load = next(s for s in arena.memory_sites() if s.kind == NodeKind.LOAD)
        assert load.unresolved
        assert load.address is None

    def test_gather_stride(self):
        arena = _arena(gather_loop(n=6, stride=16))
        load = next(s for s in arena.memory_sites() if s.kind == NodeKind.LOAD)
        assert load.address.stride == 16
        assert load.address.is_strided


class TestAliasQueries:

    def test_disjoint_streams(self):
        arena = _arena(copy_loop(n=4))
        aa = AliasAnalysis(arena)
        load0 = arena.graphs[0].loads()[0]
        store0 = arena.graphs[0].stores()[0]
        assert aa.alias(load0, store0) == AliasResult.NO_ALIAS
        assert aa.cross_unit_conflicts() == []

    def test_cache_is_symmetric(self):
        arena = _arena(memory_sum(n=4))
        aa = AliasAnalysis(arena)
        load = arena.graphs[1].loads()[0]
        store = arena.graphs[2].stores()[0]
        assert aa.alias(load, store) == AliasResult.MUST_ALIAS
        assert aa.alias(store, load) == AliasResult.MUST_ALIAS
        assert aa.alias_queries == 2
        assert aa.alias_cache_hits == 1

    def test_flow_conflict(self):
        arena = _arena(prefix_chain(n=4))
        conflicts = AliasAnalysis(arena).cross_unit_conflicts()
        assert len(conflicts) == 3
        first = conflicts[0]
        assert first.kind == ConflictKind.FLOW
        assert first.earlier.kind == NodeKind.STORE and first.earlier.unit == 0
        assert first.later.kind == NodeKind.LOAD and first.later.unit == 1
        assert "flow" in str(first)

    def test_output_and_excluded_sites(self):
        arena = _arena(memory_sum(n=4))
        aa = AliasAnalysis(arena)
        kinds = {c.kind for c in aa.cross_unit_conflicts()}
        assert kinds == {ConflictKind.FLOW, ConflictKind.ANTI, ConflictKind.OUTPUT}

        cell_sites = frozenset(
            s.site for s in arena.memory_sites() if s.address.is_invariant
        )
        assert aa.cross_unit_conflicts(cell_sites) == []
