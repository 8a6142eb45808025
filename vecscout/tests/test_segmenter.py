"""Tests for the Region segmenter."""

import unittest

from vecscout.region import (
    CompositeEvent, RegionId, RegionKind, StaticLoop, find_static_loops, segment_trace,
)
from vecscout.trace import normalize_trace
from vecscout.trace_builder import TraceBuilder
from vecscout.tests.conftest import (
    LOOP_PC, NESTED_PC, bottom_test_loop, copy_loop, nested_loops, regions_of, straight_line,
)


class TestStaticLoops(unittest.TestCase):

    def test_copy_loop_back_edge(self):
        events = normalize_trace(copy_loop(n=8).build())
        loops = find_static_loops(events)
        self.assertEqual(len(loops), 1)
        loop = loops[0]
        self.assertEqual((loop.head, loop.latch), (LOOP_PC, LOOP_PC + 16))
        self.assertEqual(loop.observations, 7)

    def test_min_observations(self):
        events = normalize_trace(copy_loop(n=2).build())
        self.assertEqual(find_static_loops(events, min_observations=2), [])
        self.assertEqual(len(find_static_loops(events, min_observations=1)), 1)

    def test_latches_merge_on_shared_head(self):
        tb = TraceBuilder()
        for i in range(4):
            tb.add(0x100, "rcx", "rcx", imm=1)
            tb.branch(0x104, 0x100, taken=i % 2 == 0)   # continue
            if i % 2 == 1:
                tb.branch(0x108, 0x100, taken=True)
        loops = find_static_loops(normalize_trace(tb.build()))
        self.assertEqual(len(loops), 1)
        self.assertEqual(loops[0].latch, 0x108)
        self.assertEqual(loops[0].latches, frozenset({0x104, 0x108}))

    def test_encloses(self):
        outer = StaticLoop(0x100, 0x200, frozenset({0x200}), 3)
        inner = StaticLoop(0x110, 0x180, frozenset({0x180}), 9)
        self.assertTrue(outer.encloses(inner))
        self.assertFalse(inner.encloses(outer))
        self.assertFalse(outer.encloses(outer))


class TestSegmentation(unittest.TestCase):

    def test_copy_loop_units(self):
        regions = regions_of(copy_loop(n=8))
        self.assertEqual(len(regions), 1)
        region = regions[0]
        self.assertEqual(region.kind, RegionKind.LOOP)
        self.assertEqual(region.id, RegionId(LOOP_PC, 0))
        self.assertEqual(region.unit_count, 8)
        self.assertTrue(all(len(u) == 5 for u in region.units))
        self.assertEqual([u.index for u in region.units], list(range(8)))

    def test_units_are_ordered(self):
        region = regions_of(copy_loop(n=6))[0]
        for prev, unit in zip(region.units, region.units[1:]):
            self.assertLess(prev.last_seq, unit.first_seq)

    def test_trailing_partial_iteration_dropped(self):
        tb = TraceBuilder()
        for i in range(4):
            tb.load(0x100, "rax", 0x1000 + 8 * i)
            tb.store(0x104, "rax", 0x2000 + 8 * i)
            tb.branch(0x108, 0x100, taken=True)
        tb.load(0x100, "rax", 0x1020)
        tb.store(0x104, "rax", 0x2020)
        region = regions_of(tb)[0]
        self.assertEqual(region.unit_count, 4)
        self.assertEqual(region.dropped_events, 2)

    def test_straight_line_around_loop(self):
        tb = straight_line(pc=0x400000)
        copy_loop(n=4, tb=tb)
        straight_line(tb, pc=0x402000, count=2)
        regions = regions_of(tb)
        self.assertEqual([r.kind for r in regions],
                         [RegionKind.STRAIGHT_LINE, RegionKind.LOOP, RegionKind.STRAIGHT_LINE])
        self.assertEqual(regions[0].unit_count, 1)
        self.assertEqual(len(regions[0].units[0]), 3)
        self.assertEqual(len(regions[2].units[0]), 2)

    def test_repeated_loop_instances(self):
        tb = copy_loop(n=4)
        straight_line(tb, pc=0x402000, count=1)
        copy_loop(n=5, tb=tb)
        loops = [r for r in regions_of(tb) if r.kind == RegionKind.LOOP]
        self.assertEqual([str(r.id) for r in loops], ["0x401000#0", "0x401000#1"])
        self.assertEqual([r.unit_count for r in loops], [4, 5])

    def test_back_to_back_instances(self):
        tb = copy_loop(n=3)
        copy_loop(n=3, tb=tb)
        loops = regions_of(tb)
        self.assertEqual([r.id.instance for r in loops], [0, 1])

    def test_loop_entered_at_bottom_test(self):
        """The first condition check runs before the head and stays straight-line code."""
        regions = regions_of(bottom_test_loop(n=8))
        self.assertEqual([r.kind for r in regions], [RegionKind.STRAIGHT_LINE, RegionKind.LOOP])
        entry, loop = regions
        self.assertEqual(entry.id, RegionId(LOOP_PC - 4, 0))
        self.assertEqual([ev.mnemonic for ev in entry.units[0]], ["jmp", "cmp", "jcc"])
        self.assertEqual(loop.id, RegionId(LOOP_PC, 0))
        self.assertEqual(loop.unit_count, 8)
        self.assertEqual(loop.dropped_events, 0)
        self.assertTrue(all(u.items[0].pc == LOOP_PC and len(u) == 5 for u in loop.units))

    def test_zero_trip_instance_is_straight_line(self):
        tb = bottom_test_loop(n=4)
        bottom_test_loop(n=0, tb=tb)
        regions = regions_of(tb)
        self.assertEqual([r.kind for r in regions],
                         [RegionKind.STRAIGHT_LINE, RegionKind.LOOP, RegionKind.STRAIGHT_LINE])
        self.assertEqual(regions[2].id, RegionId(LOOP_PC - 4, 1))
        self.assertEqual(len(regions[2].units[0]), 3)

    def test_inner_loop_entered_at_bottom_test(self):
        """Inner condition checks ahead of the inner head fall outside every unit."""
        tb = TraceBuilder()
        for j in range(3):
            tb.alu(0x500000, "mov", "r9", [], imm=[0])
            tb.branch(0x500004, 0x500010, taken=True, cond=None)
            tb.compare(0x500010, "r9", imm=4)
            tb.branch(0x500014, 0x500008, taken=True)
            for i in range(4):
                tb.load(0x500008, "rax", 0x1000 + 8 * (4 * j + i), index="r9")
                tb.add(0x50000c, "r9", "r9", imm=1)
                tb.compare(0x500010, "r9", imm=4)
                tb.branch(0x500014, 0x500008, taken=i < 3)
            tb.add(0x500018, "r8", "r8", imm=1)
            tb.compare(0x50001c, "r8", imm=3)
            tb.branch(0x500020, 0x500000, taken=j < 2)
        regions = regions_of(tb)
        self.assertEqual([r.depth for r in regions], [0, 1, 1, 1])
        self.assertEqual(regions[0].unit_count, 3)
        for inner in regions[1:]:
            self.assertEqual(inner.unit_count, 4)
            self.assertEqual(inner.dropped_events, 2)
            self.assertTrue(all(u.items[0].pc == 0x500008 for u in inner.units))


class TestNestedLoops:

    def test_outer_first_with_composites(self):
        regions = regions_of(nested_loops(outer=3, inner=4))
        outer = regions[0]
        assert outer.id == RegionId(NESTED_PC, 0)
        assert outer.unit_count == 3
        for unit in outer.units:
            composites = [it for it in unit if isinstance(it, CompositeEvent)]
            assert len(composites) == 1
            assert len(composites[0].events) == 4 * 6
            assert composites[0].mnemonic == f"loop@{NESTED_PC + 4:#x}"

    def test_inner_regions_follow_parent(self):
        regions = regions_of(nested_loops(outer=3, inner=4))
        inner = regions[1:]
        assert [r.id for r in inner] == [RegionId(NESTED_PC + 4, i) for i in range(3)]
        assert all(r.parent == regions[0].id and r.depth == 1 for r in inner)
        assert all(r.unit_count == 4 for r in inner)

    def test_composite_registers(self):
        outer = regions_of(nested_loops())[0]
        composite = next(it for it in outer.units[0] if isinstance(it, CompositeEvent))
        # rcx is set by the outer body before the inner loop runs
        assert "rcx" in composite.reads
        assert "r9" in composite.reads
        assert set(composite.writes) >= {"xmm0", "r9", "rcx", "flags"}
        assert len(composite.memory) == 8

    def test_segment_trace_default_threshold(self):
        events = normalize_trace(nested_loops().build())
        assert len(segment_trace(events)) == 4
