"""Shared trace scenarios and helpers for vecscout tests."""

import os
import sys

# Add the repository root to the path for imports
_this_dir = os.path.dirname(os.path.abspath(__file__))
_repo_root = os.path.dirname(os.path.dirname(_this_dir))
sys.path.insert(0, _repo_root)

from vecscout import (
    AnalysisConfig,
    PassConfig,
    RegionContext,
    TraceBuilder,
    normalize_trace,
    segment_trace,
)
from vecscout.passes import DivergencePass, GraphBuildPass, IndependencePass, PatternMatchPass

A = 0x10000
B = 0x20000
S = 0x30000
LOOP_PC = 0x401000


def _cfg(name, **opts):
    """Helper to create PassConfig."""
    return PassConfig(name=name, enabled=True, options=opts)


def _latch(tb: TraceBuilder, pc: int, head: int, i: int, n: int):
    """rcx += 1; cmp rcx, n; jcc head"""
    tb.add(pc, "rcx", "rcx", imm=1)
    tb.compare(pc + 4, "rcx", imm=n)
    tb.branch(pc + 8, head, taken=i < n - 1)


# === Scenarios ===

def copy_loop(n=8, width=8, pc=LOOP_PC, tb=None, a=A, b=B):
    """for i in range(n): a[i] = b[i]"""
    tb = tb or TraceBuilder()
    for i in range(n):
        tb.load(pc, "xmm0", b + width * i, width, base="rsi", index="rcx", mnemonic="movsd")
        tb.store(pc + 4, "xmm0", a + width * i, width, base="rdi", index="rcx", mnemonic="movsd")
        _latch(tb, pc + 8, pc, i, n)
    return tb


def divergent_select(n=8, pc=LOOP_PC):
    """for i: a[i] = b[i] + 1 if b[i] <= 100 + i else b[i] * 2"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", B + 8 * i, base="rsi", index="rcx")
        tb.compare(pc + 4, "rax", imm=100 + i)
        if i % 2 == 0:
            tb.branch(pc + 8, pc + 24, taken=False)
            tb.add(pc + 12, "rbx", "rax", imm=1)
            tb.branch(pc + 16, pc + 28, taken=True, cond=None)
        else:
            tb.branch(pc + 8, pc + 24, taken=True)
            tb.mul(pc + 24, "rbx", "rax", imm=2)
        tb.store(pc + 28, "rbx", A + 8 * i, base="rdi", index="rcx")
        _latch(tb, pc + 32, pc, i, n)
    return tb


def uniform_select(n=8, pc=LOOP_PC):
    """for i: a[i] = b[i] if b[i] > c[i] else c[i]  (branch-free cmov)"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", B + 8 * i, base="rsi", index="rcx")
        tb.load(pc + 4, "rdx", S + 8 * i, base="r8", index="rcx")
        tb.compare(pc + 8, "rax", "rdx")
        tb.select(pc + 12, "rbx", "flags", "rax", "rdx")
        tb.store(pc + 16, "rbx", A + 8 * i, base="rdi", index="rcx")
        _latch(tb, pc + 20, pc, i, n)
    return tb


def running_sum(n=8, pc=LOOP_PC):
    """acc += b[i]; a[i] = acc"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", B + 8 * i, base="rsi", index="rcx")
        tb.add(pc + 4, "acc", "acc", "rax")
        tb.store(pc + 8, "acc", A + 8 * i, base="rdi", index="rcx")
        _latch(tb, pc + 12, pc, i, n)
    return tb


def memory_sum(n=8, pc=LOOP_PC):
    """*s += b[i], kept in memory"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", S, base="r8")
        tb.load(pc + 4, "rdx", B + 8 * i, base="rsi", index="rcx")
        tb.add(pc + 8, "rbx", "rax", "rdx")
        tb.store(pc + 12, "rbx", S, base="r8")
        _latch(tb, pc + 16, pc, i, n)
    return tb


def prefix_chain(n=8, pc=LOOP_PC):
    """a[i+1] = a[i] + 3"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", A + 8 * i, base="rdi", index="rcx")
        tb.add(pc + 4, "rax", "rax", imm=3)
        tb.store(pc + 8, "rax", A + 8 * (i + 1), base="rdi", index="rcx", disp=8)
        _latch(tb, pc + 12, pc, i, n)
    return tb


def unresolved_copy(n=8, unresolved_unit=3, pc=LOOP_PC):
    """Copy loop whose load address is unresolved in one unit."""
    tb = TraceBuilder()
    for i in range(n):
        addr = None if i == unresolved_unit else B + 8 * i
        tb.load(pc, "xmm0", addr, base="rsi", index="rcx", mnemonic="movsd")
        tb.store(pc + 4, "xmm0", A + 8 * i, base="rdi", index="rcx", mnemonic="movsd")
        _latch(tb, pc + 8, pc, i, n)
    return tb


def gather_loop(n=8, stride=16, pc=LOOP_PC):
    """a[i] = b[2*i]"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", B + stride * i, base="rsi", index="rdx")
        tb.store(pc + 4, "rax", A + 8 * i, base="rdi", index="rcx")
        tb.add(pc + 8, "rdx", "rdx", imm=2)
        _latch(tb, pc + 12, pc, i, n)
    return tb


def scatter_loop(n=8, stride=24, pc=LOOP_PC):
    """a[3*i] = b[i]"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", B + 8 * i, base="rsi", index="rcx")
        tb.store(pc + 4, "rax", A + stride * i, base="rdi", index="rdx")
        tb.add(pc + 8, "rdx", "rdx", imm=3)
        _latch(tb, pc + 12, pc, i, n)
    return tb


def unknown_instruction_loop(n=8, pc=LOOP_PC):
    """Copy loop with an undecoded instruction in the body."""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "xmm0", B + 8 * i, base="rsi", index="rcx", mnemonic="movsd")
        tb.other(pc + 4, "xgetbv", dst=["rax"], src=["rcx"])
        tb.store(pc + 8, "xmm0", A + 8 * i, base="rdi", index="rcx", mnemonic="movsd")
        _latch(tb, pc + 12, pc, i, n)
    return tb


def conditional_counter(n=8, pc=LOOP_PC):
    """k += 1 on even i only; a[i] = k"""
    tb = TraceBuilder()
    for i in range(n):
        tb.load(pc, "rax", B + 8 * i, base="rsi", index="rcx")
        tb.compare(pc + 4, "rax", imm=0)
        tb.branch(pc + 8, pc + 16, taken=i % 2 == 1)
        if i % 2 == 0:
            tb.alu(pc + 12, "inc", "rdx", ["rdx"])
        tb.store(pc + 16, "rdx", A + 8 * i, base="rdi", index="rcx")
        _latch(tb, pc + 20, pc, i, n)
    return tb


def folded_add(n=8, pc=LOOP_PC, read=B):
    """a[i+1] = k + read[i], the load folded into the add"""
    tb = TraceBuilder()
    for i in range(n):
        tb.alu_mem(pc, "add", "rax", ["rbx"], read + 8 * i, base="rsi")
        tb.store(pc + 4, "rax", A + 8 * (i + 1), base="rdi", disp=8)
        _latch(tb, pc + 8, pc, i, n)
    return tb


def bottom_test_loop(n=8, pc=LOOP_PC, tb=None):
    """jmp cond; body: a[i] = b[i]; i += 1; cond: cmp i, n; jl body"""
    tb = tb or TraceBuilder()
    tb.branch(pc - 4, pc + 12, taken=True, cond=None)
    tb.compare(pc + 12, "rcx", imm=n)
    tb.branch(pc + 16, pc, taken=n > 0)
    for i in range(n):
        tb.load(pc, "rax", B + 8 * i, base="rsi", index="rcx")
        tb.store(pc + 4, "rax", A + 8 * i, base="rdi", index="rcx")
        tb.add(pc + 8, "rcx", "rcx", imm=1)
        tb.compare(pc + 12, "rcx", imm=n)
        tb.branch(pc + 16, pc, taken=i < n - 1)
    return tb


NESTED_PC = 0x500000


def nested_loops(outer=3, inner=4, pc=NESTED_PC):
    """for j in range(outer): for i in range(inner): a[j*inner + i] = b[j*inner + i]"""
    tb = TraceBuilder()
    for j in range(outer):
        tb.alu(pc, "mov", "rcx", [], imm=[0])
        for i in range(inner):
            k = j * inner + i
            tb.load(pc + 4, "xmm0", B + 8 * k, base="rsi", index="r9", mnemonic="movsd")
            tb.store(pc + 8, "xmm0", A + 8 * k, base="rdi", index="r9", mnemonic="movsd")
            tb.add(pc + 12, "r9", "r9", imm=1)
            _latch(tb, pc + 16, pc + 4, i, inner)
        tb.add(pc + 28, "r8", "r8", imm=1)
        tb.compare(pc + 32, "r8", imm=outer)
        tb.branch(pc + 36, pc, taken=j < outer - 1)
    return tb


def straight_line(tb=None, pc=0x400000, count=3):
    """A few unrelated scalar instructions."""
    tb = tb or TraceBuilder()
    for k in range(count):
        tb.alu(pc + 4 * k, "mov", f"r{10 + k}", [], imm=[k])
    return tb


# === Helpers ===

def regions_of(tb: TraceBuilder, min_back_edge_observations: int = 2):
    return segment_trace(normalize_trace(tb.build()), min_back_edge_observations)


def loop_region(tb: TraceBuilder):
    """The first loop Region of a scenario."""
    return next(r for r in regions_of(tb) if r.loop is not None)


def run_passes(region, upto: str = "pattern-match", config: AnalysisConfig = None,
               **options) -> RegionContext:
    """Run the Region passes in order up to and including ``upto``.

    ``options`` are per-pass option dicts keyed by pass name with '-' -> '_'.
    """
    config = config or AnalysisConfig()
    ctx = RegionContext(region=region, config=config)
    for p in (GraphBuildPass(), DivergencePass(), IndependencePass(), PatternMatchPass()):
        opts = options.get(p.name.replace("-", "_"), {})
        ctx = p.run(ctx, _cfg(p.name, **opts))
        ctx.stage = p.output_type
        if p.name == upto:
            break
    return ctx
