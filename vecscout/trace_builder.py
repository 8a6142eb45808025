"""
Trace Builder

Provides a builder API for constructing raw trace records, the same layout
the instrumentation front end produces. Sequence numbers are assigned
automatically.
"""

from typing import Any, Optional, Sequence


class TraceBuilder:
    """Builder for raw trace records."""

    def __init__(self, start_seq: int = 0):
        self._seq = start_seq
        self._records: list[dict[str, Any]] = []

    def _emit(self, record: dict[str, Any]) -> dict[str, Any]:
        """Stamp a sequence number and append the record."""
        record["seq"] = self._seq
        self._seq += 1
        self._records.append(record)
        return record

    @staticmethod
    def _mem(addr: Optional[int], width: int, base: Optional[str], disp: int) -> dict[str, Any]:
        mem: dict[str, Any] = {"addr": addr if addr is not None else "unresolved", "width": width}
        if base is not None:
            mem["base"] = base
        if disp:
            mem["disp"] = disp
        return mem

    # === Memory operations ===

    def load(self, pc: int, dst: str, addr: Optional[int], width: int = 8,
             base: Optional[str] = None, index: Optional[str] = None,
             disp: int = 0, mnemonic: str = "mov") -> dict[str, Any]:
        """Load ``width`` bytes from ``addr`` into ``dst``. ``addr=None`` is unresolved."""
        src = [r for r in (base, index) if r is not None]
        return self._emit({
            "pc": pc, "kind": "load", "mnemonic": mnemonic,
            "dst": [dst], "src": src,
            "mem": self._mem(addr, width, base, disp),
        })

    def store(self, pc: int, value: str, addr: Optional[int], width: int = 8,
              base: Optional[str] = None, index: Optional[str] = None,
              disp: int = 0, mnemonic: str = "mov") -> dict[str, Any]:
        """Store register ``value`` to ``addr``."""
        src = [value] + [r for r in (base, index) if r is not None]
        return self._emit({
            "pc": pc, "kind": "store", "mnemonic": mnemonic,
            "dst": [], "src": src,
            "mem": self._mem(addr, width, base, disp),
        })

    # === ALU operations ===

    def alu(self, pc: int, mnemonic: str, dst: str, srcs: Sequence[str],
            imm: Sequence[int] = ()) -> dict[str, Any]:
        """Emit an arithmetic operation ``dst = mnemonic(srcs, imm)``."""
        return self._emit({
            "pc": pc, "kind": "arith", "mnemonic": mnemonic,
            "dst": [dst], "src": list(srcs), "imm": list(imm),
        })

    def alu_mem(self, pc: int, mnemonic: str, dst: str, srcs: Sequence[str],
                addr: Optional[int], width: int = 8, base: Optional[str] = None,
                disp: int = 0) -> dict[str, Any]:
        """Arithmetic reading one operand straight from memory (``add rax, [rsi]``)."""
        src = list(srcs) + ([base] if base is not None else [])
        return self._emit({
            "pc": pc, "kind": "arith", "mnemonic": mnemonic,
            "dst": [dst], "src": src,
            "mem": self._mem(addr, width, base, disp),
        })

    def add(self, pc: int, dst: str, a: str, b: Optional[str] = None,
            imm: Optional[int] = None) -> dict[str, Any]:
        srcs = [a] if b is None else [a, b]
        return self.alu(pc, "add", dst, srcs, [] if imm is None else [imm])

    def mul(self, pc: int, dst: str, a: str, b: Optional[str] = None,
            imm: Optional[int] = None) -> dict[str, Any]:
        srcs = [a] if b is None else [a, b]
        return self.alu(pc, "mul", dst, srcs, [] if imm is None else [imm])

    def mov(self, pc: int, dst: str, src: str) -> dict[str, Any]:
        return self.alu(pc, "mov", dst, [src])

    def compare(self, pc: int, a: str, b: Optional[str] = None, imm: Optional[int] = None,
                dst: str = "flags", mnemonic: str = "cmp") -> dict[str, Any]:
        """Compare ``a`` with a register or immediate, writing ``dst``."""
        return self._emit({
            "pc": pc, "kind": "compare", "mnemonic": mnemonic,
            "dst": [dst], "src": [a] if b is None else [a, b],
            "imm": [] if imm is None else [imm],
        })

    def select(self, pc: int, dst: str, cond: str, a: str, b: str,
               mnemonic: str = "cmov") -> dict[str, Any]:
        """Conditional select: dst = cond ? a : b"""
        return self._emit({
            "pc": pc, "kind": "select", "mnemonic": mnemonic,
            "dst": [dst], "src": [cond, a, b],
        })

    # === Control flow ===

    def branch(self, pc: int, target: int, taken: bool, cond: Optional[str] = "flags",
               mnemonic: Optional[str] = None) -> dict[str, Any]:
        """Branch to ``target``. ``cond=None`` makes it unconditional."""
        return self._emit({
            "pc": pc, "kind": "branch",
            "mnemonic": mnemonic or ("jcc" if cond else "jmp"),
            "dst": [], "src": [] if cond is None else [cond],
            "target": target, "taken": taken,
        })

    def other(self, pc: int, mnemonic: str, dst: Sequence[str] = (),
              src: Sequence[str] = ()) -> dict[str, Any]:
        """An instruction the decoder could not classify."""
        return self._emit({
            "pc": pc, "kind": mnemonic, "mnemonic": mnemonic,
            "dst": list(dst), "src": list(src),
        })

    def build(self) -> list[dict[str, Any]]:
        """Return the records built so far."""
        return list(self._records)
