"""
Trace Model & Normalizer

Canonical in-memory representation of an instruction-level execution trace.
The instrumentation front end hands over already-decoded records; this
module validates them and turns them into immutable TraceEvents.

Raw record layout (one mapping per retired instruction):

    {
        "seq": 17,                      # strictly increasing
        "pc": "0x401020",               # int or hex string
        "kind": "load",                 # load/store/arith/compare/select/branch/other
        "mnemonic": "movsd",
        "dst": ["xmm0"],
        "src": ["rsi", "rax"],
        "imm": [8],
        "mem": {"addr": "0x7000", "width": 8, "base": "rsi", "disp": 0},
        "target": "0x401000",           # branches only
        "taken": true,                  # branches only
    }

A memory operand whose address could not be resolved carries
``"addr": null`` or ``"addr": "unresolved"``. On arith, compare, select and
branch records a memory operand is a folded read of that location.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from .errors import MalformedTraceError

logger = logging.getLogger(__name__)


class OpKind(Enum):
    """Decoded operation kinds."""
    LOAD = "load"
    STORE = "store"
    ARITH = "arith"
    COMPARE = "compare"
    SELECT = "select"
    BRANCH = "branch"
    OTHER = "other"


_KIND_ALIASES = {
    "arithmetic": OpKind.ARITH,
    "alu": OpKind.ARITH,
    "cmp": OpKind.COMPARE,
    "test": OpKind.COMPARE,
    "jump": OpKind.BRANCH,
    "jmp": OpKind.BRANCH,
    "jcc": OpKind.BRANCH,
    "cmov": OpKind.SELECT,
    "csel": OpKind.SELECT,
    "blend": OpKind.SELECT,
}

UNRESOLVED = "unresolved"


@dataclass(frozen=True)
class MemAccess:
    """A memory operand. ``address is None`` means unresolved."""
    address: Optional[int]
    width: int
    base: Optional[str] = None
    disp: int = 0

    @property
    def resolved(self) -> bool:
        return self.address is not None

    def __repr__(self):
        addr = f"{self.address:#x}" if self.address is not None else "?"
        return f"[{addr}:{self.width}]"


@dataclass(frozen=True)
class TraceEvent:
    """One retired instruction occurrence."""
    seq: int
    pc: int
    kind: OpKind
    mnemonic: str
    dests: tuple[str, ...] = ()
    sources: tuple[str, ...] = ()
    immediates: tuple[int, ...] = ()
    mem: Optional[MemAccess] = None
    target: Optional[int] = None
    taken: bool = False

    @property
    def is_memory(self) -> bool:
        return self.kind in (OpKind.LOAD, OpKind.STORE)

    @property
    def is_conditional(self) -> bool:
        """Conditional branches read a predicate (flags or register)."""
        return self.kind == OpKind.BRANCH and bool(self.sources)

    @property
    def is_back_edge(self) -> bool:
        return (self.kind == OpKind.BRANCH and self.taken
                and self.target is not None and self.target <= self.pc)

    def __repr__(self):
        parts = [f"#{self.seq} {self.pc:#x} {self.mnemonic}"]
        if self.dests:
            parts.append(",".join(self.dests) + " <-")
        operands = list(self.sources) + [f"#{v}" for v in self.immediates]
        if operands:
            parts.append(", ".join(operands))
        if self.mem is not None:
            parts.append(repr(self.mem))
        if self.kind == OpKind.BRANCH and self.target is not None:
            parts.append(f"-> {self.target:#x} ({'taken' if self.taken else 'not taken'})")
        return " ".join(parts)


RawRecord = Mapping[str, Any]


def _parse_int(value: Any, field_name: str, index: int) -> int:
    if isinstance(value, bool):
        raise MalformedTraceError(f"field '{field_name}' must be an integer, got {value!r}", index)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise MalformedTraceError(f"field '{field_name}' must be an integer, got {value!r}", index)


def _parse_kind(value: Any, index: int) -> OpKind:
    if isinstance(value, OpKind):
        return value
    if not isinstance(value, str):
        raise MalformedTraceError(f"field 'kind' must be a string, got {value!r}", index)
    name = value.strip().lower()
    try:
        return OpKind(name)
    except ValueError:
        pass
    if name in _KIND_ALIASES:
        return _KIND_ALIASES[name]
    # Undecoded instructions stay in the trace as opaque barriers.
    return OpKind.OTHER


def _parse_registers(record: RawRecord, key: str, index: int) -> tuple[str, ...]:
    regs = record.get(key, ())
    if regs is None:
        return ()
    if isinstance(regs, str):
        return (regs,)
    if not isinstance(regs, (list, tuple)) or not all(isinstance(r, str) for r in regs):
        raise MalformedTraceError(f"field '{key}' must list register names", index)
    return tuple(regs)


def _parse_immediates(record: RawRecord, index: int) -> tuple[int, ...]:
    imm = record.get("imm")
    if imm is None:
        return ()
    if not isinstance(imm, (list, tuple)):
        raise MalformedTraceError(f"field 'imm' must be a list, got {imm!r}", index)
    return tuple(_parse_int(v, "imm", index) for v in imm)


def _parse_taken(record: RawRecord, index: int) -> bool:
    taken = record.get("taken")
    if taken is None:
        return False
    if isinstance(taken, bool):
        return taken
    # 0/1 from front ends that emit integers for flags
    if isinstance(taken, int) and taken in (0, 1):
        return bool(taken)
    raise MalformedTraceError(f"field 'taken' must be a boolean, got {taken!r}", index)


def _parse_mem(record: RawRecord, kind: OpKind, index: int) -> Optional[MemAccess]:
    mem = record.get("mem")
    if mem is None:
        if kind in (OpKind.LOAD, OpKind.STORE):
            raise MalformedTraceError(f"{kind.value} without memory operand", index)
        return None
    if not isinstance(mem, Mapping):
        raise MalformedTraceError(f"memory operand must be a mapping, got {mem!r}", index)
    if "addr" not in mem:
        raise MalformedTraceError("memory operand lacks address resolution", index)
    raw_addr = mem["addr"]
    if raw_addr is None or raw_addr == UNRESOLVED:
        address = None
    else:
        address = _parse_int(raw_addr, "mem.addr", index)
    if "width" not in mem:
        raise MalformedTraceError("memory operand lacks access width", index)
    width = _parse_int(mem["width"], "mem.width", index)
    if width <= 0:
        raise MalformedTraceError(f"memory access width must be positive, got {width}", index)
    base = mem.get("base")
    if base is not None and not isinstance(base, str):
        raise MalformedTraceError(f"field 'mem.base' must be a register name, got {base!r}", index)
    disp = _parse_int(mem.get("disp", 0), "mem.disp", index)
    return MemAccess(address=address, width=width, base=base, disp=disp)


def parse_record(record: RawRecord, index: int = 0) -> TraceEvent:
    """Convert one raw record into a TraceEvent."""
    if not isinstance(record, Mapping):
        raise MalformedTraceError(f"record must be a mapping, got {type(record).__name__}", index)
    for key in ("seq", "pc", "kind"):
        if key not in record:
            raise MalformedTraceError(f"missing required field '{key}'", index)
    seq = _parse_int(record["seq"], "seq", index)
    pc = _parse_int(record["pc"], "pc", index)
    kind = _parse_kind(record["kind"], index)
    mnemonic = record.get("mnemonic") or str(record["kind"])

    target = None
    if record.get("target") is not None:
        target = _parse_int(record["target"], "target", index)

    return TraceEvent(
        seq=seq,
        pc=pc,
        kind=kind,
        mnemonic=str(mnemonic).lower(),
        dests=_parse_registers(record, "dst", index),
        sources=_parse_registers(record, "src", index),
        immediates=_parse_immediates(record, index),
        mem=_parse_mem(record, kind, index),
        target=target,
        taken=_parse_taken(record, index),
    )


def normalize_trace(records: Iterable[Union[RawRecord, TraceEvent]]) -> list[TraceEvent]:
    """Validate raw records and return the canonical event list.

    Raises MalformedTraceError on non-monotonic sequence numbers or missing
    required fields. Unknown instruction kinds are kept as OpKind.OTHER.
    """
    events: list[TraceEvent] = []
    last_seq: Optional[int] = None
    unknown = 0

    for index, record in enumerate(records):
        event = record if isinstance(record, TraceEvent) else parse_record(record, index)
        if event.is_memory and event.mem is None:
            raise MalformedTraceError(f"{event.kind.value} without memory operand", index)
        if last_seq is not None and event.seq <= last_seq:
            raise MalformedTraceError(
                f"sequence number {event.seq} does not follow {last_seq}", index
            )
        last_seq = event.seq
        if event.kind == OpKind.OTHER:
            unknown += 1
        events.append(event)

    if unknown:
        logger.debug("trace contains %d unknown instruction(s)", unknown)
    return events


def load_trace(path: str) -> list[TraceEvent]:
    """Load a JSON array or JSON-lines trace file and normalize it."""
    with open(path) as f:
        text = f.read()

    stripped = text.lstrip()
    try:
        if stripped.startswith("["):
            records = json.loads(stripped)
        else:
            records = [json.loads(line) for line in text.splitlines() if line.strip()]
    except json.JSONDecodeError as exc:
        raise MalformedTraceError(f"{path}: invalid JSON ({exc})") from exc

    logger.info("loaded %d trace records from %s", len(records), path)
    return normalize_trace(records)
