"""
Pipeline Cache Simulator
============================================================
A trace-driven model of a classic 5-stage in-order pipeline backed by a
configurable set-associative cache with LRU replacement.

  Cache      - 2^I sets of `assoc` ways, per-set doubly-linked recency chain
  Predictor  - static always-taken / always-not-taken branch prediction
  Pipeline   - FETCH, DECODE, ALU, MEM, WRITEBACK stage vector with
               fetch-miss, data-miss and mispredict cycle accounting
  Front-end  - trace line parser feeding descriptors into FETCH

Nothing is executed: the trace already carries every instruction address
and, for loads and stores, the effective data address.

Run:
    python3 pipeline_cache_sim.py 7 1 1 0                   # instruction-trace.txt
    python3 pipeline_cache_sim.py 5 2 2 1 my.trace --dump-pipeline
"""

from __future__ import annotations
import argparse
import logging
import math
import re
import sys
from enum import IntEnum
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

MAX_CACHE_SIZE = 10240
CACHE_MISS_DELAY = 10   # cycles charged for every cache miss
MAX_STAGES = 5
ADDRESS_BITS = 32
MAX_LINE_LENGTH = 79
DEFAULT_TRACE = "instruction-trace.txt"

# ─────────────────────────────────────────────────────────────────────────────
# Utility helpers
# ─────────────────────────────────────────────────────────────────────────────

def to_unsigned_32(value: int) -> int:
    """Clamp to unsigned 32-bit."""
    return value & 0xFFFFFFFF

def block_offset_bits(blocksize: int) -> int:
    """Byte-offset bits for a block of *blocksize* 4-byte words."""
    return math.ceil(math.log2(blocksize * 4))

def cache_size_metric(index_bits: int, blocksize: int, assoc: int) -> int:
    """
    Storage cost of a cache geometry in bits: every line holds its data
    words, its tag and a valid bit.
    """
    offset_bits = block_offset_bits(blocksize)
    return assoc * (1 << index_bits) * (
        (32 * blocksize) + 33 - index_bits - offset_bits)

def describe_cache(index_bits: int, blocksize: int, assoc: int) -> List[str]:
    """Configuration header for a cache geometry."""
    return [
        "Cache Configuration",
        f"   Index: {index_bits} bits or {1 << index_bits} lines",
        f"   BlockSize: {blocksize}",
        f"   Associativity: {assoc}",
        f"   BlockOffSetBits: {block_offset_bits(blocksize)}",
        f"   CacheSize: {cache_size_metric(index_bits, blocksize, assoc)}",
    ]

# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class SimulatorError(Exception):
    """Base class for every condition that aborts a simulation run."""


class ConfigError(SimulatorError, ValueError):
    """Rejected simulator parameter."""


class CacheConfigError(ConfigError):
    """
    Rejected cache geometry (bad field widths or over the size ceiling).

    *description* holds the configuration header when the geometry itself
    was well formed, so it can still be shown.
    """

    def __init__(self, message: str, description: Sequence[str] = ()):
        self.description = list(description)
        super().__init__(message)


class TraceParseError(SimulatorError, ValueError):
    """A trace line that cannot be turned into an instruction descriptor."""

    def __init__(self, message: str, mnemonic: Optional[str] = None,
                 address: Optional[int] = None,
                 line_number: Optional[int] = None):
        self.mnemonic = mnemonic
        self.address = address
        self.line_number = line_number
        if line_number is not None:
            message = f"line {line_number}: {message}"
        super().__init__(message)


class PipelineDumpError(SimulatorError, IndexError):
    """Stage index outside the pipeline."""

# ─────────────────────────────────────────────────────────────────────────────
# Set-associative cache with LRU replacement
# ─────────────────────────────────────────────────────────────────────────────

class CacheLine:
    """
    One way of a set. ``lru_prev`` / ``lru_next`` hold way indices of the
    neighbours in the set's recency chain, ``None`` past either end.
    """

    __slots__ = ("valid", "tag", "lru_prev", "lru_next")

    def __init__(self):
        self.valid = False
        self.tag = 0
        self.lru_prev: Optional[int] = None
        self.lru_next: Optional[int] = None


class CacheSet:
    """
    The ways of one index plus both ends of its recency chain.

    Walking ``lru_next`` from ``lru`` reaches every valid way exactly once
    and stops at ``mru``. A fresh set seeds both ends at way 0, which is
    always the first way to be filled.
    """

    __slots__ = ("lines", "mru", "lru")

    def __init__(self, assoc: int):
        self.lines: List[CacheLine] = [CacheLine() for _ in range(assoc)]
        self.mru = 0
        self.lru = 0

    def chain(self) -> List[int]:
        """Way indices in recency order, least recently used first."""
        if not self.lines[self.lru].valid:
            return []
        ways = []
        way: Optional[int] = self.lru
        while way is not None:
            ways.append(way)
            way = self.lines[way].lru_next
        return ways

    def _splice_mru(self, way: int):
        line = self.lines[way]
        self.lines[self.mru].lru_next = way
        line.lru_prev = self.mru
        line.lru_next = None
        self.mru = way

    def promote(self, way: int):
        """Move a hit way to the MRU end."""
        if len(self.lines) == 1:
            return
        line = self.lines[way]
        if line.lru_next is None:
            return  # already MRU

        self.lines[line.lru_next].lru_prev = line.lru_prev
        if line.lru_prev is not None:
            self.lines[line.lru_prev].lru_next = line.lru_next
        else:
            # Was the LRU end; its successor becomes the new one
            self.lru = line.lru_next
            self.lines[self.lru].lru_prev = None
        self._splice_mru(way)

    def install(self, way: int, tag: int):
        """Fill the first unused way and make it MRU."""
        line = self.lines[way]
        line.valid = True
        line.tag = tag
        if way != self.mru:
            self._splice_mru(way)

    def replace(self, tag: int) -> int:
        """Evict the LRU way, reuse it for *tag* at the MRU end. Returns the way."""
        victim = self.lru
        line = self.lines[victim]
        line.tag = tag
        if len(self.lines) == 1:
            return victim

        self.lru = line.lru_next
        self.lines[self.lru].lru_prev = None
        self._splice_mru(victim)
        return victim


class Cache:
    """
    Set-associative tag store: 2^index_bits sets, ``assoc`` ways per set,
    ``blocksize`` 4-byte words per block. Only presence is tracked, there is
    no data array and no write policy.

    Address layout, least significant first:
        [block offset (B bits)][index (I bits)][tag (32 - I - B bits)]
    """

    def __init__(self, index_bits: int, blocksize: int, assoc: int,
                 max_size: int = MAX_CACHE_SIZE, verbose: bool = False):
        if index_bits < 0:
            raise CacheConfigError(f"Index bits must be >= 0, got {index_bits}")
        if blocksize < 1 or blocksize & (blocksize - 1):
            raise CacheConfigError(
                f"BlockSize must be a positive power of two, got {blocksize}")
        if assoc < 1:
            raise CacheConfigError(f"Associativity must be >= 1, got {assoc}")

        self.index_bits = index_bits
        self.blocksize = blocksize
        self.assoc = assoc
        self.offset_bits = block_offset_bits(blocksize)
        if index_bits + self.offset_bits > ADDRESS_BITS:
            raise CacheConfigError(
                f"Index ({index_bits}) and block offset ({self.offset_bits}) "
                f"bits exceed a {ADDRESS_BITS}-bit address")

        self.size = cache_size_metric(index_bits, blocksize, assoc)
        self.max_size = max_size
        if self.size > max_size:
            raise CacheConfigError(
                f"Cache too big. Great than MAX SIZE of {max_size} "
                f"(CacheSize: {self.size})",
                description=self.describe())

        self.sets: List[CacheSet] = [
            CacheSet(assoc) for _ in range(1 << index_bits)
        ]
        self.verbose = verbose
        self.accesses = 0
        self.hits = 0
        self.misses = 0

    @property
    def num_sets(self) -> int:
        return len(self.sets)

    def _decompose(self, addr: int) -> Tuple[int, int]:
        """Returns (tag, set_index)."""
        addr = to_unsigned_32(addr)
        set_index = (addr >> self.offset_bits) & ((1 << self.index_bits) - 1)
        tag = addr >> (self.index_bits + self.offset_bits)
        return tag, set_index

    def probe(self, addr: int) -> bool:
        """
        Look *addr* up and update recency. Returns True on a hit.

        Ways are scanned in order; the first invalid way ends the scan as a
        cold miss and is filled. With every way valid and no match, the LRU
        way is replaced.
        """
        tag, idx = self._decompose(addr)
        if self.verbose:
            print(f"Address {to_unsigned_32(addr):x}: Tag= {tag:x}, Index= {idx}")

        self.accesses += 1
        cache_set = self.sets[idx]
        for way, line in enumerate(cache_set.lines):
            if not line.valid:
                self.misses += 1
                cache_set.install(way, tag)
                return False
            if line.tag == tag:
                self.hits += 1
                cache_set.promote(way)
                return True

        # Every way is in use; replace the oldest
        self.misses += 1
        cache_set.replace(tag)
        return False

    @property
    def miss_rate(self) -> float:
        if self.accesses == 0:
            return 0.0
        return self.misses / self.accesses

    def describe(self) -> List[str]:
        return describe_cache(self.index_bits, self.blocksize, self.assoc)

# ─────────────────────────────────────────────────────────────────────────────
# Static branch predictor
# ─────────────────────────────────────────────────────────────────────────────

class StaticBranchPredictor:
    """
    Predicts every branch the same way. Whether a branch was taken is only
    known once the next instruction has been fetched behind it.
    """

    def __init__(self, predict_taken: int):
        if predict_taken not in (0, 1):
            raise ConfigError(
                f"Branch prediction must be 0 (not taken) or 1 (taken), "
                f"got {predict_taken!r}")
        self.predict_taken = bool(predict_taken)
        self.stats_total = 0
        self.stats_correct = 0

    def record_branch(self):
        self.stats_total += 1

    def update(self, actually_taken: bool) -> bool:
        """Score one resolved branch. Returns True if the prediction held."""
        correct = actually_taken == self.predict_taken
        if correct:
            self.stats_correct += 1
        return correct

    @property
    def accuracy(self) -> float:
        if self.stats_total == 0:
            return 0.0
        return self.stats_correct / self.stats_total

# ─────────────────────────────────────────────────────────────────────────────
# Instruction descriptors
# ─────────────────────────────────────────────────────────────────────────────

class InstructionKind(IntEnum):
    NOP = 0
    RTYPE = 1
    LW = 2
    SW = 3
    BRANCH = 4
    JUMP = 5
    JAL = 6
    SYSCALL = 7


class Stage(IntEnum):
    FETCH = 0
    DECODE = 1
    ALU = 2
    MEM = 3
    WRITEBACK = 4


class RType(NamedTuple):
    mnemonic: str
    dest_reg: int
    reg1: int
    reg2_or_constant: int


class MemAccess(NamedTuple):
    data_address: int
    reg: int            # destination for lw, source for sw
    base_reg: int = -1


class BranchOperands(NamedTuple):
    reg1: int = -1
    reg2: int = -1


class JumpTarget(NamedTuple):
    mnemonic: str


Payload = Union[RType, MemAccess, BranchOperands, JumpTarget, None]

_PAYLOAD_TYPES: Dict[InstructionKind, type] = {
    InstructionKind.RTYPE:  RType,
    InstructionKind.LW:     MemAccess,
    InstructionKind.SW:     MemAccess,
    InstructionKind.BRANCH: BranchOperands,
    InstructionKind.JUMP:   JumpTarget,
    InstructionKind.JAL:    JumpTarget,
}


class StageSlot:
    """
    One pipeline stage's contents: an instruction kind, its address and the
    payload that kind carries. A NOP at address 0 is a bubble.
    """

    __slots__ = ("kind", "instruction_address", "payload")

    def __init__(self, kind: InstructionKind = InstructionKind.NOP,
                 instruction_address: int = 0, payload: Payload = None):
        kind = InstructionKind(kind)
        expected = _PAYLOAD_TYPES.get(kind)
        if expected is None:
            if payload is not None:
                raise TypeError(f"{kind.name} carries no payload")
        elif not isinstance(payload, expected):
            raise TypeError(
                f"{kind.name} needs a {expected.__name__} payload, "
                f"got {type(payload).__name__}")
        self.kind = kind
        self.instruction_address = to_unsigned_32(instruction_address)
        self.payload = payload

    # ── Constructors ────────────────────────────────────────────────────

    @classmethod
    def rtype(cls, addr: int, mnemonic: str, dest_reg: int, reg1: int,
              reg2_or_constant: int) -> "StageSlot":
        return cls(InstructionKind.RTYPE, addr,
                   RType(mnemonic, dest_reg, reg1, reg2_or_constant))

    @classmethod
    def lw(cls, addr: int, dest_reg: int, data_address: int) -> "StageSlot":
        return cls(InstructionKind.LW, addr,
                   MemAccess(to_unsigned_32(data_address), dest_reg))

    @classmethod
    def sw(cls, addr: int, src_reg: int, data_address: int) -> "StageSlot":
        return cls(InstructionKind.SW, addr,
                   MemAccess(to_unsigned_32(data_address), src_reg))

    @classmethod
    def branch(cls, addr: int, reg1: int = -1, reg2: int = -1) -> "StageSlot":
        return cls(InstructionKind.BRANCH, addr, BranchOperands(reg1, reg2))

    @classmethod
    def jump(cls, addr: int, mnemonic: str) -> "StageSlot":
        kind = InstructionKind.JAL if mnemonic.startswith("jal") else InstructionKind.JUMP
        return cls(kind, addr, JumpTarget(mnemonic))

    @classmethod
    def syscall(cls, addr: int) -> "StageSlot":
        return cls(InstructionKind.SYSCALL, addr)

    @classmethod
    def nop(cls, addr: int = 0) -> "StageSlot":
        return cls(InstructionKind.NOP, addr)

    @property
    def is_bubble(self) -> bool:
        return self.kind == InstructionKind.NOP and self.instruction_address == 0

    @property
    def is_memory_access(self) -> bool:
        return self.kind in (InstructionKind.LW, InstructionKind.SW)

    def __eq__(self, other):
        if not isinstance(other, StageSlot):
            return NotImplemented
        return (self.kind, self.instruction_address, self.payload) == \
               (other.kind, other.instruction_address, other.payload)

    def __repr__(self):
        return (f"StageSlot({self.kind.name}, {self.instruction_address:#x}, "
                f"{self.payload!r})")


BUBBLE = StageSlot()

# ─────────────────────────────────────────────────────────────────────────────
# Trace front-end
# ─────────────────────────────────────────────────────────────────────────────

_LEADING_INT = re.compile(r"[+-]?\d+")


def parse_register(token: str) -> int:
    """
    Register number from ``$5``, ``5`` or ``$5,``. As with C's atoi, only the
    leading digits count (``$4)`` is 4); a token without them is an error.
    """
    if token.endswith(","):
        token = token[:-1]
    if token.startswith("$"):
        token = token[1:]
    m = _LEADING_INT.match(token)
    if not m:
        raise ValueError(f"bad register token {token!r}")
    return int(m.group())


def _need(operands: List[str], count: int) -> List[str]:
    if len(operands) < count:
        raise ValueError(f"expected {count} operands, got {len(operands)}")
    return operands[:count]


def _parse_rtype(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    dest, src1, src2 = _need(operands, 3)
    return StageSlot.rtype(addr, mnemonic, parse_register(dest),
                           parse_register(src1), parse_register(src2))


def _parse_lui(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    dest, _constant = _need(operands, 2)
    return StageSlot.rtype(addr, mnemonic, parse_register(dest), -1, -1)


def _parse_lw(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    # <reg> <offset>(<base>) <effective address>
    reg, _offset, data_address = _need(operands, 3)
    return StageSlot.lw(addr, parse_register(reg), int(data_address, 16))


def _parse_sw(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    reg, _offset, data_address = _need(operands, 3)
    return StageSlot.sw(addr, parse_register(reg), int(data_address, 16))


def _parse_branch(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    return StageSlot.branch(addr)


def _parse_jump(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    return StageSlot.jump(addr, mnemonic)


def _parse_syscall(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    return StageSlot.syscall(addr)


def _parse_nop(addr: int, mnemonic: str, operands: List[str]) -> StageSlot:
    return StageSlot.nop(addr)


# Matched by prefix in this order, so "jal" has to come before "j"
_MNEMONICS: Tuple[Tuple[str, str, Callable[[int, str, List[str]], StageSlot]], ...] = (
    ("add",     "RTYPE",   _parse_rtype),
    ("sll",     "RTYPE",   _parse_rtype),
    ("ori",     "RTYPE",   _parse_rtype),
    ("lui",     "RTYPE",   _parse_lui),
    ("lw",      "LW",      _parse_lw),
    ("sw",      "SW",      _parse_sw),
    ("beq",     "BRANCH",  _parse_branch),
    ("jal",     "JAL",     _parse_jump),
    ("jr",      "JUMP",    _parse_jump),
    ("j",       "JUMP",    _parse_jump),
    ("syscall", "SYSCALL", _parse_syscall),
    ("nop",     "NOP",     _parse_nop),
)


def parse_instruction(line: str, line_number: Optional[int] = None) -> StageSlot:
    """
    Turn one trace line, ``<hex address> <mnemonic> [operands...]``, into a
    stage descriptor. Raises TraceParseError for anything it cannot read.
    """
    text = line.rstrip("\r\n")
    if len(text) > MAX_LINE_LENGTH:
        raise TraceParseError(
            f"Malformed instruction (line longer than {MAX_LINE_LENGTH} bytes)",
            line_number=line_number)

    tokens = text.split()
    if len(tokens) < 2:
        raise TraceParseError("Malformed instruction", line_number=line_number)
    try:
        addr = to_unsigned_32(int(tokens[0], 16))
    except ValueError:
        raise TraceParseError("Malformed instruction", mnemonic=tokens[1],
                              line_number=line_number) from None

    mnemonic = tokens[1]
    for prefix, label, build in _MNEMONICS:
        if mnemonic.startswith(prefix):
            try:
                return build(addr, mnemonic, tokens[2:])
            except ValueError as exc:
                raise TraceParseError(
                    f"Malformed {label} instruction ({mnemonic}) at address "
                    f"0x{addr:x}: {exc}",
                    mnemonic=mnemonic, address=addr,
                    line_number=line_number) from exc

    raise TraceParseError(
        f"Do not know how to process instruction: {mnemonic} at address {addr:x}",
        mnemonic=mnemonic, address=addr, line_number=line_number)

# ─────────────────────────────────────────────────────────────────────────────
# Pipeline simulator
# ─────────────────────────────────────────────────────────────────────────────

_STAGE_LABELS = {
    Stage.FETCH:     "FETCH",
    Stage.DECODE:    "DECODE",
    Stage.ALU:       "ALU",
    Stage.MEM:       "MEM",
    Stage.WRITEBACK: "WB",
}


class PipelineCacheSim:
    """
    5-stage in-order pipeline fed from an instruction trace, with:
      - one cache shared by instruction fetches and data accesses
      - a static branch predictor scored when a branch sits in DECODE
      - cycle accounting for fetch misses, data misses and mispredicts

    Each ``advance`` is one logical cycle. It normally costs 1 clock, 2 when
    a branch in DECODE was mispredicted, and ``miss_delay`` when the access
    in MEM misses. A data miss overrides a mispredict in the same advance.
    """

    def __init__(self, index_bits: int, blocksize: int, assoc: int,
                 branch_predict_taken: int, miss_delay: int = CACHE_MISS_DELAY,
                 max_cache_size: int = MAX_CACHE_SIZE, verbose: bool = False,
                 dump_pipeline: bool = False):
        if miss_delay < 1:
            raise ConfigError(f"Cache miss delay must be >= 1, got {miss_delay}")

        self.cache = Cache(index_bits, blocksize, assoc,
                           max_size=max_cache_size, verbose=verbose)
        self.branch_predictor = StaticBranchPredictor(branch_predict_taken)
        self.stages: List[StageSlot] = [BUBBLE] * MAX_STAGES
        self.miss_delay = miss_delay

        # Stats
        self.pipeline_cycles = 0
        self.instruction_count = 0
        self.verbose = verbose
        self.trace_pipeline = dump_pipeline

    # ── Counters ────────────────────────────────────────────────────────

    @property
    def branch_predict_taken(self) -> int:
        return int(self.branch_predictor.predict_taken)

    @property
    def branch_count(self) -> int:
        return self.branch_predictor.stats_total

    @property
    def correct_branch_predictions(self) -> int:
        return self.branch_predictor.stats_correct

    @property
    def cache_access(self) -> int:
        return self.cache.accesses

    @property
    def cache_hit(self) -> int:
        return self.cache.hits

    @property
    def cache_miss(self) -> int:
        return self.cache.misses

    @property
    def cpi(self) -> float:
        if self.instruction_count == 0:
            return 0.0
        return self.pipeline_cycles / self.instruction_count

    def _say(self, msg: str):
        if self.verbose:
            print(msg)

    # ── Main cycle ──────────────────────────────────────────────────────

    def advance(self) -> int:
        """Run one logical cycle and shift every stage toward WRITEBACK.
        Returns the clock cycles it was charged."""
        cycle_count = 1

        wb = self.stages[Stage.WRITEBACK]
        if wb.instruction_address:
            self.instruction_count += 1
            logger.debug("Retired instruction at 0x%x, type %d, at time %d",
                         wb.instruction_address, wb.kind, self.pipeline_cycles)

        # The branch outcome shows in what got fetched right behind it
        decode = self.stages[Stage.DECODE]
        if decode.kind == InstructionKind.BRANCH:
            fetch = self.stages[Stage.FETCH]
            taken = (not fetch.is_bubble and fetch.instruction_address
                     != to_unsigned_32(decode.instruction_address + 4))
            if taken:
                logger.debug("Branch taken: FETCH addr = 0x%x, DECODE instr addr = 0x%x",
                             fetch.instruction_address, decode.instruction_address)
            if not self.branch_predictor.update(taken):
                cycle_count = 2

        mem = self.stages[Stage.MEM]
        if mem.is_memory_access:
            data_address = mem.payload.data_address
            if self.cache.probe(data_address):
                self._say(f"DATA HIT:\t Address 0x{data_address:x}")
            else:
                cycle_count = self.miss_delay
                self._say(f"DATA MISS:\t Address 0x{data_address:x}")

        self.pipeline_cycles += cycle_count

        # MEM->WB, ALU->MEM, DECODE->ALU, FETCH->DECODE
        self.stages[1:] = self.stages[:-1]
        self.stages[Stage.FETCH] = BUBBLE
        return cycle_count

    def push(self, slot: StageSlot):
        """Advance once, then place *slot* in FETCH."""
        self.advance()
        self.stages[Stage.FETCH] = slot
        if slot.kind == InstructionKind.BRANCH:
            self.branch_predictor.record_branch()

    def fetch(self, slot: StageSlot):
        """
        Fetch *slot* through the cache, then push it. A fetch miss stalls
        for ``miss_delay - 1`` extra advances, filling FETCH with bubbles;
        the push supplies the last cycle of the window.
        """
        addr = slot.instruction_address
        if self.cache.probe(addr):
            self._say(f"INST HIT:\t Address 0x{addr:x}")
        else:
            self._say(f"INST MISS:\t Address 0x{addr:x}")
            logger.debug("Fetch stall of %d cycles at 0x%x", self.miss_delay, addr)
            for _ in range(self.miss_delay - 1):
                self.advance()
        self.push(slot)

    def drain(self) -> int:
        """Advance until every stage is a bubble. Returns the advances taken."""
        advances = 0
        while not all(slot.is_bubble for slot in self.stages):
            self.advance()
            advances += 1
        return advances

    # ── Trace driving ───────────────────────────────────────────────────

    def process_line(self, line: str, line_number: Optional[int] = None):
        slot = parse_instruction(line, line_number)
        self.fetch(slot)
        if self.trace_pipeline:
            print(self.dump_pipeline())

    def run_trace(self, lines: Iterable[str]):
        """Feed every non-blank trace line through the front-end."""
        try:
            for n, line in enumerate(lines, start=1):
                if not line.strip():
                    continue
                self.process_line(line, n)
        except UnicodeDecodeError as exc:
            raise TraceParseError(
                f"Malformed instruction: trace is not ASCII "
                f"(byte 0x{exc.object[exc.start]:02x})") from exc

    def finalize(self) -> List[str]:
        """Drain the pipeline and return the summary report."""
        self.drain()
        return self.report()

    # ── Debug / display ─────────────────────────────────────────────────

    def format_stage(self, index: int) -> str:
        if not 0 <= index < MAX_STAGES:
            raise PipelineDumpError(f"DUMP: Bad stage! ({index})")
        slot = self.stages[index]
        text = f"{_STAGE_LABELS[Stage(index)]}:\t {int(slot.kind)}: 0x{slot.instruction_address:x}"
        if index == Stage.FETCH:
            text = f"(cyc: {self.pipeline_cycles}) {text}"
        return text

    def dump_pipeline(self) -> str:
        return " \t".join(self.format_stage(i) for i in range(MAX_STAGES))

    def report(self) -> List[str]:
        return [
            " Cache Performance",
            f"\t Number of Cache Accesses is {self.cache.accesses}",
            f"\t Number of Cache Misses is {self.cache.misses}",
            f"\t Number of Cache Hits is {self.cache.hits}",
            f"\t Cache Miss Rate is {self.cache.miss_rate:f}",
            "",
            "Pipeline Performance",
            f"\t Total Cycles is {self.pipeline_cycles}",
            f"\t Total Instructions is {self.instruction_count}",
            f"\t Total Branch Instructions is {self.branch_count}",
            f"\t Total Correct Branch Predictions is {self.correct_branch_predictions}",
            f"\t Branch Prediction Accuracy is {self.branch_predictor.accuracy:f}",
            f"\t CPI is {self.cpi:f}",
        ]

# ─────────────────────────────────────────────────────────────────────────────
# Main
# ─────────────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Trace-driven 5-stage pipeline and LRU cache simulator"
    )
    parser.add_argument("index_bits", type=int,
                        help="Index bits; the cache has 2^index_bits sets")
    parser.add_argument("blocksize", type=int,
                        help="Block size in 4-byte words (power of two)")
    parser.add_argument("assoc", type=int,
                        help="Ways per set")
    parser.add_argument("branch_predict_taken", type=int, choices=(0, 1),
                        help="Static prediction: 0 (NOT taken), 1 (TAKEN)")
    parser.add_argument("trace", nargs="?", default=DEFAULT_TRACE,
                        help=f"Instruction trace file (default {DEFAULT_TRACE})")
    parser.add_argument("--miss-delay", type=int, default=CACHE_MISS_DELAY,
                        help=f"Cycles per cache miss (default {CACHE_MISS_DELAY})")
    parser.add_argument("--max-cache-size", type=int, default=MAX_CACHE_SIZE,
                        help=f"Cache size ceiling in bits (default {MAX_CACHE_SIZE})")
    parser.add_argument("--dump-pipeline", "-p", action="store_true",
                        help="Print the stage vector after every trace line")
    parser.add_argument("--quiet", "-q", action="store_true",
                        help="Suppress per-access HIT/MISS lines")
    parser.add_argument("--debug", action="store_true",
                        help="Log retirements, taken branches and stalls")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING,
                        format="%(levelname)s: %(message)s")

    try:
        trace_file = open(args.trace, "r", encoding="ascii")
    except OSError as exc:
        logger.error("fopen failed for %s file: %s", args.trace, exc.strerror)
        return 1

    with trace_file:
        try:
            sim = PipelineCacheSim(args.index_bits, args.blocksize, args.assoc,
                                   args.branch_predict_taken,
                                   miss_delay=args.miss_delay,
                                   max_cache_size=args.max_cache_size,
                                   verbose=not args.quiet,
                                   dump_pipeline=args.dump_pipeline)
            for line in sim.cache.describe():
                print(line)
            logger.info("Running trace %s", args.trace)
            sim.run_trace(trace_file)
        except CacheConfigError as exc:
            for line in exc.description:
                print(line)
            logger.error("%s", exc)
            return 1
        except SimulatorError as exc:
            logger.error("%s", exc)
            return 1

    for line in sim.finalize():
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
