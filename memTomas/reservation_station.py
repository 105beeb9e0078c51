import copy
import logging
from enum import Enum
from typing import NamedTuple, Optional

from .instruction import Instruction, OpType
from .value import ZERO, Value, fround

logger = logging.getLogger(__name__)


class UnitKind(Enum):
    ADD = "Add"          # FP add/sub stations
    MUL = "Mul"          # FP mul/div stations
    INT_ADD = "IntAdd"   # DADDI/DSUBI stations
    LOAD = "Load"
    STORE = "Store"


class UnitTag(NamedTuple):
    """Identifies a producer: which pool, and which slot in it (0-based)."""
    kind: UnitKind
    index: int

    def __str__(self) -> str:
        return f"{self.kind.value}{self.index + 1}"


class ReservationStation:
    """Represents a single entry in a reservation station pool."""

    def __init__(self, tag: UnitTag):
        self.tag: UnitTag = tag

        # State fields, reset by clear()
        self.busy: bool = False
        self.op_type: Optional[OpType] = None
        self.instruction_id: Optional[int] = None

        self.Vj: Optional[Value] = None  # Value of source operand 1
        self.Vk: Optional[Value] = None  # Value of source operand 2
        self.Qj: Optional[UnitTag] = None  # Unit producing Vj (if not ready)
        self.Qk: Optional[UnitTag] = None  # Unit producing Vk (if not ready)

        self.A: Optional[int] = None     # Immediate

        self.time_remaining: int = 0
        self.operands_ready_cycle: Optional[int] = None

    @property
    def name(self) -> str:
        return str(self.tag)

    def issue(
        self,
        instruction: Instruction,
        vj: Optional[Value], qj: Optional[UnitTag],
        vk: Optional[Value], qk: Optional[UnitTag],
        latency: int
    ) -> None:
        """Populates the RS when an instruction is issued to it."""
        if self.busy:
            raise RuntimeError(f"Cannot issue to already busy RS: {self.name}")

        self.busy = True
        self.op_type = instruction.op_type
        self.instruction_id = instruction.uid
        self.Vj, self.Qj = vj, qj
        self.Vk, self.Qk = vk, qk
        self.A = instruction.imm
        self.time_remaining = latency
        self.operands_ready_cycle = None

    def clear(self) -> None:
        """Resets the reservation station to be free and clear all fields."""
        self.busy = False
        self.op_type = None
        self.instruction_id = None
        self.Vj = None
        self.Vk = None
        self.Qj = None
        self.Qk = None
        self.A = None
        self.time_remaining = 0
        self.operands_ready_cycle = None

    @property
    def operands_ready(self) -> bool:
        return self.Qj is None and self.Qk is None

    @property
    def finished(self) -> bool:
        return self.busy and self.time_remaining == 0

    def can_execute(self, cycle: int) -> bool:
        """
        True when the station may spend this cycle executing. Operands
        captured from the CDB during this same cycle only count from the next.
        """
        return (self.busy and self.operands_ready and self.time_remaining > 0
                and self.operands_ready_cycle != cycle)

    def waits_on(self, tag: UnitTag) -> bool:
        return self.busy and (self.Qj == tag or self.Qk == tag)

    def snoop_cdb(self, tag: UnitTag, value: Value, cycle: int) -> bool:
        """
        Captures a broadcast result this station is waiting for.
        Returns True if this RS captured a value.
        """
        if not self.waits_on(tag):
            return False
        if self.Qj == tag:
            self.Vj, self.Qj = value, None
        if self.Qk == tag:
            self.Vk, self.Qk = value, None
        if self.operands_ready:
            self.operands_ready_cycle = cycle
        return True

    def copy(self) -> "ReservationStation":
        # Values and tags are immutable, a shallow copy is enough
        return copy.copy(self)

    def __str__(self) -> str:
        if not self.busy:
            return f"RS({self.name}): Free"
        qj_str = f"Val:{self.Vj}" if self.Qj is None else f"Tag:{self.Qj}"
        qk_str = f"Val:{self.Vk}" if self.Qk is None else f"Tag:{self.Qk}"
        return (
            f"RS({self.name}, Busy: {self.busy}, Op: {self.op_type.value if self.op_type else 'N/A'}, "
            f"Vj: {qj_str}, Vk: {qk_str}, A: {self.A}, RemExec:{self.time_remaining})"
        )


def compute_result(rs: ReservationStation) -> Value:
    """Computes the value a finished station puts on the CDB."""
    op = rs.op_type
    vj = rs.Vj if rs.Vj is not None else ZERO
    vk = rs.Vk if rs.Vk is not None else ZERO

    if op is OpType.DADDI:
        return Value.integer(vj.as_int() + vk.as_int())
    if op is OpType.DSUBI:
        return Value.integer(vj.as_int() - vk.as_int())

    single = op.is_single_precision
    a, b = vj.as_float(), vk.as_float()
    if single:
        a, b = fround(a), fround(b)

    if op in (OpType.ADD_D, OpType.ADD_S):
        result = a + b
    elif op in (OpType.SUB_D, OpType.SUB_S):
        result = a - b
    elif op in (OpType.MUL_D, OpType.MUL_S):
        result = a * b
    elif op in (OpType.DIV_D, OpType.DIV_S):
        if b == 0:
            logger.warning("%s (%s) division by zero, result is 0", rs.name, op.value)
            result = 0.0
        else:
            result = a / b
    else:
        raise RuntimeError(f"{rs.name} holds non-arithmetic operation {op}")

    return Value.floating(result, 32 if single else 64)
