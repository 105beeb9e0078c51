import copy
from enum import Enum
from typing import Iterable, Optional

from .instruction import Instruction, OpType
from .reservation_station import UnitTag
from .value import Value


class BufferStage(Enum):
    ADDRESS_CALC = "ADDRESS_CALC"
    MEMORY_ACCESS = "MEMORY_ACCESS"
    COMPLETED = "COMPLETED"


class LoadStoreBuffer:
    """
    One slot of the load or store buffer pool.

    A load walks ADDRESS_CALC -> MEMORY_ACCESS -> COMPLETED and then waits for
    the CDB. A store leaves ADDRESS_CALC once its base register and its value
    are both known, and is freed as soon as its memory access finishes.
    """

    def __init__(self, tag: UnitTag):
        self.tag: UnitTag = tag

        self.busy: bool = False
        self.stage: BufferStage = BufferStage.ADDRESS_CALC
        self.op_type: Optional[OpType] = None
        self.instruction_id: Optional[int] = None
        self.offset: int = 0

        self.base_value: Optional[Value] = None
        self.address: Optional[int] = None
        self.value: Optional[Value] = None
        self.time_remaining: int = 0

        self.base_register_tag: Optional[UnitTag] = None
        self.store_value_tag: Optional[UnitTag] = None

        # Only meaningful while in MEMORY_ACCESS
        self.cache_hit: Optional[bool] = None
        self.cycles_until_block_loaded: Optional[int] = None

    @property
    def name(self) -> str:
        return str(self.tag)

    @property
    def is_store(self) -> bool:
        return self.op_type is not None and self.op_type.is_store

    @property
    def in_flight(self) -> bool:
        return self.busy and self.stage is not BufferStage.COMPLETED

    def _occupy(self, instruction: Instruction) -> None:
        if self.busy:
            raise RuntimeError(f"Cannot issue to already busy buffer: {self.name}")
        self.clear()
        self.busy = True
        self.op_type = instruction.op_type
        self.instruction_id = instruction.uid
        self.offset = instruction.imm or 0

    def issue_load(self, instruction: Instruction, base_value: Optional[Value],
                   base_tag: Optional[UnitTag], latency: int) -> None:
        """
        The effective address is recorded as soon as the base is known, for
        ordering checks against stores. The load still spends `latency` cycles
        of address calculation, none of which start before the base is ready.
        """
        self._occupy(instruction)
        self.base_value = base_value
        self.base_register_tag = base_tag
        if base_tag is None:
            self.address = base_value.as_int() + self.offset
        self.time_remaining = latency

    def issue_store(self, instruction: Instruction,
                    base_value: Optional[Value], base_tag: Optional[UnitTag],
                    store_value: Optional[Value], store_tag: Optional[UnitTag]) -> None:
        self._occupy(instruction)
        self.base_value = base_value
        self.base_register_tag = base_tag
        if base_tag is None:
            self.address = base_value.as_int() + self.offset
        self.value = store_value
        self.store_value_tag = store_tag

    def waits_on(self, tag: UnitTag) -> bool:
        return self.busy and (self.base_register_tag == tag or self.store_value_tag == tag)

    def snoop_cdb(self, tag: UnitTag, value: Value) -> bool:
        """Captures a broadcast base register or store value. Returns True if captured."""
        if not self.waits_on(tag):
            return False
        if self.base_register_tag == tag:
            self.base_value = value
            self.address = value.as_int() + self.offset
            self.base_register_tag = None
        if self.store_value_tag == tag:
            self.value = value
            self.store_value_tag = None
        return True

    def start_memory_access(self, hit: bool, latency: int, miss_latency: int) -> None:
        self.stage = BufferStage.MEMORY_ACCESS
        self.time_remaining = latency
        self.cache_hit = hit
        # A missed block becomes resident after the miss penalty, before the hit-latency transfer
        self.cycles_until_block_loaded = 0 if hit else miss_latency

    def clear(self) -> None:
        """Frees the buffer and resets every instruction-scoped field."""
        self.busy = False
        self.stage = BufferStage.ADDRESS_CALC
        self.op_type = None
        self.instruction_id = None
        self.offset = 0
        self.base_value = None
        self.address = None
        self.value = None
        self.time_remaining = 0
        self.base_register_tag = None
        self.store_value_tag = None
        self.cache_hit = None
        self.cycles_until_block_loaded = None

    def copy(self) -> "LoadStoreBuffer":
        return copy.copy(self)

    def __str__(self) -> str:
        if not self.busy:
            return f"Buffer({self.name}): Free"
        return (
            f"Buffer({self.name}, Op: {self.op_type.value}, Stage: {self.stage.value}, "
            f"Addr: {self.address}, Value: {self.value}, RemExec:{self.time_remaining})"
        )


def find_memory_conflict(buf: LoadStoreBuffer,
                         others: Iterable[LoadStoreBuffer]) -> Optional[LoadStoreBuffer]:
    """
    Returns an older, still in-flight buffer that may access the same address
    as `buf`, or None. Program order is the instruction id.

    An older buffer whose base register is still pending could alias any
    address, so it conflicts until its address resolves.
    """
    if buf.address is None or buf.instruction_id is None:
        return None
    for other in others:
        if other is buf or not other.in_flight or other.instruction_id > buf.instruction_id:
            continue
        if other.address is None or other.address == buf.address:
            return other
    return None
