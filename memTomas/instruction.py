import copy
import re
from enum import Enum
from typing import List, Optional, Tuple

from .config import NUM_REGISTERS
from .value import ValueKind


class OpType(Enum):
    DADDI = "DADDI"   # Integer add immediate: DADDI Rd, Rs, Imm
    DSUBI = "DSUBI"   # Integer subtract immediate: DSUBI Rd, Rs, Imm
    ADD_D = "ADD.D"   # FP: ADD.D Fd, Fs, Ft
    ADD_S = "ADD.S"
    SUB_D = "SUB.D"
    SUB_S = "SUB.S"
    MUL_D = "MUL.D"
    MUL_S = "MUL.S"
    DIV_D = "DIV.D"
    DIV_S = "DIV.S"
    LW = "LW"         # Loads: L.D Fd, offset(Rbase)
    LD = "LD"
    L_S = "L.S"
    L_D = "L.D"
    SW = "SW"         # Stores: S.D Fs, offset(Rbase)
    SD = "SD"
    S_S = "S.S"
    S_D = "S.D"
    BNE = "BNE"       # Branches: BNE Rs, Rt, label (parsed, not executed)
    BEQ = "BEQ"

    @property
    def mnemonic(self) -> str:
        return self.value

    @property
    def is_load(self) -> bool:
        return self in (OpType.LW, OpType.LD, OpType.L_S, OpType.L_D)

    @property
    def is_store(self) -> bool:
        return self in (OpType.SW, OpType.SD, OpType.S_S, OpType.S_D)

    @property
    def is_memory(self) -> bool:
        return self.is_load or self.is_store

    @property
    def is_branch(self) -> bool:
        return self in (OpType.BNE, OpType.BEQ)

    @property
    def is_immediate(self) -> bool:
        return self in (OpType.DADDI, OpType.DSUBI)

    @property
    def is_single_precision(self) -> bool:
        return self.value.endswith(".S")

    @property
    def access_size(self) -> int:
        """Bytes moved by a load/store: 8 for double words, 4 otherwise."""
        return 8 if self in (OpType.LD, OpType.L_D, OpType.SD, OpType.S_D) else 4

    @property
    def loaded_kind(self) -> ValueKind:
        return ValueKind.FLOAT if self in (OpType.L_S, OpType.L_D) else ValueKind.INT


_OPCODES = {op.value: op for op in OpType}
_REGISTER_RE = re.compile(r"[RF]([0-9]{1,2})")


class ProgramError(ValueError):
    """Raised when program text cannot be turned into instructions."""

    def __init__(self, message: str, lines: Optional[List[int]] = None):
        super().__init__(message)
        self.lines: List[int] = lines or []


class Instruction:
    """
    Represents a parsed assembly instruction and its execution timestamps.
    """
    def __init__(self, raw_instruction: str, uid: int, line_number: Optional[int] = None):
        self.raw_instruction: str = raw_instruction.strip()
        self.uid: int = uid                  # Position in program order
        self.line_number: Optional[int] = line_number

        self.op_type: Optional[OpType] = None
        self.dest: Optional[str] = None      # Destination register name
        self.src1: Optional[str] = None      # Source / base register name
        self.src2: Optional[str] = None      # Second source, or the value register of a store
        self.imm: Optional[int] = None       # Immediate value or offset
        self.label: Optional[str] = None     # Branch target, never resolved

        # Timing information to be filled by the cycle engine
        self.issue_cycle: Optional[int] = None
        self.execute_start_cycle: Optional[int] = None
        self.execute_end_cycle: Optional[int] = None
        self.write_result_cycle: Optional[int] = None

        try:
            self._parse()
        except ValueError as e:
            raise ValueError(f"Failed to parse instruction '{self.raw_instruction}': {e}")

    def _parse_register(self, reg_str: str) -> str:
        """Normalizes a register token like 'f2' to 'F2'."""
        reg = reg_str.upper()
        match = _REGISTER_RE.fullmatch(reg)
        if not match or int(match.group(1)) >= NUM_REGISTERS:
            raise ValueError(f"Invalid register: '{reg_str}'")
        return reg[0] + str(int(match.group(1)))

    def _parse_immediate(self, imm_str: str) -> int:
        try:
            return int(imm_str)
        except ValueError:
            raise ValueError(f"Invalid immediate value: '{imm_str}'")

    def _parse(self):
        text = self.raw_instruction.split('#')[0].strip()
        parts = [p for p in re.split(r"[\s,()]+", text) if p]
        if not parts:
            raise ValueError("Empty instruction")

        # "L. D F0, 0(R1)" -> "L.D F0, 0(R1)"
        op_str = parts[0].upper()
        if op_str.endswith('.') and len(parts) > 1 and len(parts[1]) == 1:
            op_str += parts.pop(1).upper()
        operands = parts[1:]

        if op_str not in _OPCODES:
            raise ValueError(f"Unknown operation: '{op_str}'")
        self.op_type = op = _OPCODES[op_str]

        if op.is_memory:
            # OP Freg, offset(Rbase) -- the offset may be omitted: OP Freg, (Rbase)
            if len(operands) == 2:
                operands = [operands[0], "0", operands[1]]
            if len(operands) != 3:
                raise ValueError(f"Expected '{op_str} reg, offset(base)', got '{text}'")
            reg = self._parse_register(operands[0])
            self.imm = self._parse_immediate(operands[1])
            self.src1 = self._parse_register(operands[2])
            if not self.src1.startswith("R"):
                raise ValueError(f"Base register must be an integer register, got '{self.src1}'")
            if op.is_load:
                self.dest = reg
            else:
                self.src2 = reg
        elif op.is_immediate:
            if len(operands) != 3:
                raise ValueError(f"Expected '{op_str} Rd, Rs, imm', got '{text}'")
            self.dest = self._parse_register(operands[0])
            self.src1 = self._parse_register(operands[1])
            self.imm = self._parse_immediate(operands[2])
        elif op.is_branch:
            if len(operands) != 3:
                raise ValueError(f"Expected '{op_str} Rs, Rt, label', got '{text}'")
            self.src1 = self._parse_register(operands[0])
            self.src2 = self._parse_register(operands[1])
            self.label = operands[2]
        else:
            if len(operands) != 3:
                raise ValueError(f"Expected '{op_str} d, s, t', got '{text}'")
            self.dest = self._parse_register(operands[0])
            self.src1 = self._parse_register(operands[1])
            self.src2 = self._parse_register(operands[2])

    @property
    def is_complete(self) -> bool:
        return self.write_result_cycle is not None

    def timestamps(self) -> Tuple[Optional[int], Optional[int], Optional[int], Optional[int]]:
        return (self.issue_cycle, self.execute_start_cycle,
                self.execute_end_cycle, self.write_result_cycle)

    def copy(self) -> "Instruction":
        # Every field is a scalar, so a shallow copy is a full copy
        return copy.copy(self)

    def __str__(self) -> str:
        return self.raw_instruction

    def __repr__(self) -> str:
        details = [f"'{self.raw_instruction}' (UID:{self.uid}) Op:{self.op_type.value if self.op_type else 'N/A'}"]
        if self.dest is not None: details.append(f"Dest:{self.dest}")
        if self.src1 is not None: details.append(f"Src1:{self.src1}")
        if self.src2 is not None: details.append(f"Src2:{self.src2}")
        if self.imm is not None: details.append(f"Imm:{self.imm}")
        return "<Instruction " + ", ".join(details) + ">"


def parse_program(program_string: str) -> List[Instruction]:
    """
    Parses assembly text, one instruction per line. Blank lines and lines
    starting with '#' are skipped. Every problem in the program is collected
    and reported in a single ProgramError, including any instruction that
    writes to R0.
    """
    instructions: List[Instruction] = []
    errors: List[Tuple[int, str]] = []

    for line_number, line in enumerate(program_string.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        try:
            instr = Instruction(line, uid=len(instructions), line_number=line_number)
        except ValueError as e:
            errors.append((line_number, str(e)))
            continue
        instructions.append(instr)

    if errors:
        details = "\n".join(f"Line {n}: {msg}" for n, msg in errors)
        raise ProgramError(f"Could not parse program:\n{details}", [n for n, _ in errors])

    r0_writes = [instr for instr in instructions if instr.dest == "R0"]
    if r0_writes:
        details = "\n".join(f"Line {instr.line_number}: {instr.raw_instruction}" for instr in r0_writes)
        raise ProgramError(f"Cannot write to R0 register (always 0):\n{details}",
                           [instr.line_number for instr in r0_writes])

    return instructions
