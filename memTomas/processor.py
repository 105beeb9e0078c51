import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from .cache import Cache
from .config import SimulatorConfig, get_instruction_latency
from .instruction import Instruction, OpType, parse_program
from .load_store_buffer import BufferStage, LoadStoreBuffer, find_memory_conflict
from .memory import Memory
from .register_file import RegisterFile
from .reservation_station import ReservationStation, UnitKind, UnitTag, compute_result
from .value import ZERO, Value

logger = logging.getLogger(__name__)

Unit = Union[ReservationStation, LoadStoreBuffer]

STATION_POOLS = {
    UnitKind.ADD: "adders",
    UnitKind.MUL: "multipliers",
    UnitKind.INT_ADD: "int_adders",
}
BUFFER_POOLS = {
    UnitKind.LOAD: "load_buffers",
    UnitKind.STORE: "store_buffers",
}


def get_unit_kind(op: OpType) -> Optional[UnitKind]:
    """Returns the pool an opcode issues to, or None for branches."""
    if op.is_immediate:
        return UnitKind.INT_ADD
    if op.is_load:
        return UnitKind.LOAD
    if op.is_store:
        return UnitKind.STORE
    if op in (OpType.ADD_D, OpType.ADD_S, OpType.SUB_D, OpType.SUB_S):
        return UnitKind.ADD
    if op in (OpType.MUL_D, OpType.MUL_S, OpType.DIV_D, OpType.DIV_S):
        return UnitKind.MUL
    return None


@dataclass
class SimulatorState:
    """Everything the cycle engine owns. advance() never mutates one in place."""
    instructions: List[Instruction]
    stations: Dict[UnitKind, List[ReservationStation]]
    buffers: Dict[UnitKind, List[LoadStoreBuffer]]
    registers: RegisterFile
    cache: Cache
    memory: Memory
    cycle: int = 0
    is_running: bool = False
    is_complete: bool = False

    @property
    def load_buffers(self) -> List[LoadStoreBuffer]:
        return self.buffers[UnitKind.LOAD]

    @property
    def store_buffers(self) -> List[LoadStoreBuffer]:
        return self.buffers[UnitKind.STORE]

    def all_stations(self) -> List[ReservationStation]:
        return [rs for pool in self.stations.values() for rs in pool]

    def all_buffers(self) -> List[LoadStoreBuffer]:
        return self.load_buffers + self.store_buffers

    def clone(self) -> "SimulatorState":
        return SimulatorState(
            instructions=[instr.copy() for instr in self.instructions],
            stations={kind: [rs.copy() for rs in pool] for kind, pool in self.stations.items()},
            buffers={kind: [buf.copy() for buf in pool] for kind, pool in self.buffers.items()},
            registers=self.registers.copy(),
            cache=self.cache.copy(),
            memory=self.memory.copy(),
            cycle=self.cycle,
            is_running=self.is_running,
            is_complete=self.is_complete,
        )


def initialize(instructions: List[Instruction], config: SimulatorConfig) -> SimulatorState:
    """Builds the cycle-0 state: sized pools, seeded registers and memory, empty cache."""
    config.validate()

    counts = config.reservation_stations
    stations = {
        kind: [ReservationStation(UnitTag(kind, i)) for i in range(counts.get(key, 0))]
        for kind, key in STATION_POOLS.items()
    }
    buffers = {
        kind: [LoadStoreBuffer(UnitTag(kind, i)) for i in range(counts.get(key, 0))]
        for kind, key in BUFFER_POOLS.items()
    }

    registers = RegisterFile()
    for name, number in config.initial_registers.items():
        registers.seed(name, number)

    program = []
    for instr in instructions:
        instr = instr.copy()
        instr.issue_cycle = instr.execute_start_cycle = None
        instr.execute_end_cycle = instr.write_result_cycle = None
        program.append(instr)

    return SimulatorState(
        instructions=program,
        stations=stations,
        buffers=buffers,
        registers=registers,
        cache=Cache(config.cache),
        memory=Memory(config.initial_memory),
    )


def advance(state: SimulatorState, config: SimulatorConfig) -> SimulatorState:
    """
    Simulates one clock cycle and returns the resulting state.

    Phases run in a fixed order: Write-Result, Execute, Issue. The input
    state is left untouched.
    """
    if state.is_complete:
        raise RuntimeError(f"Simulation already complete at cycle {state.cycle}")

    new_state = state.clone()
    new_state.cycle += 1
    logger.debug("--- Cycle %d Start ---", new_state.cycle)

    engine = _CycleEngine(new_state, config)
    engine.write_result_stage()
    engine.execute_stage()
    engine.issue_stage()

    if all(instr.is_complete for instr in new_state.instructions):
        new_state.is_complete = True
        new_state.is_running = False
        logger.info("Simulation complete at cycle %d", new_state.cycle)
    return new_state


class _CycleEngine:
    """Runs the three phases of one cycle over a state it may mutate."""

    def __init__(self, state: SimulatorState, config: SimulatorConfig):
        self.state = state
        self.config = config
        self.cycle = state.cycle

    def _instruction(self, unit: Unit) -> Instruction:
        return self.state.instructions[unit.instruction_id]

    # ------------------------------------------------------------------
    # Phase 1: Write-Result
    # ------------------------------------------------------------------

    def fan_out(self, tag: UnitTag) -> int:
        """Number of stations and buffers waiting on tag."""
        units = self.state.all_stations() + self.state.all_buffers()
        return sum(1 for unit in units if unit.waits_on(tag))

    def critical_path(self, tag: UnitTag) -> int:
        """Longest latency among the instructions waiting on tag."""
        units = self.state.all_stations() + self.state.all_buffers()
        latencies = [
            get_instruction_latency(unit.op_type.value, self.config)
            for unit in units if unit.waits_on(tag)
        ]
        return max(latencies, default=0)

    def _arbitrate(self, candidates: List[Unit]) -> Unit:
        def issue_order(unit: Unit) -> int:
            return self._instruction(unit).issue_cycle

        if not self.config.is_optimization_mode:
            return min(candidates, key=issue_order)
        return min(candidates, key=lambda unit: (
            -self.fan_out(unit.tag),
            -self.critical_path(unit.tag),
            issue_order(unit),
        ))

    def write_result_stage(self) -> None:
        state = self.state
        candidates: List[Unit] = [rs for rs in state.all_stations() if rs.finished]
        candidates += [buf for buf in state.load_buffers
                       if buf.busy and buf.stage is BufferStage.COMPLETED]
        if not candidates:
            return

        winner = self._arbitrate(candidates)
        tag = winner.tag
        if isinstance(winner, ReservationStation):
            value = compute_result(winner)
        else:
            value = winner.value if winner.value is not None else ZERO

        instr = self._instruction(winner)
        if instr.write_result_cycle is None:
            instr.write_result_cycle = self.cycle
        logger.debug("CDB Broadcasting: %s = %s (%s), %d waiting",
                     tag, value, instr, len(candidates) - 1)

        updated = state.registers.on_broadcast(tag, value, instr.dest)
        if updated:
            logger.debug("Registers updated by %s: %s", tag, ", ".join(updated))
        for rs in state.all_stations():
            if rs.snoop_cdb(tag, value, self.cycle):
                logger.debug("%s snooped %s", rs.name, tag)
        for buf in state.all_buffers():
            if buf.snoop_cdb(tag, value):
                logger.debug("%s snooped %s, address %s", buf.name, tag, buf.address)

        winner.clear()

    # ------------------------------------------------------------------
    # Phase 2: Execute
    # ------------------------------------------------------------------

    def execute_stage(self) -> None:
        for rs in self.state.all_stations():
            if not rs.can_execute(self.cycle):
                if rs.busy and rs.operands_ready and rs.time_remaining > 0:
                    logger.debug("%s operands just became ready, executing next cycle", rs.name)
                continue
            rs.time_remaining -= 1
            instr = self._instruction(rs)
            if instr.execute_start_cycle is None:
                instr.execute_start_cycle = self.cycle
                # Execution is never interrupted once started
                instr.execute_end_cycle = self.cycle + rs.time_remaining

        for buf in self.state.load_buffers:
            if buf.busy:
                self._execute_load(buf)
        for buf in self.state.store_buffers:
            if buf.busy:
                self._execute_store(buf)

    def _start_memory_access(self, buf: LoadStoreBuffer) -> None:
        access = self.state.cache.lookup(buf.address)
        buf.start_memory_access(access.hit, access.latency, self.config.cache.miss_latency)
        if not buf.is_store and not access.hit and buf.cycles_until_block_loaded == 0:
            self._fill_block(buf)
        logger.debug("%s starting memory access (%s): %d cycles",
                     buf.name, "HIT" if access.hit else "MISS", access.latency)

    def _fill_block(self, buf: LoadStoreBuffer) -> None:
        # Negative addresses map to no memory block
        if buf.address >= 0:
            self.state.cache.fill(buf.address, self.state.memory)

    def _execute_load(self, buf: LoadStoreBuffer) -> None:
        instr = self._instruction(buf)

        if buf.stage is BufferStage.ADDRESS_CALC:
            if buf.base_register_tag is not None:
                logger.debug("%s waiting for base register from %s", buf.name, buf.base_register_tag)
                return
            if buf.time_remaining > 0:
                buf.time_remaining -= 1
                if instr.execute_start_cycle is None:
                    instr.execute_start_cycle = self.cycle
                if buf.time_remaining > 0:
                    return
                if instr.execute_end_cycle is None:
                    instr.execute_end_cycle = self.cycle
                logger.debug("%s address calculation complete: %d", buf.name, buf.address)

            conflict = find_memory_conflict(buf, self.state.store_buffers)
            if conflict is not None:
                logger.debug("%s blocked by older %s at address %d (RAW)", buf.name, conflict.name, buf.address)
                return
            self._start_memory_access(buf)
            if buf.time_remaining == 0:
                self._finish_load(buf)
            # The first memory access cycle is the next one
            return

        if buf.stage is BufferStage.MEMORY_ACCESS and buf.time_remaining > 0:
            buf.time_remaining -= 1
            if not buf.cache_hit and buf.cycles_until_block_loaded > 0:
                buf.cycles_until_block_loaded -= 1
                if buf.cycles_until_block_loaded == 0:
                    self._fill_block(buf)
            if buf.time_remaining == 0:
                self._finish_load(buf)

    def _finish_load(self, buf: LoadStoreBuffer) -> None:
        if buf.address < 0:
            logger.warning("%s reads negative address %d, loading 0", buf.name, buf.address)
            buf.value = Value.decode(bytes(buf.op_type.access_size), buf.op_type.loaded_kind)
        else:
            buf.value = self.state.memory.load_value(buf.address, buf.op_type)
        buf.stage = BufferStage.COMPLETED
        logger.debug("%s loaded value %s from address %d", buf.name, buf.value, buf.address)

    def _execute_store(self, buf: LoadStoreBuffer) -> None:
        instr = self._instruction(buf)

        if buf.stage is BufferStage.ADDRESS_CALC:
            if buf.base_register_tag is not None:
                logger.debug("%s waiting for base register from %s", buf.name, buf.base_register_tag)
                return
            if buf.store_value_tag is not None:
                logger.debug("%s waiting for store value from %s", buf.name, buf.store_value_tag)
                return

            conflict = (find_memory_conflict(buf, self.state.load_buffers)
                        or find_memory_conflict(buf, self.state.store_buffers))
            if conflict is not None:
                logger.debug("%s blocked by older %s at address %d (WAR/WAW)", buf.name, conflict.name, buf.address)
                return
            self._start_memory_access(buf)
            if instr.execute_start_cycle is None:
                instr.execute_start_cycle = self.cycle
            if buf.time_remaining == 0:
                self._commit_store(buf, instr)
            return

        if buf.stage is BufferStage.MEMORY_ACCESS and buf.time_remaining > 0:
            buf.time_remaining -= 1
            if buf.time_remaining == 0:
                self._commit_store(buf, instr)

    def _commit_store(self, buf: LoadStoreBuffer, instr: Instruction) -> None:
        state = self.state
        if buf.address < 0:
            logger.warning("%s writes negative address %d, store dropped", buf.name, buf.address)
        else:
            raw = state.memory.store_value(buf.address, buf.value, buf.op_type, self.cycle)
            if state.cache.patch(buf.address, raw):
                logger.debug("Updated cache line for address %d with %d bytes", buf.address, len(raw))
            logger.debug("%s stored value %s to address %d", buf.name, buf.value, buf.address)

        # Stores complete without the CDB
        instr.execute_end_cycle = self.cycle
        if instr.write_result_cycle is None:
            instr.write_result_cycle = self.cycle
        buf.stage = BufferStage.COMPLETED
        buf.clear()

    # ------------------------------------------------------------------
    # Phase 3: Issue
    # ------------------------------------------------------------------

    def _read_operand(self, name: str) -> Tuple[Optional[Value], Optional[UnitTag]]:
        tag = self.state.registers.get_tag(name)
        if tag is not None:
            return None, tag
        return self.state.registers.read(name), None

    def issue_stage(self) -> None:
        state = self.state
        instr = next((i for i in state.instructions if i.issue_cycle is None), None)
        if instr is None:
            return
        op = instr.op_type

        if op.is_branch:
            # Control flow is not executed; the branch retires where it issues
            instr.issue_cycle = instr.execute_start_cycle = self.cycle
            instr.execute_end_cycle = instr.write_result_cycle = self.cycle
            logger.debug("Issued %s (branch, not executed)", instr)
            return

        kind = get_unit_kind(op)
        pool = state.stations.get(kind) or state.buffers.get(kind) or []
        unit = next((u for u in pool if not u.busy), None)
        if unit is None:
            logger.debug("Structural hazard: no free %s unit for %s", kind.value, instr)
            return

        instr.issue_cycle = self.cycle
        latency = get_instruction_latency(op.value, self.config)

        if op.is_load:
            base_value, base_tag = self._read_operand(instr.src1)
            unit.issue_load(instr, base_value, base_tag, latency)
            state.registers.set_tag(instr.dest, unit.tag)
        elif op.is_store:
            base_value, base_tag = self._read_operand(instr.src1)
            value, value_tag = self._read_operand(instr.src2)
            unit.issue_store(instr, base_value, base_tag, value, value_tag)
        else:
            vj, qj = self._read_operand(instr.src1)
            if op.is_immediate:
                vk, qk = Value.integer(instr.imm or 0), None
            else:
                vk, qk = self._read_operand(instr.src2)
            unit.issue(instr, vj, qj, vk, qk, latency)
            # Older consumers already hold their operands, so renaming removes WAR/WAW
            state.registers.set_tag(instr.dest, unit.tag)

        logger.debug("Issued %s to %s", instr, unit.name)


class Processor:
    """Drives the simulation: program loading, stepping, undo and timing output."""

    def __init__(self, config: Optional[SimulatorConfig] = None):
        self.config: SimulatorConfig = config if config is not None else SimulatorConfig()
        self.program_string: str = ""
        self.instructions: List[Instruction] = []
        self.state: Optional[SimulatorState] = None
        self.history: List[SimulatorState] = []

    def load_program(self, program_string: str) -> None:
        """
        Parses the program and builds a fresh state. Raises ProgramError or
        ValueError before anything is replaced.
        """
        instructions = parse_program(program_string)
        state = initialize(instructions, self.config)
        self.program_string = program_string
        self.instructions = instructions
        self.state = state
        self.history = []
        logger.info("Program loaded. %d instructions.", len(instructions))

    def reset(self) -> None:
        """Returns to cycle 0 of the loaded program."""
        self.state = initialize(self.instructions, self.config)
        self.history = []

    def _require_state(self) -> SimulatorState:
        if self.state is None:
            raise RuntimeError("No program loaded")
        return self.state

    @property
    def current_cycle(self) -> int:
        return self.state.cycle if self.state is not None else 0

    def is_simulation_complete(self) -> bool:
        return self._require_state().is_complete

    def step(self) -> bool:
        """Simulates one cycle. Returns False if the simulation had already completed."""
        state = self._require_state()
        if state.is_complete:
            return False
        new_state = advance(state, self.config)
        self.history.append(state)
        self.state = new_state
        return True

    def step_back(self) -> bool:
        """Restores the state before the last step. Returns False at cycle 0."""
        if not self.history:
            return False
        self.state = self.history.pop()
        return True

    def run_simulation(self, max_cycles: int = 1000) -> int:
        """Runs until completion or max_cycles. Returns the final cycle."""
        state = self._require_state()
        state.is_running = not state.is_complete
        while not self.state.is_complete and self.state.cycle < max_cycles:
            self.step()
        if not self.state.is_complete:
            self.state.is_running = False
            logger.warning("Simulation stopped at max cycles: %d", max_cycles)
        return self.state.cycle

    def timing_rows(self) -> List[dict]:
        rows = []
        for instr in self._require_state().instructions:
            rows.append({
                "Instruction": str(instr),
                "Issue": instr.issue_cycle,
                "ExecStart": instr.execute_start_cycle,
                "ExecEnd": instr.execute_end_cycle,
                "WriteResult": instr.write_result_cycle,
            })
        return rows

    def print_timing_results(self) -> None:
        """Prints the instruction timing table."""
        print(f"{'Instruction':<30} | {'Issue':>6} | {'ExecStart':>9} | {'ExecEnd':>8} | {'WriteResult':>11}")
        print("-" * 78)
        for row in self.timing_rows():
            cells = [("-" if row[k] is None else str(row[k])) for k in ("Issue", "ExecStart", "ExecEnd", "WriteResult")]
            print(f"{row['Instruction']:<30} | {cells[0]:>6} | {cells[1]:>9} | {cells[2]:>8} | {cells[3]:>11}")


if __name__ == '__main__':
    import argparse

    parser = argparse.ArgumentParser(description="Run a program through the Tomasulo simulator.")
    parser.add_argument("program", help="assembly file, one instruction per line")
    parser.add_argument("--optimize", action="store_true", help="heuristic CDB arbitration")
    parser.add_argument("--max-cycles", type=int, default=1000)
    parser.add_argument("-v", "--verbose", action="store_true", help="trace every cycle")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")

    with open(args.program, 'r') as f:
        program = f.read()

    processor = Processor(SimulatorConfig(is_optimization_mode=args.optimize))
    processor.load_program(program)
    processor.run_simulation(max_cycles=args.max_cycles)
    processor.print_timing_results()
    print()
    print(processor.state.registers)
