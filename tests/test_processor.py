import math
import struct
from collections import Counter

import pytest

import memTomas.processor as processor_module
from memTomas.config import CacheConfig, SimulatorConfig
from memTomas.instruction import parse_program
from memTomas.processor import Processor, advance, initialize
from memTomas.reservation_station import UnitKind, UnitTag

SAMPLE_PROGRAM = """
L.D F6, 32(R2)
L.D F2, 44(R3)
MUL.D F0, F2, F4
SUB.D F8, F6, F2
DIV.D F10, F0, F6
ADD.D F6, F8, F2
S.D F6, 8(R2)
"""


def make_config(optimize=False, latencies=None, units=None, registers=None, memory=None):
    lat = {"ADD": 2, "MUL": 10, "DIV": 40, "INT_ADD": 1, "LOAD": 2, "STORE": 2}
    lat.update(latencies or {})
    counts = {"adders": 3, "multipliers": 2, "int_adders": 2, "load_buffers": 3, "store_buffers": 3}
    counts.update(units or {})
    return SimulatorConfig(
        latencies=lat,
        reservation_stations=counts,
        cache=CacheConfig(block_size=8, cache_size=64, hit_latency=1, miss_latency=10),
        is_optimization_mode=optimize,
        initial_registers=registers or {},
        initial_memory=memory or [],
    )


def double_bytes(number, start=0):
    return [(start + i, b) for i, b in enumerate(struct.pack("<d", number))]


def simulate(program, config, max_cycles=500):
    """Returns every state, index c holding the state after cycle c."""
    state = initialize(parse_program(program), config)
    states = [state]
    while not state.is_complete and state.cycle < max_cycles:
        state = advance(state, config)
        states.append(state)
    return states


def timings(state):
    return [instr.timestamps() for instr in state.instructions]


def test_load_miss_then_dependent_add():
    config = make_config(units={"adders": 1, "load_buffers": 1}, memory=double_bytes(4.0))
    states = simulate("L.D F0, 0(R1)\nADD.D F2, F0, F0", config)
    final = states[-1]

    assert final.is_complete
    assert timings(final) == [(1, 2, 3, 15), (2, 16, 17, 18)]
    assert final.registers.read("F2").number == 8.0

    cycle2 = states[2]
    assert cycle2.registers.get_tag("F0") == UnitTag(UnitKind.LOAD, 0)
    assert cycle2.stations[UnitKind.ADD][0].Qj == UnitTag(UnitKind.LOAD, 0)

    # The block arrives after the miss penalty, before the load finishes
    assert states[12].cache.get_line(0) is None
    assert states[13].cache.get_line(0) is not None


def test_sample_program_timestamps_are_ordered():
    final = simulate(SAMPLE_PROGRAM, make_config())[-1]
    assert final.is_complete

    for instr in final.instructions:
        stamps = instr.timestamps()
        assert None not in stamps
        assert list(stamps) == sorted(stamps)

    broadcasts = Counter(
        instr.write_result_cycle for instr in final.instructions
        if not instr.op_type.is_store and not instr.op_type.is_branch
    )
    assert max(broadcasts.values()) == 1


def test_destination_is_renamed_until_broadcast():
    states = simulate("ADD.D F2, F0, F0", make_config())
    assert states[1].registers.get_tag("F2") == UnitTag(UnitKind.ADD, 0)
    assert states[-1].registers.get_tag("F2") is None
    assert all(not rs.busy for rs in states[-1].all_stations())


def test_store_then_loads_round_trip():
    config = make_config(units={"store_buffers": 1, "load_buffers": 1},
                         registers={"F0": math.pi, "R1": 0})
    program = "S.D F0, 0(R1)\nL.D F2, 0(R1)\nL.D F4, 0(R1)"
    final = simulate(program, config)[-1]

    store, first, second = final.instructions
    assert store.issue_cycle == 1
    assert store.write_result_cycle == 13
    assert first.write_result_cycle == 26
    assert second.issue_cycle == 26
    assert second.write_result_cycle == 30  # cache hit

    assert final.registers.read("F2").number == math.pi
    assert final.registers.read("F4").number == math.pi
    assert final.memory.read_bytes(0, 8) == struct.pack("<d", math.pi)
    assert final.memory.write_log[0].cycle == 13


def test_load_waits_for_every_older_store():
    config = make_config(registers={"F0": 1.5, "F2": 2.5})
    program = "S.D F0, 0(R1)\nS.D F2, 0(R1)\nL.D F4, 0(R1)"
    final = simulate(program, config)[-1]

    assert [i.write_result_cycle for i in final.instructions] == [13, 24, 37]
    assert final.registers.read("F4").number == 2.5


def test_structural_hazard_stalls_issue():
    program = "ADD.D F2, F0, F0\nADD.D F4, F0, F0\nMUL.D F6, F0, F0"
    states = simulate(program, make_config(units={"adders": 1}))

    for cycle in (2, 3):
        assert states[cycle].instructions[1].issue_cycle is None
        assert states[cycle].instructions[2].issue_cycle is None
    assert states[4].instructions[1].issue_cycle == 4
    assert states[-1].is_complete


def test_missing_unit_never_issues():
    processor = Processor(make_config(units={"adders": 0}))
    processor.load_program("ADD.D F2, F0, F0")
    assert processor.run_simulation(max_cycles=20) == 20
    assert not processor.is_simulation_complete()
    assert processor.state.instructions[0].issue_cycle is None
    assert not processor.state.is_running


FAN_OUT_PROGRAM = """
MUL.D F2, F0, F0
ADD.D F4, F0, F0
ADD.D F6, F4, F0
ADD.D F8, F4, F0
"""


@pytest.mark.parametrize("optimize, mul_write, add_write", [
    (False, 5, 6),
    (True, 6, 5),
])
def test_cdb_arbitration_by_fan_out(optimize, mul_write, add_write):
    config = make_config(optimize=optimize, latencies={"MUL": 3})
    final = simulate(FAN_OUT_PROGRAM, config)[-1]
    assert final.instructions[0].write_result_cycle == mul_write
    assert final.instructions[1].write_result_cycle == add_write


def test_cdb_arbitration_breaks_fan_out_tie_by_critical_path():
    program = "MUL.D F2, F0, F0\nADD.D F4, F0, F0\nADD.D F6, F2, F0\nDIV.D F8, F4, F0"
    final = simulate(program, make_config(optimize=True, latencies={"MUL": 3}))[-1]
    assert final.instructions[1].write_result_cycle == 5
    assert final.instructions[0].write_result_cycle == 6


def test_overwritten_destination_keeps_newer_tag():
    config = make_config(registers={"F0": 1.0})
    states = simulate("ADD.D F2, F0, F0\nMUL.D F2, F0, F0", config)

    f2 = states[4].registers.get("F2")
    assert f2.value.number == 2.0
    assert f2.qi == UnitTag(UnitKind.MUL, 0)
    assert states[-1].registers.read("F2").number == 1.0


def test_store_waits_for_older_load_of_same_address():
    config = make_config(registers={"F0": 9.0}, memory=double_bytes(1.0))
    final = simulate("L.D F2, 0(R1)\nS.D F0, 0(R1)", config)[-1]

    load, store = final.instructions
    assert final.registers.read("F2").number == 1.0
    assert load.write_result_cycle == 15
    assert store.execute_start_cycle == 14
    assert store.write_result_cycle == 15
    assert final.cache.get_line(0).data == list(struct.pack("<d", 9.0))


def test_load_base_from_integer_add():
    config = make_config(memory=double_bytes(2.0, start=8))
    final = simulate("DADDI R1, R0, 8\nL.D F0, 0(R1)", config)[-1]
    assert final.registers.read("R1").number == 8
    assert final.registers.read("F0").number == 2.0


def test_word_load_store_round_trip():
    config = make_config(registers={"R2": -5})
    final = simulate("SW R2, 4(R0)\nLW R3, 4(R0)", config)[-1]
    assert final.registers.read("R3").number == -5
    assert final.memory.read_bytes(4, 4) == b"\xfb\xff\xff\xff"


def test_advance_leaves_input_untouched():
    config = make_config()
    start = initialize(parse_program("ADD.D F2, F0, F0"), config)
    after = advance(start, config)

    assert start.cycle == 0
    assert start.instructions[0].issue_cycle is None
    assert not start.stations[UnitKind.ADD][0].busy
    assert after.instructions[0].issue_cycle == 1


def test_advance_after_completion_fails():
    final = simulate("ADD.D F2, F0, F0", make_config())[-1]
    with pytest.raises(RuntimeError):
        advance(final, make_config())


def test_empty_program_completes_immediately():
    states = simulate("# nothing here", make_config())
    assert len(states) == 2
    assert states[-1].is_complete


def test_branch_retires_at_issue():
    final = simulate("BNE R1, R2, loop", make_config())[-1]
    assert final.instructions[0].timestamps() == (1, 1, 1, 1)
    assert final.cycle == 1


def test_processor_step_and_step_back():
    processor = Processor(make_config())
    processor.load_program("ADD.D F2, F0, F0\nMUL.D F4, F2, F2")
    assert not processor.step_back()

    processor.step()
    processor.step()
    before = processor.state
    processor.step()
    assert processor.current_cycle == 3

    assert processor.step_back()
    assert processor.state is before
    assert processor.current_cycle == 2

    final_cycle = processor.run_simulation()
    assert processor.is_simulation_complete()
    assert not processor.step()
    assert processor.current_cycle == final_cycle

    rows = processor.timing_rows()
    assert rows[0]["Issue"] == 1
    assert rows[1]["WriteResult"] == final_cycle

    processor.reset()
    assert processor.current_cycle == 0
    assert processor.history == []


def test_load_program_rejects_invalid_config():
    processor = Processor(make_config(units={"adders": -1}))
    with pytest.raises(ValueError):
        processor.load_program("ADD.D F2, F0, F0")
    assert processor.state is None


def test_failed_step_leaves_history_unchanged(monkeypatch):
    processor = Processor(make_config())
    processor.load_program("ADD.D F2, F0, F0")
    processor.step()

    def broken_advance(state, config):
        raise RuntimeError("engine failure")

    monkeypatch.setattr(processor_module, "advance", broken_advance)
    with pytest.raises(RuntimeError):
        processor.step()

    assert processor.current_cycle == 1
    assert len(processor.history) == 1
    assert processor.step_back()
    assert processor.current_cycle == 0


def test_negative_address_loads_zero_and_drops_store(caplog):
    config = make_config(registers={"F0": 3.0, "F2": 7.0})
    final = simulate("L.D F0, -8(R0)\nS.D F2, -16(R0)", config)[-1]

    assert final.is_complete
    assert final.registers.read("F0").number == 0.0
    assert final.memory.write_log == {}
    assert final.cache.lines == {}
    assert "negative address -8" in caplog.text
    assert "negative address -16" in caplog.text


def test_store_waits_for_older_store_with_pending_base():
    # The first store's base comes from a slow DADDI, the second store's is ready at issue
    config = make_config(latencies={"INT_ADD": 20}, registers={"F0": 1.5, "F2": 2.5})
    program = "DADDI R1, R0, 0\nS.D F0, 0(R1)\nS.D F2, 0(R0)"
    final = simulate(program, config)[-1]

    _, first, second = final.instructions
    assert first.write_result_cycle == 33
    assert second.execute_start_cycle == 33
    assert second.write_result_cycle == 44
    assert final.memory.read_bytes(0, 8) == struct.pack("<d", 2.5)


def test_store_waits_for_older_load_with_long_address_calculation():
    config = make_config(latencies={"LOAD": 3}, registers={"F0": 9.0}, memory=double_bytes(1.0))
    final = simulate("L.D F2, 0(R1)\nS.D F0, 0(R1)", config)[-1]

    load, store = final.instructions
    assert final.registers.read("F2").number == 1.0
    assert store.execute_start_cycle == 15
    assert store.write_result_cycle == 16
    assert load.write_result_cycle == 16
    assert final.memory.read_bytes(0, 8) == struct.pack("<d", 9.0)
