import streamlit as st

import memTomas.config as config
from memTomas.config import CacheConfig, SimulatorConfig
from memTomas.instruction import ProgramError
from memTomas.processor import Processor

st.set_page_config(page_title="Tomasulo Simulator", layout="wide")
st.title("Tomasulo Algorithm Simulator (Educational GUI)")

SAMPLE_PROGRAM = """L.D F6, 0(R2)
L.D F2, 8(R2)
MUL.D F0, F2, F4
SUB.D F8, F6, F2
DIV.D F10, F0, F6
ADD.D F6, F8, F2
S.D F6, 16(R2)"""

# --- Session State Initialization ---
if 'processor' not in st.session_state:
    st.session_state.processor = None
    st.session_state.program = SAMPLE_PROGRAM

# --- Sidebar: Hardware Config ---
st.sidebar.header("Latencies (cycles)")
latencies = {}
for name, cycles in config.LATENCIES.items():
    latencies[name] = st.sidebar.number_input(name, min_value=0 if name == "STORE" else 1,
                                              value=cycles, key=f"lat_{name}")

st.sidebar.header("Units")
unit_counts = {}
for name, count in config.UNIT_COUNTS.items():
    unit_counts[name] = st.sidebar.number_input(name.replace("_", " ").title(), min_value=0,
                                                value=count, key=f"units_{name}")

st.sidebar.header("Cache")
cache = CacheConfig(
    block_size=st.sidebar.number_input("Block size (bytes)", min_value=1, value=config.CACHE_CONFIG["block_size"]),
    cache_size=st.sidebar.number_input("Cache size (bytes)", min_value=1, value=config.CACHE_CONFIG["cache_size"]),
    hit_latency=st.sidebar.number_input("Hit latency", min_value=0, value=config.CACHE_CONFIG["hit_latency"]),
    miss_latency=st.sidebar.number_input("Miss penalty", min_value=0, value=config.CACHE_CONFIG["miss_latency"]),
)
optimize = st.sidebar.checkbox("Heuristic CDB arbitration (fan-out, critical path)")

# --- Program Input ---
st.header("1. Load Assembly Program")
prog_source = st.radio("Input Method", ["Paste", "Upload File"])
if prog_source == "Paste":
    program = st.text_area("Paste your assembly program here:", value=st.session_state.program, height=200)
else:
    uploaded = st.file_uploader("Upload .asm file", type=["asm", "txt"])
    program = uploaded.read().decode() if uploaded else ''

col_regs, col_mem = st.columns(2)
registers_text = col_regs.text_area("Initial registers (NAME=value per line)", value="R2=0\nF4=2.5")
memory_text = col_mem.text_area("Initial memory bytes (address=byte per line)", value="0=10\n8=20")


def parse_pairs(text, key_type, value_type):
    pairs = []
    for line in text.splitlines():
        if '=' not in line:
            continue
        key, value = line.split('=', 1)
        pairs.append((key_type(key.strip()), value_type(value.strip())))
    return pairs


# --- Simulation Controls ---
st.header("2. Simulation Controls")
col1, col2, col3, col4, col5 = st.columns(5)
if col1.button("Initialize/Reset"):
    try:
        sim_config = SimulatorConfig(
            latencies=latencies,
            reservation_stations=unit_counts,
            cache=cache,
            is_optimization_mode=optimize,
            initial_registers=dict(parse_pairs(registers_text, str, float)),
            initial_memory=parse_pairs(memory_text, int, int),
        )
        processor = Processor(sim_config)
        processor.load_program(program)
    except ProgramError as e:
        st.error(str(e))
    except ValueError as e:
        st.error(f"Invalid configuration: {e}")
    else:
        st.session_state.processor = processor
        st.session_state.program = program
        st.success(f"Program loaded. {len(processor.instructions)} instruction(s).")

processor = st.session_state.processor
if col2.button("Step") and processor:
    processor.step()
if col3.button("Step Back") and processor:
    processor.step_back()
if col4.button("Run to Completion") and processor:
    processor.run_simulation(max_cycles=1000)
if col5.button("Clear"):
    st.session_state.processor = processor = None

# --- Display State ---
if processor and processor.state:
    state = processor.state
    st.subheader(f"Cycle: {state.cycle}")

    st.write("### Instruction Status")
    st.dataframe(processor.timing_rows())

    st.write("### Reservation Stations")
    rs_data = []
    for rs in state.all_stations():
        rs_data.append({
            "Name": rs.name,
            "Busy": rs.busy,
            "Op": rs.op_type.value if rs.op_type else None,
            "Vj": str(rs.Vj) if rs.Vj is not None else None,
            "Vk": str(rs.Vk) if rs.Vk is not None else None,
            "Qj": str(rs.Qj) if rs.Qj else None,
            "Qk": str(rs.Qk) if rs.Qk else None,
            "A": rs.A,
            "Cycles Left": rs.time_remaining if rs.busy else None,
        })
    st.dataframe(rs_data)

    st.write("### Load/Store Buffers")
    buf_data = []
    for buf in state.all_buffers():
        buf_data.append({
            "Name": buf.name,
            "Busy": buf.busy,
            "Stage": buf.stage.value if buf.busy else None,
            "Address": buf.address,
            "Value": str(buf.value) if buf.value is not None else None,
            "Base Tag": str(buf.base_register_tag) if buf.base_register_tag else None,
            "Value Tag": str(buf.store_value_tag) if buf.store_value_tag else None,
            "Cycles Left": buf.time_remaining if buf.busy else None,
        })
    st.dataframe(buf_data)

    st.write("### Register File")
    fp_col, int_col = st.columns(2)
    fp_col.dataframe([{"Register": r.name, "Value": str(r.value), "Qi": str(r.qi) if r.qi else None}
                      for r in state.registers.float_registers])
    int_col.dataframe([{"Register": r.name, "Value": str(r.value), "Qi": str(r.qi) if r.qi else None}
                       for r in state.registers.int_registers])

    st.write("### Cache")
    st.dataframe([{"Index": index, "Tag": block.tag, "Valid": block.valid,
                   "Data": " ".join(f"{b:02X}" for b in block.data)}
                  for index, block in sorted(state.cache.lines.items())])

    st.write("### Memory")
    mem_start_col, mem_len_col = st.columns(2)
    mem_start = mem_start_col.number_input("Start address", min_value=0, value=0, step=8)
    mem_len = mem_len_col.number_input("Bytes", min_value=1, max_value=1024, value=64, step=8)
    st.dataframe([{"Address": address, "Value (Hex)": f"0x{byte:02X}", "Value": byte}
                  for address, byte in state.memory.dump(int(mem_start), int(mem_len))])

    st.write("### Memory Writes")
    st.dataframe([{"Address": address, "Value (Hex)": f"0x{write.value:02X}", "Value": write.value,
                   "Cycle": write.cycle}
                  for address, write in sorted(state.memory.write_log.items())])

    if state.is_complete:
        st.success("Simulation finished.")
