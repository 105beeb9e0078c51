# memTomas Simulator Configuration

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

NUM_REGISTERS = 32  # per bank: R0-R31 and F0-F31, R0 is always 0

# Latency classes, in cycles.
# You can override these dictionaries at runtime using set_default_config().
LATENCIES = {
    "ADD":     2,   # ADD.D/ADD.S/SUB.D/SUB.S
    "MUL":     10,  # MUL.D/MUL.S
    "DIV":     40,  # DIV.D/DIV.S
    "INT_ADD": 1,   # DADDI/DSUBI
    "LOAD":    2,   # address calculation only, memory access is timed by the cache
    "STORE":   2,
}

# Number of units in each pool
UNIT_COUNTS = {
    "adders":        3,
    "multipliers":   2,
    "int_adders":    2,
    "load_buffers":  3,
    "store_buffers": 3,
}

# Direct-mapped cache geometry (sizes in bytes)
CACHE_CONFIG = {
    "block_size":   8,
    "cache_size":   64,
    "hit_latency":  1,
    "miss_latency": 10,
}


def set_default_config(latencies: Optional[dict] = None,
                       unit_counts: Optional[dict] = None,
                       cache: Optional[dict] = None):
    """
    Override the module defaults at runtime. Partial dictionaries are merged
    over the current values.
    Example usage:
        import memTomas.config as config
        config.set_default_config(latencies={"MUL": 4})
    """
    global LATENCIES, UNIT_COUNTS, CACHE_CONFIG
    if latencies:
        LATENCIES = {**LATENCIES, **latencies}
    if unit_counts:
        UNIT_COUNTS = {**UNIT_COUNTS, **unit_counts}
    if cache:
        CACHE_CONFIG = {**CACHE_CONFIG, **cache}


@dataclass
class CacheConfig:
    block_size: int = 8
    cache_size: int = 64
    hit_latency: int = 1
    miss_latency: int = 10

    @classmethod
    def from_defaults(cls) -> "CacheConfig":
        return cls(**CACHE_CONFIG)

    @property
    def num_blocks(self) -> int:
        return self.cache_size // self.block_size


@dataclass
class SimulatorConfig:
    """
    Everything the cycle engine consumes: per-class latencies, pool sizes,
    cache geometry, the CDB arbitration mode and optional seed values.

    initial_registers maps a register name (e.g. "R2", "f0") to a number.
    initial_memory is a list of (address, byte) pairs.
    """
    latencies: Dict[str, int] = field(default_factory=lambda: dict(LATENCIES))
    reservation_stations: Dict[str, int] = field(default_factory=lambda: dict(UNIT_COUNTS))
    cache: CacheConfig = field(default_factory=CacheConfig.from_defaults)
    is_optimization_mode: bool = False
    initial_registers: Dict[str, float] = field(default_factory=dict)
    initial_memory: List[Tuple[int, int]] = field(default_factory=list)

    def validate(self) -> None:
        """Raises ValueError describing the first invalid setting found."""
        for name in LATENCIES:
            if name not in self.latencies:
                raise ValueError(f"Missing latency for '{name}'.")
        for name, cycles in self.latencies.items():
            minimum = 0 if name == "STORE" else 1
            if int(cycles) < minimum:
                raise ValueError(f"Latency for '{name}' must be at least {minimum}, got {cycles}.")

        for name in UNIT_COUNTS:
            count = self.reservation_stations.get(name, 0)
            if count < 0:
                raise ValueError(f"Unit count for '{name}' cannot be negative, got {count}.")

        cache = self.cache
        if cache.block_size <= 0:
            raise ValueError(f"Cache block size must be positive, got {cache.block_size}.")
        if cache.cache_size <= 0 or cache.cache_size % cache.block_size != 0:
            raise ValueError(
                f"Cache size ({cache.cache_size}) must be a positive multiple "
                f"of the block size ({cache.block_size})."
            )
        if cache.hit_latency < 0 or cache.miss_latency < 0:
            raise ValueError("Cache hit and miss latencies cannot be negative.")

        for name, value in self.initial_registers.items():
            upper = name.strip().upper()
            if len(upper) < 2 or upper[0] not in "RF" or not upper[1:].isdigit() \
                    or not 0 <= int(upper[1:]) < NUM_REGISTERS:
                raise ValueError(f"Unknown register in initial_registers: '{name}'.")
            if upper == "R0" and value != 0:
                raise ValueError("R0 is hardwired to 0 and cannot be seeded.")

        for address, byte in self.initial_memory:
            if address < 0:
                raise ValueError(f"Memory address cannot be negative: {address}.")
            if not 0 <= byte <= 0xFF:
                raise ValueError(f"Memory byte at {address} out of range (0-255): {byte}.")


def get_instruction_latency(op: str, config: SimulatorConfig) -> int:
    """Maps an opcode mnemonic to its configured latency class."""
    op = op.upper()
    latencies = config.latencies
    if op in ("DADDI", "DSUBI"):
        return latencies["INT_ADD"]
    if "ADD" in op or "SUB" in op:
        return latencies["ADD"]
    if "MUL" in op:
        return latencies["MUL"]
    if "DIV" in op:
        return latencies["DIV"]
    if op.startswith("L"):
        return latencies["LOAD"]
    if op.startswith("S"):
        return latencies["STORE"]
    return 1
