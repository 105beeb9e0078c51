import logging
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from .instruction import OpType
from .value import Value

logger = logging.getLogger(__name__)


class MemoryWrite(NamedTuple):
    value: int  # the byte written
    cycle: int


class Memory:
    """Simulates a sparse, byte-addressable main memory. Unwritten bytes read as 0."""

    def __init__(self, initial_data: Optional[Iterable[Tuple[int, int]]] = None):
        """
        Args:
            initial_data: (address, byte) pairs to pre-populate memory.
        """
        self.data: Dict[int, int] = {}
        # Last store to each byte address, for display
        self.write_log: Dict[int, MemoryWrite] = {}

        if initial_data:
            for address, byte in initial_data:
                self.write_byte(address, byte)

    def _validate_address(self, address: int) -> None:
        if address < 0:
            raise ValueError(f"Memory access error: Address {address} is negative.")

    def read_byte(self, address: int) -> int:
        self._validate_address(address)
        return self.data.get(address, 0)

    def write_byte(self, address: int, byte: int) -> None:
        self._validate_address(address)
        if not 0 <= byte <= 0xFF:
            raise ValueError(f"Byte value out of range (0-255): {byte}")
        self.data[address] = byte

    def read_bytes(self, address: int, count: int) -> bytes:
        return bytes(self.read_byte(address + i) for i in range(count))

    def write_bytes(self, address: int, data: bytes, cycle: Optional[int] = None) -> None:
        """Writes data starting at address; byte i lands at address + i."""
        for i, byte in enumerate(data):
            self.write_byte(address + i, byte)
            if cycle is not None:
                self.write_log[address + i] = MemoryWrite(byte, cycle)

    def load_value(self, address: int, op_type: OpType) -> Value:
        """Reads the little-endian value a load of op_type sees at address."""
        raw = self.read_bytes(address, op_type.access_size)
        value = Value.decode(raw, op_type.loaded_kind)
        logger.debug("Loaded %s from address %d: [%s]", value, address, ", ".join(str(b) for b in raw))
        return value

    def store_value(self, address: int, value: Value, op_type: OpType, cycle: Optional[int] = None) -> bytes:
        """Writes the raw bit pattern of value at op_type's width. Returns the bytes written."""
        raw = value.encode(op_type.access_size)
        self.write_bytes(address, raw, cycle)
        logger.debug("Stored %s to address %d: [%s]", value, address, ", ".join(str(b) for b in raw))
        return raw

    def copy(self) -> "Memory":
        clone = Memory()
        clone.data = dict(self.data)
        clone.write_log = dict(self.write_log)
        return clone

    def dump(self, start_address: int = 0, num_bytes: int = 16) -> List[Tuple[int, int]]:
        """Returns a list of (address, byte) tuples for a memory range."""
        self._validate_address(start_address)
        return [(addr, self.data.get(addr, 0)) for addr in range(start_address, start_address + num_bytes)]

    def __str__(self) -> str:
        return f"Memory({len(self.data)} bytes set, {len(self.write_log)} written by stores)"
