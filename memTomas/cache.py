import logging
from typing import Dict, List, NamedTuple, Optional

from .config import CacheConfig
from .memory import Memory

logger = logging.getLogger(__name__)


class CacheBlock:
    """One cache line: the memory block it holds and a copy of its bytes."""

    def __init__(self, tag: int, data: List[int], valid: bool = True):
        self.tag: int = tag          # memory block number
        self.data: List[int] = data  # block_size bytes
        self.valid: bool = valid

    def copy(self) -> "CacheBlock":
        return CacheBlock(self.tag, list(self.data), self.valid)

    def __repr__(self) -> str:
        return f"CacheBlock(tag={self.tag}, valid={self.valid}, data={self.data})"


class CacheAccess(NamedTuple):
    hit: bool
    latency: int
    index: int
    block_number: int


class Cache:
    """
    Direct-mapped cache. A memory block maps to line
    (address // block_size) % num_blocks, evicting whatever lives there.
    Lookups never change the cache; blocks are installed by fill().
    """

    def __init__(self, config: CacheConfig):
        self.config: CacheConfig = config
        self.lines: Dict[int, CacheBlock] = {}

    @property
    def num_blocks(self) -> int:
        return self.config.num_blocks

    def block_number(self, address: int) -> int:
        return address // self.config.block_size

    def index_of(self, address: int) -> int:
        return self.block_number(address) % self.num_blocks

    def get_line(self, address: int) -> Optional[CacheBlock]:
        """The resident line for address, or None on a miss."""
        block = self.lines.get(self.index_of(address))
        if block is not None and block.valid and block.tag == self.block_number(address):
            return block
        return None

    def lookup(self, address: int) -> CacheAccess:
        """
        Checks for a hit. A hit costs hit_latency; a miss costs
        miss_latency + hit_latency, the block arriving after miss_latency.
        """
        index, block_number = self.index_of(address), self.block_number(address)
        if self.get_line(address) is not None:
            logger.debug("Cache HIT at address %d (mem block %d -> cache index %d)", address, block_number, index)
            return CacheAccess(True, self.config.hit_latency, index, block_number)
        logger.debug("Cache MISS at address %d (mem block %d -> cache index %d)", address, block_number, index)
        return CacheAccess(False, self.config.miss_latency + self.config.hit_latency, index, block_number)

    def fill(self, address: int, memory: Memory) -> CacheBlock:
        """Copies the whole block containing address from memory into its line."""
        block_number = self.block_number(address)
        start = block_number * self.config.block_size
        block = CacheBlock(block_number, list(memory.read_bytes(start, self.config.block_size)))
        index = self.index_of(address)
        self.lines[index] = block
        logger.debug("Block %d loaded into cache index %d", block_number, index)
        return block

    def patch(self, address: int, data: bytes) -> bool:
        """
        Updates the bytes of a store in place when their block is resident.
        Returns True if any byte was patched.
        """
        patched = False
        for i, byte in enumerate(data):
            block = self.get_line(address + i)
            if block is None:
                continue
            block.data[(address + i) % self.config.block_size] = byte
            patched = True
        return patched

    def copy(self) -> "Cache":
        clone = Cache(self.config)
        clone.lines = {index: block.copy() for index, block in self.lines.items()}
        return clone
