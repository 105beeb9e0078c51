import math
from typing import Dict, Iterator, List, Optional

from .config import NUM_REGISTERS
from .reservation_station import UnitTag
from .value import Number, Value


class Register:
    """One architectural register: its value and the unit that will produce its next value."""

    __slots__ = ("name", "value", "qi")

    def __init__(self, name: str, value: Value, qi: Optional[UnitTag] = None):
        self.name = name
        self.value = value
        self.qi = qi

    @property
    def is_float(self) -> bool:
        return self.name.startswith("F")

    def copy(self) -> "Register":
        return Register(self.name, self.value, self.qi)

    def __repr__(self) -> str:
        pending = f" (Pending: {self.qi})" if self.qi else ""
        return f"{self.name}: {self.value}{pending}"


class RegisterFile:
    """
    Simulates the integer (R0-R31) and floating-point (F0-F31) register banks
    together with their register result status (the producer tag, Qi).
    """

    def __init__(self):
        self.int_registers: List[Register] = [
            Register(f"R{i}", Value.integer(0)) for i in range(NUM_REGISTERS)
        ]
        self.float_registers: List[Register] = [
            Register(f"F{i}", Value.floating(0.0)) for i in range(NUM_REGISTERS)
        ]
        self._by_name: Dict[str, Register] = {r.name: r for r in self}

    def __iter__(self) -> Iterator[Register]:
        yield from self.float_registers
        yield from self.int_registers

    def get(self, name: str) -> Register:
        try:
            return self._by_name[name.strip().upper()]
        except KeyError:
            raise ValueError(f"Invalid register: '{name}'")

    def read(self, name: str) -> Value:
        """R0 always returns 0."""
        return self.get(name).value

    def get_tag(self, name: str) -> Optional[UnitTag]:
        """
        Returns None if the register value is current, else the tag of the
        unit that will produce it.
        """
        return self.get(name).qi

    def set_tag(self, name: str, tag: UnitTag) -> None:
        """Renames the register to tag. Does nothing for R0."""
        reg = self.get(name)
        if reg.name == "R0":
            return
        reg.qi = tag

    def write(self, name: str, value: Value) -> None:
        """Writes a value directly. R0 is ignored."""
        reg = self.get(name)
        if reg.name == "R0":
            return
        reg.value = value

    def seed(self, name: str, number: Number) -> None:
        """Sets an initial value, using the bank's kind."""
        reg = self.get(name)
        if reg.is_float:
            self.write(reg.name, Value.floating(number))
        else:
            self.write(reg.name, Value.integer(math.floor(number)))

    def on_broadcast(self, tag: UnitTag, value: Value, dest: Optional[str] = None) -> List[str]:
        """
        Called when a result is broadcast on the CDB.

        Every register renamed to tag takes the value and is released. The
        completing instruction's own destination, if a later instruction has
        renamed it since, takes the value too but keeps the later tag.

        Returns the names of the registers updated.
        """
        updated = []
        for reg in self:
            if reg.name == "R0":
                continue
            if reg.qi == tag:
                reg.value = value
                reg.qi = None
                updated.append(reg.name)
            elif reg.name == dest and reg.qi is not None:
                reg.value = value
                updated.append(reg.name)
        return updated

    def copy(self) -> "RegisterFile":
        clone = RegisterFile.__new__(RegisterFile)
        clone.int_registers = [r.copy() for r in self.int_registers]
        clone.float_registers = [r.copy() for r in self.float_registers]
        clone._by_name = {r.name: r for r in clone}
        return clone

    def __str__(self) -> str:
        return "RegisterFile:\n  " + "\n  ".join(repr(r) for r in self)
