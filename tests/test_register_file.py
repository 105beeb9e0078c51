import pytest

from memTomas.register_file import RegisterFile
from memTomas.reservation_station import UnitKind, UnitTag
from memTomas.value import Value

ADD1 = UnitTag(UnitKind.ADD, 0)
LOAD1 = UnitTag(UnitKind.LOAD, 0)


def test_initial_state():
    rf = RegisterFile()
    assert len(rf.int_registers) == 32
    assert len(rf.float_registers) == 32
    assert rf.read("F0").is_float
    assert not rf.read("R5").is_float
    assert all(r.qi is None for r in rf)


def test_rename_and_broadcast():
    rf = RegisterFile()
    rf.set_tag("F2", ADD1)
    rf.set_tag("f4", ADD1)
    assert rf.get_tag("F2") == ADD1

    updated = rf.on_broadcast(ADD1, Value.floating(1.5))
    assert sorted(updated) == ["F2", "F4"]
    assert rf.read("F2").number == 1.5
    assert rf.get_tag("F2") is None


def test_broadcast_updates_renamed_destination_but_keeps_later_tag():
    rf = RegisterFile()
    rf.set_tag("F2", LOAD1)  # a later instruction now owns F2
    updated = rf.on_broadcast(ADD1, Value.floating(3.0), dest="F2")
    assert updated == ["F2"]
    assert rf.read("F2").number == 3.0
    assert rf.get_tag("F2") == LOAD1


def test_r0_is_hardwired():
    rf = RegisterFile()
    rf.set_tag("R0", ADD1)
    rf.write("R0", Value.integer(99))
    assert rf.get_tag("R0") is None
    assert rf.read("R0").number == 0


def test_seed_uses_bank_kind():
    rf = RegisterFile()
    rf.seed("R3", 7.9)
    rf.seed("F3", 2)
    assert rf.read("R3") == Value.integer(7)
    assert rf.read("F3") == Value.floating(2.0)


def test_unknown_register():
    rf = RegisterFile()
    with pytest.raises(ValueError):
        rf.read("X1")
    with pytest.raises(ValueError):
        rf.get_tag("R32")


def test_copy_is_independent():
    rf = RegisterFile()
    clone = rf.copy()
    clone.set_tag("F1", ADD1)
    clone.write("F1", Value.floating(5.0))
    assert rf.get_tag("F1") is None
    assert rf.read("F1").number == 0.0
    assert clone.get("F1") is clone.float_registers[1]
