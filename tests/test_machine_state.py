import pytest

from C8Machine import (
    FONT_START,
    FONTSET,
    MEMORY_SIZE,
    PROGRAM_START,
    SCREEN_HEIGHT,
    SCREEN_WIDTH,
    C8Machine,
    Quirks,
)


def test_new_machine_is_reset(machine: C8Machine) -> None:
    assert machine.pc == PROGRAM_START
    assert machine.I == 0
    assert machine.sp == 0
    assert machine.V == [0] * 16
    assert machine.keys == [False] * 16
    assert machine.delay_timer == 0
    assert machine.sound_timer == 0
    assert len(machine.memory) == MEMORY_SIZE
    assert not any(machine.gfx)
    assert not machine.waiting_for_key
    assert not machine.halted
    assert machine.quirks == Quirks()


def test_fontset_is_preloaded(machine: C8Machine) -> None:
    expected = bytes(byte for glyph in FONTSET for byte in glyph)
    assert machine.memory[FONT_START : FONT_START + len(expected)] == expected
    # glyph 0 first, glyph F last
    assert machine.memory[FONT_START] == 0xF0
    assert machine.memory[FONT_START + 15 * 5 + 4] == 0x80


def test_font_ends_below_program_area() -> None:
    assert FONT_START + len(FONTSET) * 5 <= PROGRAM_START


def test_load_program_copies_at_program_start(machine: C8Machine) -> None:
    written = machine.load_program(b"\x6A\x05\x7A\x03")

    assert written == 4
    assert machine.memory[PROGRAM_START : PROGRAM_START + 4] == b"\x6A\x05\x7A\x03"
    assert machine.memory[PROGRAM_START + 4] == 0


def test_load_program_drops_bytes_past_end_of_memory(machine: C8Machine, caplog) -> None:
    room = MEMORY_SIZE - PROGRAM_START
    image = bytes([0xAB]) * (room + 10)

    written = machine.load_program(image)

    assert written == room
    assert len(machine.memory) == MEMORY_SIZE
    assert machine.memory[-1] == 0xAB
    assert "dropped 10 bytes" in caplog.text


def test_reset_clears_program_and_state(machine: C8Machine) -> None:
    machine.load_program(b"\x12\x34")
    machine.V[3] = 9
    machine.pc = 0x300
    machine.gfx[5] = True
    machine.request_cancel()

    machine.reset()

    assert machine.memory[PROGRAM_START] == 0
    assert machine.V[3] == 0
    assert machine.pc == PROGRAM_START
    assert not machine.gfx[5]
    assert machine.memory[FONT_START] == 0xF0


def test_pixel_accessor_is_bounds_checked(machine: C8Machine) -> None:
    machine.gfx[SCREEN_WIDTH + 3] = True

    assert machine.pixel(3, 1) is True
    assert machine.pixel(0, 0) is False
    with pytest.raises(IndexError):
        machine.pixel(SCREEN_WIDTH, 0)
    with pytest.raises(IndexError):
        machine.pixel(0, SCREEN_HEIGHT)
    with pytest.raises(IndexError):
        machine.pixel(-1, 0)


def test_framebuffer_rows_shape(machine: C8Machine) -> None:
    machine.gfx[-1] = True
    rows = list(machine.framebuffer_rows())

    assert len(rows) == SCREEN_HEIGHT
    assert all(len(row) == SCREEN_WIDTH for row in rows)
    assert rows[-1][-1] is True


@pytest.mark.parametrize("start, ticks", [(0, 3), (1, 1), (5, 3), (10, 20), (255, 300)])
def test_tick_floors_timers_at_zero(machine: C8Machine, start: int, ticks: int) -> None:
    machine.delay_timer = start
    machine.sound_timer = start

    for _ in range(ticks):
        machine.tick()

    assert machine.delay_timer == max(0, start - ticks)
    assert machine.sound_timer == max(0, start - ticks)


def test_timers_tick_independently(machine: C8Machine) -> None:
    machine.delay_timer = 2
    machine.sound_timer = 1
    assert machine.sound_active

    machine.tick()
    assert (machine.delay_timer, machine.sound_timer) == (1, 0)
    assert not machine.sound_active

    machine.tick()
    assert (machine.delay_timer, machine.sound_timer) == (0, 0)


def test_set_keys_replaces_all_slots(machine: C8Machine) -> None:
    states = [False] * 16
    states[0xA] = True
    machine.set_keys(states)
    assert machine.keys[0xA] is True

    machine.reset_keys()
    assert machine.keys == [False] * 16


def test_key_writes_are_validated(machine: C8Machine) -> None:
    with pytest.raises(ValueError):
        machine.set_key(16, True)
    with pytest.raises(ValueError):
        machine.set_key(-1, True)
    with pytest.raises(ValueError):
        machine.set_keys([True] * 15)


def test_cosmac_preset_enables_every_quirk() -> None:
    quirks = Quirks.cosmac()
    assert quirks.shift_uses_vy
    assert quirks.logic_resets_vf
    assert quirks.load_store_increments_i
    assert quirks.clip_sprites_x
