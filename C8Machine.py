"""
CHIP-8 virtual machine core.

Owns the whole architectural state (memory, registers, stack, framebuffer,
keys, timers) and executes one instruction per call to step(). Rendering,
input polling and frame pacing are left to the caller.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from random import Random

logger = logging.getLogger(__name__)

MEMORY_SIZE = 4096  # 4KB memory
PROGRAM_START = 0x200  # programs are loaded at 0x200
FONT_START = 0x50  # fontset lives below the program area
FONT_HEIGHT = 5
NUM_REGISTERS = 16
STACK_DEPTH = 16
NUM_KEYS = 16
SCREEN_WIDTH = 64
SCREEN_HEIGHT = 32

# one glyph per hexadecimal digit, 5 rows of 4 pixels each
FONTSET = (
    (0xF0, 0x90, 0x90, 0x90, 0xF0),  # 0
    (0x20, 0x60, 0x20, 0x20, 0x70),  # 1
    (0xF0, 0x10, 0xF0, 0x80, 0xF0),  # 2
    (0xF0, 0x10, 0xF0, 0x10, 0xF0),  # 3
    (0x90, 0x90, 0xF0, 0x10, 0x10),  # 4
    (0xF0, 0x80, 0xF0, 0x10, 0xF0),  # 5
    (0xF0, 0x80, 0xF0, 0x90, 0xF0),  # 6
    (0xF0, 0x10, 0x20, 0x40, 0x40),  # 7
    (0xF0, 0x90, 0xF0, 0x90, 0xF0),  # 8
    (0xF0, 0x90, 0xF0, 0x10, 0xF0),  # 9
    (0xF0, 0x90, 0xF0, 0x90, 0x90),  # A
    (0xE0, 0x90, 0xE0, 0x90, 0xE0),  # B
    (0xF0, 0x80, 0x80, 0x80, 0xF0),  # C
    (0xE0, 0x90, 0x90, 0x90, 0xE0),  # D
    (0xF0, 0x80, 0xF0, 0x80, 0xF0),  # E
    (0xF0, 0x80, 0xF0, 0x80, 0x80),  # F
)


class C8Error(Exception):
    pass


class UnknownOpcodeError(C8Error):
    def __init__(self, opcode, address):
        super().__init__("Unknown opcode {:04X} at {:03X}".format(opcode, address))
        self.opcode = opcode
        self.address = address


class MemoryAccessError(C8Error):
    def __init__(self, address, length=1):
        super().__init__(
            "Memory access of {} byte(s) at {:04X} is outside {} bytes of memory".format(
                length, address, MEMORY_SIZE
            )
        )
        self.address = address
        self.length = length


class StackOverflowError(C8Error):
    pass


class StackUnderflowError(C8Error):
    pass


class StepResult(Enum):
    OK = "ok"
    WAITING = "waiting"  # suspended on FX0A until a key is pressed
    CANCELLED = "cancelled"  # key wait abandoned, machine halted


@dataclass(frozen=True)
class Quirks:
    """
    Interpreter variations found across CHIP-8 implementations.

    The defaults give the behaviour most modern programs expect. cosmac()
    returns the behaviour of the original COSMAC VIP interpreter.
    """

    shift_uses_vy: bool = False  # 8XY6/8XYE shift VY into VX
    logic_resets_vf: bool = False  # 8XY1/8XY2/8XY3 clear VF
    load_store_increments_i: bool = False  # FX55/FX65 advance I past the block
    clip_sprites_x: bool = False  # clip at the right edge instead of wrapping

    @classmethod
    def cosmac(cls):
        return cls(
            shift_uses_vy=True,
            logic_resets_vf=True,
            load_store_increments_i=True,
            clip_sprites_x=True,
        )


class _KeyWait:
    """Pending FX0A: target register and keys already held on entry."""

    def __init__(self, register, held):
        self.register = register
        self.held = set(held)


class C8Machine:

    def __init__(self, quirks=None, rng=None):
        self.quirks = quirks if quirks is not None else Quirks()
        # anything with randint(a, b), so tests can feed a fixed sequence
        self.rng = rng if rng is not None else Random()
        self.reset()

    def reset(self):
        self.memory = bytearray(MEMORY_SIZE)
        self.V = [0] * NUM_REGISTERS  # registers, V[0xF] doubles as flag
        self.I = 0  # index register
        self.pc = PROGRAM_START
        self.stack = [0] * STACK_DEPTH
        self.sp = 0
        self.gfx = [False] * (SCREEN_WIDTH * SCREEN_HEIGHT)  # row-major
        self.draw_flag = False
        self.keys = [False] * NUM_KEYS
        self.delay_timer = 0  # 60Hz timer, max 255
        self.sound_timer = 0  # 60Hz timer, max 255
        self.halted = False
        self._key_wait = None
        self._cancel_requested = False
        self._load_fontset()

    def _load_fontset(self):
        for i, glyph in enumerate(FONTSET):
            start = FONT_START + i * FONT_HEIGHT
            self.memory[start : start + FONT_HEIGHT] = bytes(glyph)

    def load_program(self, data):
        """
        Copy a program image into memory at PROGRAM_START.

        Bytes that do not fit are dropped. Returns the number of bytes written.
        """
        data = bytes(data)
        room = MEMORY_SIZE - PROGRAM_START
        image = data[:room]
        self.memory[PROGRAM_START : PROGRAM_START + len(image)] = image

        if len(data) > room:
            logger.warning(
                "Program is %d bytes, dropped %d bytes past end of memory",
                len(data),
                len(data) - room,
            )
        logger.debug("Loaded %d bytes at %03X", len(image), PROGRAM_START)
        return len(image)

    # --- state accessors -------------------------------------------------

    def pixel(self, x, y):
        if not (0 <= x < SCREEN_WIDTH and 0 <= y < SCREEN_HEIGHT):
            raise IndexError("pixel ({}, {}) is off screen".format(x, y))
        return self.gfx[y * SCREEN_WIDTH + x]

    def framebuffer_rows(self):
        gfx = self.gfx
        for y in range(SCREEN_HEIGHT):
            row_base = y * SCREEN_WIDTH
            yield tuple(gfx[row_base : row_base + SCREEN_WIDTH])

    @property
    def sound_active(self):
        return self.sound_timer > 0

    @property
    def waiting_for_key(self):
        return self._key_wait is not None

    # --- keys ------------------------------------------------------------

    def set_key(self, key, pressed):
        if not 0 <= key < NUM_KEYS:
            raise ValueError("key {} is not in range 0-{}".format(key, NUM_KEYS - 1))
        self.keys[key] = bool(pressed)

    def set_keys(self, states):
        states = [bool(state) for state in states]
        if len(states) != NUM_KEYS:
            raise ValueError("expected {} key states, got {}".format(NUM_KEYS, len(states)))
        self.keys = states

    def reset_keys(self):
        self.keys = [False] * NUM_KEYS

    def request_cancel(self):
        """Abandon the current (or next) FX0A key wait and halt."""
        self._cancel_requested = True

    # --- timers ----------------------------------------------------------

    def tick(self):
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1

    # --- execution -------------------------------------------------------

    def _check_range(self, address, length):
        if address < 0 or address + length > MEMORY_SIZE:
            raise MemoryAccessError(address, length)

    def step(self):
        """
        Execute one instruction.

        On any C8Error the program counter is put back on the faulting
        instruction and no other state has been touched.
        """
        if self.halted:
            return StepResult.CANCELLED
        if self._key_wait is not None:
            return self._resume_key_wait()

        address = self.pc
        self._check_range(address, 2)
        opcode = (self.memory[address] << 8) | self.memory[address + 1]
        self.pc = (address + 2) & 0xFFFF

        try:
            return self._execute(opcode, address)
        except C8Error:
            self.pc = address
            raise

    def _skip(self):
        self.pc = (self.pc + 2) & 0xFFFF

    def _execute(self, opcode, address):
        V = self.V
        memory = self.memory
        quirks = self.quirks

        first_nibble = opcode & 0xF000
        x = (opcode & 0x0F00) >> 8
        y = (opcode & 0x00F0) >> 4
        nn = opcode & 0x00FF
        nnn = opcode & 0x0FFF

        if first_nibble == 0x0000:

            if opcode == 0x00E0:
                # opcode 0x00E0
                # clear the display
                self.gfx = [False] * (SCREEN_WIDTH * SCREEN_HEIGHT)
                self.draw_flag = True

            elif opcode == 0x00EE:
                # opcode 0x00EE
                # return from subroutine
                if self.sp == 0:
                    raise StackUnderflowError(
                        "Return at {:03X} with an empty stack".format(address)
                    )
                self.sp -= 1
                self.pc = self.stack[self.sp]

            else:
                raise UnknownOpcodeError(opcode, address)

        elif first_nibble == 0x1000:
            # opcode 0x1NNN
            # jump to address NNN
            self.pc = nnn

        elif first_nibble == 0x2000:
            # opcode 0x2NNN
            # call subroutine at address NNN
            if self.sp >= STACK_DEPTH:
                raise StackOverflowError(
                    "Call at {:03X} with {} return addresses stacked".format(address, self.sp)
                )
            self.stack[self.sp] = self.pc
            self.sp += 1
            self.pc = nnn

        elif first_nibble == 0x3000:
            # opcode 0x3XNN
            # skip next instruction if VX == NN
            if V[x] == nn:
                self._skip()

        elif first_nibble == 0x4000:
            # opcode 0x4XNN
            # skip next instruction if VX != NN
            if V[x] != nn:
                self._skip()

        elif first_nibble == 0x5000:
            # opcode 0x5XY0
            # skip next instruction if VX == VY
            if opcode & 0x000F:
                raise UnknownOpcodeError(opcode, address)
            if V[x] == V[y]:
                self._skip()

        elif first_nibble == 0x6000:
            # opcode 0x6XNN
            # set register VX to NN
            V[x] = nn

        elif first_nibble == 0x7000:
            # opcode 0x7XNN
            # add NN to register VX, carry is discarded
            V[x] = (V[x] + nn) & 0xFF

        elif first_nibble == 0x8000:
            self._execute_alu(opcode, address, x, y)

        elif first_nibble == 0x9000:
            # opcode 0x9XY0
            # skip next instruction if VX != VY
            if opcode & 0x000F:
                raise UnknownOpcodeError(opcode, address)
            if V[x] != V[y]:
                self._skip()

        elif first_nibble == 0xA000:
            # opcode 0xANNN
            # set index register I to NNN
            self.I = nnn

        elif first_nibble == 0xB000:
            # opcode 0xBNNN
            # jump to address NNN + V0
            self.pc = (nnn + V[0]) & 0xFFFF

        elif first_nibble == 0xC000:
            # opcode 0xCXNN
            # set VX to random byte AND NN
            V[x] = self.rng.randint(0, 255) & nn

        elif first_nibble == 0xD000:
            # opcode 0xDXYN
            # draw sprite at coordinate (VX, VY) with height N
            self._draw_sprite(V[x], V[y], opcode & 0x000F)

        elif first_nibble == 0xE000:

            key = V[x] & 0x0F

            if nn == 0x9E:
                # opcode 0xEX9E
                # skip next instruction if key with value VX is pressed
                if self.keys[key]:
                    self._skip()

            elif nn == 0xA1:
                # opcode 0xEXA1
                # skip next instruction if key with value VX is not pressed
                if not self.keys[key]:
                    self._skip()

            else:
                raise UnknownOpcodeError(opcode, address)

        else:

            if nn == 0x07:
                # opcode 0xFX07
                # set VX to value of delay timer
                V[x] = self.delay_timer

            elif nn == 0x0A:
                # opcode 0xFX0A
                # wait for a key press, store the value in VX
                self._key_wait = _KeyWait(x, [k for k in range(NUM_KEYS) if self.keys[k]])
                self.pc = address
                logger.debug("Waiting for key into V%X at %03X", x, address)
                return self._resume_key_wait()

            elif nn == 0x15:
                # opcode 0xFX15
                # set delay timer to VX
                self.delay_timer = V[x]

            elif nn == 0x18:
                # opcode 0xFX18
                # set sound timer to VX
                self.sound_timer = V[x]

            elif nn == 0x1E:
                # opcode 0xFX1E
                # add VX to I, wrapping at 16 bits
                self.I = (self.I + V[x]) & 0xFFFF

            elif nn == 0x29:
                # opcode 0xFX29
                # set I to the location of the sprite for digit VX
                self.I = FONT_START + (V[x] & 0x0F) * FONT_HEIGHT

            elif nn == 0x33:
                # opcode 0xFX33
                # store digits of VX in memory at addresses I, I+1, I+2
                I = self.I
                self._check_range(I, 3)
                vx = V[x]
                memory[I] = vx // 100  # hundreds
                memory[I + 1] = (vx // 10) % 10  # tens
                memory[I + 2] = vx % 10  # ones

            elif nn == 0x55:
                # opcode 0xFX55
                # store registers V0 to VX in memory starting at address I
                I = self.I
                self._check_range(I, x + 1)
                memory[I : I + x + 1] = bytes(V[: x + 1])
                if quirks.load_store_increments_i:
                    self.I = (I + x + 1) & 0xFFFF

            elif nn == 0x65:
                # opcode 0xFX65
                # read registers V0 to VX from memory starting at address I
                I = self.I
                self._check_range(I, x + 1)
                V[: x + 1] = memory[I : I + x + 1]
                if quirks.load_store_increments_i:
                    self.I = (I + x + 1) & 0xFFFF

            else:
                raise UnknownOpcodeError(opcode, address)

        return StepResult.OK

    def _execute_alu(self, opcode, address, x, y):
        # VF is always written after VX so that X == F keeps the flag
        V = self.V
        last_nibble = opcode & 0x000F

        if last_nibble == 0x0:
            # opcode 0x8XY0
            # set VX to VY
            V[x] = V[y]

        elif last_nibble in (0x1, 0x2, 0x3):
            # opcodes 0x8XY1, 0x8XY2, 0x8XY3
            # set VX to VX OR / AND / XOR VY
            if last_nibble == 0x1:
                V[x] |= V[y]
            elif last_nibble == 0x2:
                V[x] &= V[y]
            else:
                V[x] ^= V[y]
            if self.quirks.logic_resets_vf:
                V[0xF] = 0

        elif last_nibble == 0x4:
            # opcode 0x8XY4
            # add VY to VX, set VF to 1 if overflow, else 0
            total = V[x] + V[y]
            V[x] = total & 0xFF
            V[0xF] = 1 if total > 0xFF else 0

        elif last_nibble == 0x5:
            # opcode 0x8XY5
            # set VX to VX - VY, set VF to 0 if underflow, else 1
            no_borrow = 1 if V[x] >= V[y] else 0
            V[x] = (V[x] - V[y]) & 0xFF
            V[0xF] = no_borrow

        elif last_nibble == 0x6:
            # opcode 0x8XY6
            # shift VX right by one, VF gets the bit shifted out
            source = V[y] if self.quirks.shift_uses_vy else V[x]
            V[x] = source >> 1
            V[0xF] = source & 0x01

        elif last_nibble == 0x7:
            # opcode 0x8XY7
            # set VX to VY - VX, set VF to 0 if underflow, else 1
            no_borrow = 1 if V[y] >= V[x] else 0
            V[x] = (V[y] - V[x]) & 0xFF
            V[0xF] = no_borrow

        elif last_nibble == 0xE:
            # opcode 0x8XYE
            # shift VX left by one, VF gets the bit shifted out
            source = V[y] if self.quirks.shift_uses_vy else V[x]
            V[x] = (source << 1) & 0xFF
            V[0xF] = (source & 0x80) >> 7

        else:
            raise UnknownOpcodeError(opcode, address)

    def _draw_sprite(self, x, y, n):
        gfx = self.gfx
        memory = self.memory
        I = self.I

        x %= SCREEN_WIDTH
        y %= SCREEN_HEIGHT
        # rows past the bottom edge are skipped, never wrapped
        max_rows = min(n, SCREEN_HEIGHT - y)
        max_cols = min(8, SCREEN_WIDTH - x) if self.quirks.clip_sprites_x else 8
        if max_rows:
            self._check_range(I, max_rows)

        collision = 0
        for row in range(max_rows):
            row_base = (y + row) * SCREEN_WIDTH
            sprite_byte = memory[I + row]

            for col in range(max_cols):
                if (sprite_byte >> (7 - col)) & 1:
                    idx = row_base + (x + col) % SCREEN_WIDTH
                    if gfx[idx]:
                        collision = 1
                    gfx[idx] = not gfx[idx]

        self.V[0xF] = collision
        self.draw_flag = True

    def _resume_key_wait(self):
        wait = self._key_wait

        if self._cancel_requested:
            self._key_wait = None
            self._cancel_requested = False
            self.halted = True
            logger.debug("Key wait at %03X cancelled", self.pc)
            return StepResult.CANCELLED

        # keys held when the wait began only count once released
        keys = self.keys
        wait.held.intersection_update(k for k in range(NUM_KEYS) if keys[k])
        for key in range(NUM_KEYS):
            if keys[key] and key not in wait.held:
                self.V[wait.register] = key
                self._key_wait = None
                self._skip()
                logger.debug("Key %X pressed, resuming at %03X", key, self.pc)
                return StepResult.OK

        return StepResult.WAITING
