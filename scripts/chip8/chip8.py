# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite
#
# This module is the machine only: it never draws, never plays sounds, never
# reads files and never looks at a clock. Timers are decremented once per
# executed instruction, so whoever drives step() decides how fast time flows
# (roughly 60 steps per second gives the nominal 60Hz timer rate).


import os
import random
from collections import deque, namedtuple
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F
FONT_START_ADDRESS = 0x000
FONT_CHAR_SIZE = 5

MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
STACK_SIZE = 16
KEYPAD_SIZE = 16
REGISTERS_COUNT = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
UNKNOWN_HISTORY_SIZE = 32
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every fatal error raised while running a guest program"""


class StackOverflowError(Chip8Error, IndexError):
    pass


class StackUnderflowError(Chip8Error, IndexError):
    pass


class MemoryAccessError(Chip8Error, IndexError):
    pass


class RomTooLargeError(Chip8Error, ValueError):
    pass


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - 0x2     # args[0] equals self, pc already points to the following instruction
            vals = fn(*args, **kwargs)      # use the locals() values of each decorated method in the print
            vals.update(args[1]._asdict())  # args[1] is the decoded instruction
            vals['mem_addr'] = mem_addr
            if DEBUG: print(f"mem_addr: 0x{mem_addr:04x}    opcode: 0x{vals['opcode']:04x}    instruction: " + msg.format(**vals))
        return wrapper_fn
    return decorator


# ******************** MEMORY SECTION
# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)

    @staticmethod
    def _check_range(start, stop):
        """every address in [start, stop) must be inside the 4KB memory"""
        if start < 0 or stop > MEMORY_SIZE or start > stop:
            raise MemoryAccessError(f"Memory access out of range: [0x{start:04x}, 0x{stop:04x})")

    @staticmethod
    def _bounds(key):
        if isinstance(key, slice):
            start = 0 if key.start is None else key.start
            stop = MEMORY_SIZE if key.stop is None else key.stop
            return start, stop
        return key, key + 1

    def __getitem__(self, key):
        self._check_range(*self._bounds(key))
        return self.inner[key]

    def __setitem__(self, key, value):
        start, stop = self._bounds(key)
        self._check_range(start, stop)
        if isinstance(key, slice):
            value = bytes(value)
            # a bytearray silently grows or shrinks on slice assignment of a different length
            if len(value) != stop - start:
                raise ValueError(f"Cannot write {len(value)} bytes into a {stop - start} bytes region")
        self.inner[key] = value

    def load_rom(self, rom):
        """copy the ROM bytes starting at ROM_START_ADDRESS, raise an exception if they don't fit"""
        rom = bytes(rom)
        end = ROM_START_ADDRESS + len(rom)
        if end > MEMORY_SIZE:
            raise RomTooLargeError(
                f"The ROM is {len(rom)} bytes long but only {MEMORY_SIZE - ROM_START_ADDRESS} bytes are available"
            )
        self.inner[ROM_START_ADDRESS:end] = rom
        if DEBUG: print(f"A ROM of {len(rom)} bytes has been loaded successfully")


# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = [0] * STACK_SIZE
        self.size = 0   # stack pointer, index of the next free slot

    def append(self, address):
        if self.size >= STACK_SIZE:
            raise StackOverflowError(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.addr_list[self.size] = address
        self.size += 1

    def pop(self):
        if self.size == 0:
            raise StackUnderflowError("Return with an empty CHIP-8 stack")
        self.size -= 1
        return self.addr_list[self.size]

    def __len__(self):
        return self.size

    def __str__(self):
        return "[" + ", ".join(f"0x{addr:04x}" for addr in self.addr_list[:self.size]) + "]"


# ******************** DISPLAY SECTION
class Display:
    """64x32 monochrome framebuffer, row-major, 1 = pixel ON"""

    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [0] * h * w

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        return self.buffer[y * self.w + x]

    def write_pixel(self, x, y, value):
        self.buffer[y * self.w + x] = value

    def clear(self):
        self.buffer[:] = [0] * len(self.buffer)

    def snapshot(self):
        return tuple(self.buffer)


# ******************** TIMERS AND INPUT SECTION
class Timers:
    def __init__(self):
        self.delay = 0  # delay timer, active when non-zero
        self.sound = 0  # sound timer, the caller should beep while non-zero

    def tick(self):
        if self.delay > 0:
            self.delay -= 1
        if self.sound > 0:
            self.sound -= 1

    def __str__(self):
        return f"DT:{self.delay} ST:{self.sound}"


class Keypad:
    """state of the 16 hex keys, written by the caller and only read by the machine"""

    def __init__(self):
        self.keys = [False] * KEYPAD_SIZE

    def __getitem__(self, key):
        return self.keys[key]

    def __setitem__(self, key, pressed):
        if not 0 <= key < KEYPAD_SIZE:
            raise ValueError(f"Unknown key {key!r}, the CHIP-8 keypad has keys 0x0 to 0xF")
        self.keys[key] = bool(pressed)

    def untouched(self):
        return not any(self.keys)

    def first(self):
        """get the lowest pressed key, None if no key is pressed"""
        for key, pressed in enumerate(self.keys):
            if pressed:
                return key
        return None

    def __str__(self):
        return "".join(f"{key:X}" for key, pressed in enumerate(self.keys) if pressed) or "-"


# ******************** DECODER SECTION
class Instruction(namedtuple("Instruction", ["mnemonic", "opcode", "x", "y", "n", "nn", "nnn"])):
    __slots__ = ()

    @property
    def nibbles(self):
        return (self.opcode & 0xF000) >> 12, self.x, self.y, self.n


UNKNOWN = "UNKNOWN"

# WATCH OUT: masks order is important!!!
# as the decoder stops as soon as it finds a match
OPCODE_MASKS = {
    0xFFFF: {0x0000: "NOP", 0x00E0: "CLS", 0x00EE: "RET"},
    0xF0FF: {
        0xE09E: "SKP", 0xE0A1: "SKNP",
        0xF007: "LD_VX_DT", 0xF00A: "LD_VX_K", 0xF015: "LD_DT_VX", 0xF018: "LD_ST_VX",
        0xF01E: "ADD_I", 0xF029: "LD_F", 0xF033: "LD_B", 0xF055: "LD_I_VX", 0xF065: "LD_VX_I",
    },
    0xF00F: {
        0x5000: "SE_REG",
        0x8000: "LD_REG", 0x8001: "OR", 0x8002: "AND", 0x8003: "XOR", 0x8004: "ADD_REG",
        0x8005: "SUB", 0x8006: "SHR", 0x8007: "SUBN", 0x800E: "SHL",
        0x9000: "SNE_REG",
    },
    0xF000: {
        0x1000: "JP", 0x2000: "CALL", 0x3000: "SE", 0x4000: "SNE", 0x6000: "LD", 0x7000: "ADD",
        0xA000: "LD_I", 0xB000: "JP_V0", 0xC000: "RND", 0xD000: "DRW",
    },
}

MNEMONICS = frozenset([UNKNOWN] + [m for patterns in OPCODE_MASKS.values() for m in patterns.values()])


def decode(opcode):
    """decode an opcode using masks, whatever doesn't match a known pattern decodes to UNKNOWN"""
    mnemonic = UNKNOWN
    for mask, patterns in OPCODE_MASKS.items():
        if (opcode & mask) in patterns:
            mnemonic = patterns[opcode & mask]
            break
    return Instruction(
        mnemonic=mnemonic,
        opcode=opcode,
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        nn=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.display = Display()
        self.timers = Timers()
        self.keypad = Keypad()
        self.v_regs = [0] * REGISTERS_COUNT
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.draw = False
        self.rng = rng if rng is not None else random
        self.last_opcode = None
        self.unknown_instructions = deque(maxlen=UNKNOWN_HISTORY_SIZE)
        self.instructions = {
            "NOP": self._nop,
            "CLS": self._clear_screen,
            "RET": self._return,
            "JP": self._jump,
            "CALL": self._call_addr,
            "SE": self._skip_if_eq,
            "SNE": self._skip_if_not_eq,
            "SE_REG": self._skip_if_eq_regs,
            "LD": self._set_vk,
            "ADD": self._add_to_vk,
            "LD_REG": self._set_vx_to_vy,
            "OR": self._set_vx_or_vy,
            "AND": self._set_vx_and_vy,
            "XOR": self._set_vx_xor_vy,
            "ADD_REG": self._add_vx_vy,
            "SUB": self._sub_vx_vy,
            "SHR": self._shr,
            "SUBN": self._subn_vx_vy,
            "SHL": self._shl,
            "SNE_REG": self._skip_if_not_eq_regs,
            "LD_I": self._set_idx,
            "JP_V0": self._jump_plus,
            "RND": self._random_byte_and,
            "DRW": self._to_screen,
            "SKP": self._skip_if_pressed,
            "SKNP": self._skip_if_not_pressed,
            "LD_VX_DT": self._set_vx_dt,
            "LD_VX_K": self._wait_keypress,
            "LD_DT_VX": self._set_dt_vx,
            "LD_ST_VX": self._set_st,
            "ADD_I": self._add_to_idx,
            "LD_F": self._select_char,
            "LD_B": self._bcd_repr,
            "LD_I_VX": self._store_vregs,
            "LD_VX_I": self._load_vregs,
            UNKNOWN: self._unknown,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack}"
        io = f"TIMERS:{self.timers} | KEYPAD:{self.keypad}"
        last = "-" if self.last_opcode is None else f"0x{self.last_opcode:04x}"
        flags = f"DRAW: {self.draw} | LAST_OPCODE: {last}"
        return f"{registers}\n{stack}\n{io}\n{flags}"

    # ********** INTERFACE EXPOSED TO THE CALLER
    def load_program(self, rom):
        self.mem.load_rom(rom)

    def set_key(self, key, pressed):
        self.keypad[key] = pressed

    def framebuffer(self):
        return self.display.snapshot()

    def sound_timer(self):
        return self.timers.sound

    def delay_timer(self):
        return self.timers.delay

    def fetch(self):
        """each instruction is two bytes long, stored big-endian"""
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def step(self):
        """emulate one machine cycle (update timers, fetch, decode, execute) and return the draw flag"""
        self.timers.tick()
        self.draw = False
        opcode = self.fetch()
        self.last_opcode = opcode
        instruction = decode(opcode)
        mem_addr = self.pc
        self._goto_next_instruction()
        try:
            self.instructions[instruction.mnemonic](instruction)
        except Chip8Error:
            self.pc = mem_addr  # leave pc on the faulting instruction
            raise
        return self.draw

    # ********** INSTRUCTIONS
    @asm("NOP")
    def _nop(self, ins):
        return locals()

    @asm("CLS")
    def _clear_screen(self, ins):
        """clear the framebuffer, the draw flag is raised here too since the caller must repaint a blank screen"""
        self.display.clear()
        self.draw = True
        return locals()

    @asm("RET")
    def _return(self, ins):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("JP 0x{nnn:04x}")
    def _jump(self, ins):
        self.pc = ins.nnn
        return locals()

    @asm("CALL 0x{nnn:04x}")
    def _call_addr(self, ins):
        self.stack.append(self.pc)
        self.pc = ins.nnn
        return locals()

    @asm("SE V{x:X}, {nn}")
    def _skip_if_eq(self, ins):
        if self.v_regs[ins.x] == ins.nn:
            self._goto_next_instruction()
        return locals()

    @asm("SNE V{x:X}, {nn}")
    def _skip_if_not_eq(self, ins):
        if self.v_regs[ins.x] != ins.nn:
            self._goto_next_instruction()
        return locals()

    @asm("SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, ins):
        if self.v_regs[ins.x] == self.v_regs[ins.y]:
            self._goto_next_instruction()
        return locals()

    @asm("SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, ins):
        if self.v_regs[ins.x] != self.v_regs[ins.y]:
            self._goto_next_instruction()
        return locals()

    @asm("LD V{x:X}, {nn}")
    def _set_vk(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[ins.x] = ins.nn
        return locals()

    @asm("ADD V{x:X}, {nn}")
    def _add_to_vk(self, ins):
        """add to the value already present in one of the variable registers, VF untouched"""
        self.v_regs[ins.x] = (self.v_regs[ins.x] + ins.nn) & 0xFF
        return locals()

    @asm("LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, ins):
        self.v_regs[ins.x] = self.v_regs[ins.y]
        return locals()

    @asm("OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, ins):
        self.v_regs[ins.x] |= self.v_regs[ins.y]
        return locals()

    @asm("AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, ins):
        self.v_regs[ins.x] &= self.v_regs[ins.y]
        return locals()

    @asm("XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, ins):
        self.v_regs[ins.x] ^= self.v_regs[ins.y]
        return locals()

    # the flag is computed from the operands before Vx is written and VF is
    # written last, so VF ends up holding the flag when x is 0xF
    @asm("ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, ins):
        """set Vx = Vx + Vy, VF = carry"""
        total = self.v_regs[ins.x] + self.v_regs[ins.y]
        carry = 1 if total > 0xFF else 0
        self.v_regs[ins.x] = total & 0xFF     # keep only the lowest 8 bits
        self.v_regs[0xF] = carry
        return locals()

    @asm("SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, ins):
        """set Vx = Vx - Vy, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        not_borrow = 0 if vy > vx else 1
        self.v_regs[ins.x] = (vx - vy) & 0xFF
        self.v_regs[0xF] = not_borrow
        return locals()

    @asm("SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, ins):
        """set Vx = Vy - Vx, VF = NOT borrow"""
        vx, vy = self.v_regs[ins.x], self.v_regs[ins.y]
        not_borrow = 0 if vy < vx else 1
        self.v_regs[ins.x] = (vy - vx) & 0xFF
        self.v_regs[0xF] = not_borrow
        return locals()

    @asm("SHR V{x:X}")
    def _shr(self, ins):
        """set Vx = Vx SHR 1, VF = bit shifted out"""
        lsb = self.v_regs[ins.x] & 0x1
        self.v_regs[ins.x] >>= 1
        self.v_regs[0xF] = lsb
        return locals()

    @asm("SHL V{x:X}")
    def _shl(self, ins):
        """set Vx = Vx SHL 1, VF = bit shifted out"""
        msb = (self.v_regs[ins.x] & 0x80) >> 7
        self.v_regs[ins.x] = (self.v_regs[ins.x] << 1) & 0xFF
        self.v_regs[0xF] = msb
        return locals()

    @asm("LD I, 0x{nnn:04x}")
    def _set_idx(self, ins):
        self.idx = ins.nnn
        return locals()

    @asm("JP V0, 0x{nnn:04x}")
    def _jump_plus(self, ins):
        self.pc = ins.nnn + self.v_regs[0x0]
        return locals()

    @asm("RND V{x:X}, 0x{nn:02x}    (0x{rnd:02x})")
    def _random_byte_and(self, ins):
        rnd = self.rng.randint(0, 255)
        self.v_regs[ins.x] = rnd & ins.nn
        return locals()

    @asm("DRW V{x:X}, V{y:X}, {n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = self.v_regs[ins.x], self.v_regs[ins.y]
        sprite = self.mem[self.idx:self.idx + ins.n]
        self.v_regs[0xF] = 0
        for i, sprite_byte in enumerate(sprite):
            # coordinates wrap around the screen edges, nothing is clipped
            y_coordinate = (y + i) % self.display.h
            for j in range(8):
                if not sprite_byte & (0x80 >> j):
                    continue
                x_coordinate = (x + j) % self.display.w
                pixel_state = self.display.read_pixel(x_coordinate, y_coordinate)
                # the only case when a pixel gets erased is when it was ON and is turned ON again
                if pixel_state == 1:
                    self.v_regs[0xF] = 1
                self.display.write_pixel(x_coordinate, y_coordinate, pixel_state ^ 1)
        self.draw = True
        return locals()

    @asm("SKP V{x:X}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        key = self.v_regs[ins.x] & 0xF
        if self.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("SKNP V{x:X}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        key = self.v_regs[ins.x] & 0xF
        if not self.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("LD V{x:X}, DT")
    def _set_vx_dt(self, ins):
        self.v_regs[ins.x] = self.timers.delay
        return locals()

    @asm("LD V{x:X}, K    (key: {key})")
    def _wait_keypress(self, ins):
        """wait for a key press and store its value in Vx, the lowest key wins when many are pressed"""
        key = None
        if self.keypad.untouched():
            self.pc -= 0x2      # stay on the same instruction until a key is pressed
        else:
            key = self.keypad.first()
            self.v_regs[ins.x] = key
        return locals()

    @asm("LD DT, V{x:X}")
    def _set_dt_vx(self, ins):
        self.timers.delay = self.v_regs[ins.x]
        return locals()

    @asm("LD ST, V{x:X}")
    def _set_st(self, ins):
        self.timers.sound = self.v_regs[ins.x]
        return locals()

    @asm("ADD I, V{x:X}")
    def _add_to_idx(self, ins):
        self.idx += self.v_regs[ins.x]
        return locals()

    @asm("LD F, V{x:X}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + (self.v_regs[ins.x] & 0xF) * FONT_CHAR_SIZE
        return locals()

    @asm("LD B, V{x:X}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        value = self.v_regs[ins.x]
        self.mem[self.idx:self.idx + 3] = [value // 100, value // 10 % 10, value % 10]
        return locals()

    @asm("LD [I], V{x:X}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem[self.idx:self.idx + ins.x + 1] = self.v_regs[:ins.x + 1]
        return locals()

    @asm("LD V{x:X}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:ins.x + 1] = self.mem[self.idx:self.idx + ins.x + 1]
        return locals()

    @asm("UNKNOWN 0x{opcode:04x}")
    def _unknown(self, ins):
        """malformed opcodes are skipped and recorded, they never stop the machine"""
        self.unknown_instructions.append(ins)
        return locals()

    def _goto_next_instruction(self):
        self.pc += 0x2
