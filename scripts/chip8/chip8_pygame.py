# pygame front-end for the CHIP-8 machine defined in chip8.py
#
# The machine decrements its timers once per executed instruction, so the
# --speed option (instructions per second) also sets how fast DT and ST run
# down. The default of 300 makes timers run about 5 times faster than the
# nominal 60Hz, use --speed 60 for the nominal timer rate.


import argparse
import os
import sys

os.environ["PYGAME_HIDE_SUPPORT_PROMPT"] = "no welcome message"   # this env var disable pygame's welcome message when imported
import pygame
from pygame.locals import (
    K_0, K_1, K_2, K_3,
    K_4, K_5, K_6, K_7,
    K_8, K_9, K_a, K_b,
    K_c, K_d, K_e, K_f,
)

from chip8 import SCREEN_HEIGHT, SCREEN_WIDTH, Chip8, Chip8Error


# ******************** STATIC SECTION
KEY_MAPPINGS = {
    K_0: 0x0,
    K_1: 0x1,
    K_2: 0x2,
    K_3: 0x3,
    K_4: 0x4,
    K_5: 0x5,
    K_6: 0x6,
    K_7: 0x7,
    K_8: 0x8,
    K_9: 0x9,
    K_a: 0xA,
    K_b: 0xB,
    K_c: 0xC,
    K_d: 0xD,
    K_e: 0xE,
    K_f: 0xF,
}

SCALE = 15
SPEED = 300     # instructions per second
BLUE = pygame.Color(80,69,155,255)
LIGHT_BLUE = pygame.Color(136,126,203,255)


# ******************** UTILITIES SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="run a CHIP-8 ROM")
    parser.add_argument("-f", "--file", required=True, help="input rom file")
    parser.add_argument("-s", "--scale", type=int, default=SCALE, help="size in pixels of a CHIP-8 pixel")
    parser.add_argument("--speed", type=int, default=SPEED, help="instructions executed per second")
    parser.add_argument("--step", action="store_true",
                        help="execute one instruction for each RETURN key press and print the machine state")
    return parser.parse_args(argv)

def read_rom(path):
    with open(path, mode='rb') as f:
        return f.read()


# ******************** I/O SECTION
class Screen:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT, s=SCALE, bg_color=BLUE, fg_color=LIGHT_BLUE, surface=None):
        self.w, self.h, self.scale = w, h, s
        self.background = bg_color
        self.foreground = fg_color
        if surface is None:
            surface = pygame.display.set_mode((w * self.scale, h * self.scale))
        self.surface = surface
        self.surface.fill(self.background)

    def render(self, framebuffer):
        """
        paint a framebuffer snapshot on the surface
        the change won't be immediatly visible because it'll require a call to the static method refresh
        """
        self.surface.fill(self.background)
        for i, pixel in enumerate(framebuffer):
            if pixel:
                x, y = i % self.w, i // self.w
                pygame.draw.rect(
                    self.surface,
                    self.foreground,
                    (x * self.scale, y * self.scale, self.scale, self.scale)
                )

    @staticmethod
    def refresh():
        pygame.display.flip()

def handle_event(chip, event):
    """forward keypad changes to the machine, return False when the user wants to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type in (pygame.KEYDOWN, pygame.KEYUP):
        if event.key == pygame.K_ESCAPE:
            return False
        if event.key in KEY_MAPPINGS:
            chip.set_key(KEY_MAPPINGS[event.key], event.type == pygame.KEYDOWN)
    return True


# ******************** ENTRY POINT SECTION
def main(argv=None):
    args = get_args(argv)
    chip = Chip8()
    try:
        chip.load_program(read_rom(args.file))
    except Chip8Error as e:
        sys.exit(f"Cannot load {args.file}: {e}")
    # pygame initialization
    pygame.init()
    clock = pygame.time.Clock()
    pygame.display.set_caption(os.path.basename(args.file))
    s = Screen(s=args.scale)
    s.refresh()
    allow_next_step = not args.step
    # emulation loop
    run = True
    try:
        while run:
            clock.tick(args.speed)
            # loop throught the event queue
            for event in pygame.event.get():
                if args.step and event.type == pygame.KEYDOWN and event.key == pygame.K_RETURN:
                    allow_next_step = True
                if not handle_event(chip, event):
                    run = False
            if not run or not allow_next_step:
                continue
            try:
                # emulate one machine cycle (update timers, fetch opcode, decode opcode, execute opcode)
                if chip.step():
                    s.render(chip.framebuffer())
                    s.refresh()
            except Chip8Error as e:
                sys.exit(f"********** THE EMULATOR CRASHED ({e}) WITH THE FOLLOWING STATE\n{chip}")
            if args.step:
                print(chip)
                allow_next_step = False
    finally:
        pygame.quit()


if __name__ == "__main__":
    main()
