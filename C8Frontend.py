import logging

import pygame

from C8Machine import SCREEN_HEIGHT, SCREEN_WIDTH

logger = logging.getLogger(__name__)

# key mapping for Chip-8 keys
KEY_MAP = {
    pygame.K_1: 0x1,
    pygame.K_2: 0x2,
    pygame.K_3: 0x3,
    pygame.K_4: 0xC,
    pygame.K_q: 0x4,
    pygame.K_w: 0x5,
    pygame.K_e: 0x6,
    pygame.K_r: 0xD,
    pygame.K_a: 0x7,
    pygame.K_s: 0x8,
    pygame.K_d: 0x9,
    pygame.K_f: 0xE,
    pygame.K_z: 0xA,
    pygame.K_x: 0x0,
    pygame.K_c: 0xB,
    pygame.K_v: 0xF,
}


class C8Frontend:
    """pygame window that shows a machine's framebuffer and feeds it keys."""

    def __init__(self, scale=24, color=(255, 165, 0), caption="C8Machine"):
        self.running = True
        self.scale = scale
        self.color = color

        pygame.init()
        self.screen = pygame.display.set_mode((SCREEN_WIDTH * scale, SCREEN_HEIGHT * scale))
        pygame.display.set_caption(caption)
        logger.debug("Opened %dx%d window", SCREEN_WIDTH * scale, SCREEN_HEIGHT * scale)

    def close(self):
        pygame.quit()

    def set_caption(self, text):
        pygame.display.set_caption(text)

    def poll(self, machine):
        for event in pygame.event.get():
            if event.type == pygame.QUIT or (
                event.type == pygame.KEYDOWN and event.key == pygame.K_ESCAPE
            ):
                self.running = False
                # unblocks a program sitting in FX0A
                machine.request_cancel()

        # key state only reflects what is held during this poll
        machine.reset_keys()
        pressed = pygame.key.get_pressed()
        for key, chip_key in KEY_MAP.items():
            if pressed[key]:
                machine.set_key(chip_key, True)

    def draw(self, machine):
        gfx = machine.gfx
        scale = self.scale
        screen = self.screen
        square_color = self.color

        # clear screen
        screen.fill((0, 0, 0))

        for y in range(SCREEN_HEIGHT):
            row_base = y * SCREEN_WIDTH
            py = y * scale
            for x in range(SCREEN_WIDTH):
                if gfx[row_base + x]:
                    screen.fill(square_color, (x * scale, py, scale, scale))

        pygame.display.flip()
        machine.draw_flag = False


def framebuffer_to_text(machine, on="█", off=" "):
    """Render the framebuffer as boxed text, one line per row."""
    lines = ["┌{}┐".format("─" * SCREEN_WIDTH)]
    for row in machine.framebuffer_rows():
        lines.append("│{}│".format("".join(on if lit else off for lit in row)))
    lines.append("└{}┘".format("─" * SCREEN_WIDTH))
    return "\n".join(lines)
