import argparse
import logging
import sys
import time

from cpuinfo import get_cpu_info

from C8Frontend import C8Frontend, framebuffer_to_text
from C8Machine import C8Error, C8Machine, Quirks, StepResult

logger = logging.getLogger(__name__)

FPS_TARGET = 60
INSTR_PER_FRAME = 11  # 11 is a good default
SCALE = 24
TITLE_INTERVAL = 2.0  # seconds between caption refreshes

QUIRK_PRESETS = {
    "modern": Quirks,
    "cosmac": Quirks.cosmac,
}


def read_rom(path):
    with open(path, "rb") as f:
        return f.read()


def build_arg_parser():
    parser = argparse.ArgumentParser(
        prog="c8machine",
        description="CHIP-8 virtual machine",
    )
    parser.add_argument("rom", help="Path to the CHIP-8 program image")
    parser.add_argument(
        "--ipf",
        type=int,
        default=INSTR_PER_FRAME,
        help="Instructions executed per frame (default: %(default)s)",
    )
    parser.add_argument(
        "--fps",
        type=int,
        default=FPS_TARGET,
        help="Frames per second, also the timer rate (default: %(default)s)",
    )
    parser.add_argument(
        "--scale",
        type=int,
        default=SCALE,
        help="Window pixels per CHIP-8 pixel (default: %(default)s)",
    )
    parser.add_argument(
        "--quirks",
        choices=sorted(QUIRK_PRESETS),
        default="modern",
        help="Interpreter behaviour preset (default: %(default)s)",
    )
    parser.add_argument(
        "--headless",
        type=int,
        metavar="FRAMES",
        help="Run FRAMES frames without a window and print the screen as text",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging verbosity (default: %(default)s)",
    )
    return parser


def run_instructions(machine, how_many):
    result = StepResult.OK
    for _ in range(how_many):
        result = machine.step()
        if result is not StepResult.OK:
            # nothing more to do this frame while suspended or cancelled
            break
    return result


def run_frames(machine, frames, ipf):
    """Run without a display. Returns False if the program was cancelled."""
    for _ in range(frames):
        if run_instructions(machine, ipf) is StepResult.CANCELLED:
            return False
        machine.tick()
    return True


def run_windowed(machine, ipf, fps, scale):
    system_info = "Python: {} | CPU: {} | IPF: {}".format(
        sys.version.split()[0],
        get_cpu_info().get("brand_raw", "Unknown CPU"),
        ipf,
    )
    frame_time_target = 1 / fps
    frontend = C8Frontend(scale=scale, caption=system_info)
    last_title_update = time.time()

    try:
        while frontend.running:
            start_time = time.time()

            frontend.poll(machine)
            if run_instructions(machine, ipf) is StepResult.CANCELLED:
                logger.info("Program cancelled while waiting for a key")
                break
            machine.tick()

            if machine.draw_flag:
                frontend.draw(machine)

            frame_time = time.time() - start_time
            sleep_time = max(0, frame_time_target - frame_time)
            if sleep_time > 0:
                time.sleep(sleep_time)

            current_time = time.time()
            if current_time - last_title_update >= TITLE_INTERVAL:
                real_fps = 1 / (frame_time + sleep_time)
                frontend.set_caption(
                    "{} | FPS: {:.2f} | MIPS: {:.2f}".format(
                        system_info,
                        real_fps,
                        (ipf * real_fps) / 1000000,
                    )
                )
                last_title_update = current_time
    finally:
        frontend.close()


def main(argv=None):
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    if args.ipf < 1 or args.fps < 1 or args.scale < 1:
        parser.error("--ipf, --fps and --scale must be positive")
    if args.headless is not None and args.headless < 0:
        parser.error("--headless needs a frame count of 0 or more")

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    try:
        rom = read_rom(args.rom)
    except OSError as exc:
        logger.error("Cannot read ROM %s: %s", args.rom, exc)
        return 1

    machine = C8Machine(quirks=QUIRK_PRESETS[args.quirks]())
    machine.load_program(rom)
    logger.info("Loaded %s (%d bytes), quirks: %s", args.rom, len(rom), args.quirks)

    try:
        if args.headless is not None:
            run_frames(machine, args.headless, args.ipf)
            print(framebuffer_to_text(machine))
        else:
            run_windowed(machine, args.ipf, args.fps, args.scale)
    except C8Error as exc:
        logger.error("Program stopped: %s", exc)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
