import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from C8Machine import PROGRAM_START, C8Machine  # noqa: E402


class FixedRandom:
    """Stands in for random.Random, handing out a fixed sequence."""

    def __init__(self, values) -> None:
        self.values = list(values)
        self.calls = []

    def randint(self, low: int, high: int) -> int:
        self.calls.append((low, high))
        return self.values.pop(0)


def program(*words: int) -> bytes:
    image = bytearray()
    for word in words:
        image += word.to_bytes(2, "big")
    return bytes(image)


@pytest.fixture()
def machine() -> C8Machine:
    return C8Machine()


@pytest.fixture()
def run():
    """Load words at the program start, then step once per word."""

    def _run(machine: C8Machine, *words: int) -> C8Machine:
        machine.load_program(program(*words))
        machine.pc = PROGRAM_START
        for _ in words:
            machine.step()
        return machine

    return _run
