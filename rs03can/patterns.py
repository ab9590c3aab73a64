"""Coordinated movement patterns for a group of RS03 motors."""

from __future__ import annotations

import math
from enum import Enum
from typing import Sequence

from .motor import RS03Motor

SEQUENCE_STEP_MS = 2000


class Pattern(Enum):
    """Movement patterns a motor group can run."""

    STOP = "0"
    SEQUENCE = "1"
    WAVE = "2"
    SYNCHRONIZED = "3"


_ANNOUNCEMENTS = {
    Pattern.STOP: "Stopping all motors",
    Pattern.SEQUENCE: "Starting sequence pattern",
    Pattern.WAVE: "Starting wave pattern",
    Pattern.SYNCHRONIZED: "Starting synchronized pattern",
}


def pattern_from_key(key: str) -> Pattern | None:
    """The pattern selected by a single key press, or ``None`` for any other key."""
    try:
        return Pattern(key)
    except ValueError:
        return None


def pattern_positions(pattern: Pattern, elapsed_ms: int, count: int) -> list[float] | None:
    """Target positions in radians for ``count`` motors, ``elapsed_ms`` into ``pattern``.

    Returns ``None`` for :attr:`Pattern.STOP`, which commands velocity rather than position.
    """
    if count < 0:
        raise ValueError(f"motor count must not be negative, got {count}")
    if elapsed_ms < 0:
        raise ValueError(f"elapsed time must not be negative, got {elapsed_ms}")
    if pattern is Pattern.STOP:
        return None
    if count == 0:
        return []

    elapsed_ms = int(elapsed_ms)
    if pattern is Pattern.SEQUENCE:
        active = (elapsed_ms // SEQUENCE_STEP_MS) % count
        angle = math.sin((elapsed_ms % SEQUENCE_STEP_MS) / SEQUENCE_STEP_MS * 2 * math.pi)
        return [angle if index == active else 0.0 for index in range(count)]
    if pattern is Pattern.WAVE:
        seconds = elapsed_ms / 1000.0
        return [math.sin(seconds + 2 * math.pi * index / count) for index in range(count)]
    if pattern is Pattern.SYNCHRONIZED:
        return [math.sin(elapsed_ms / 1000.0)] * count
    raise ValueError(f"unknown pattern {pattern!r}")


class MotorGroup:
    """Several motors driven together through one selected pattern."""

    def __init__(self, motors: Sequence[RS03Motor]) -> None:
        self.motors = list(motors)
        self.pattern = Pattern.STOP
        self.start_ms = 0

    def select(self, pattern: Pattern, now_ms: int) -> str:
        """Switch to ``pattern`` starting at ``now_ms``; return the announcement line."""
        self.pattern = Pattern(pattern)
        self.start_ms = now_ms
        return _ANNOUNCEMENTS[self.pattern]

    def run(self, now_ms: int) -> list[float] | None:
        """Send the commands of the current pattern for time ``now_ms``.

        Returns the positions commanded, or ``None`` when the motors were stopped.
        """
        positions = pattern_positions(
            self.pattern, max(now_ms - self.start_ms, 0), len(self.motors)
        )
        if positions is None:
            for motor in self.motors:
                motor.set_velocity(0)
            return None
        for motor, position in zip(self.motors, positions):
            motor.set_position(position)
        return positions

    def status_report(self) -> str:
        """Position, velocity, temperature and faults of every motor, one per line."""
        lines = ["Motor Status:"]
        for number, motor in enumerate(self.motors, start=1):
            feedback = motor.feedback
            lines.append(
                f"Motor {number} - Pos: {feedback.position:.2f} rad, "
                f"Vel: {feedback.velocity:.2f} rad/s, "
                f"Temp: {feedback.temperature:.2f} °C"
            )
            if motor.has_fault():
                lines.append(f"  Fault: {motor.fault.fault_str}")
        return "\n".join(lines)