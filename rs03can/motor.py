"""Control of a single RS03 motor over a CAN bus."""

from __future__ import annotations

import math
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Callable

from .protocol import (
    CanFrame,
    CommType,
    Mode,
    MotorFault,
    MotorFeedback,
    Param,
    create_extended_id,
    decode_feedback,
    encode_operation_control,
    fault_description,
    fault_from_details,
    pack_param_read,
    pack_param_write,
    parse_param_response,
)

PARAM_TIMEOUT_MS = 500
POSITION_TIMEOUT_MS = 5000
POSITION_TOLERANCE = 0.05
PARAM_POLL_MS = 1
TEST_POLL_MS = 10

_EMPTY_PAYLOAD = bytes(8)


class MotorError(Exception):
    """A command could not be sent, a reply did not arrive, or the motor faulted."""


class CanBus(ABC):
    """Transport for extended CAN frames."""

    @abstractmethod
    def send(self, frame: CanFrame) -> bool:
        """Transmit a frame; return whether it was accepted."""

    @abstractmethod
    def receive(self) -> CanFrame | None:
        """Return the next received frame, or ``None`` if none is waiting."""


def _millis() -> float:
    return time.monotonic() * 1000.0


def _delay(ms: float) -> None:
    time.sleep(ms / 1000.0)


class RS03Motor:
    """One RS03 motor addressed by its CAN identifier.

    ``clock`` returns the current time in milliseconds and ``sleep`` waits for a
    number of milliseconds; both default to the system monotonic clock.
    """

    def __init__(
        self,
        bus: CanBus,
        motor_id: int = 1,
        master_id: int = 0,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.bus = bus
        self.motor_id = motor_id & 0xFF
        self.master_id = master_id & 0xFF
        self._clock = clock or _millis
        self._sleep = sleep or _delay
        self._reset_state()

    def _reset_state(self) -> None:
        self.is_enabled = False
        self._mode = Mode.OPERATION
        self._feedback = MotorFeedback()
        self._fault = MotorFault()
        self.last_feedback: float = 0
        self._waiting_for_response = False
        self._last_param_read = 0
        self._param_response = 0.0

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def feedback(self) -> MotorFeedback:
        """A copy of the last feedback received from the motor."""
        return replace(self._feedback)

    @property
    def fault(self) -> MotorFault:
        """A copy of the current fault state."""
        return replace(self._fault)

    def _send(self, comm_type: int, data: bytes = _EMPTY_PAYLOAD, data2: int | None = None) -> None:
        if data2 is None:
            data2 = self.master_id << 8
        frame = CanFrame(create_extended_id(comm_type, self.motor_id, data2), data)
        if not self.bus.send(frame):
            raise MotorError(
                f"failed to send {CommType(comm_type).name} to motor {self.motor_id}"
            )

    def begin(self) -> float:
        """Reset local state, disable active reporting and verify communication.

        Returns the bus voltage read from the motor.
        """
        self._reset_state()
        self.set_active_reporting(False)
        return self.read_parameter(Param.VBUS)

    def enable(self) -> None:
        self._send(CommType.MOTOR_ENABLE)
        self.is_enabled = True

    def disable(self, clear_fault: bool = False) -> None:
        data = bytes([1 if clear_fault else 0]) + bytes(7)
        self._send(CommType.MOTOR_STOP, data)
        self.is_enabled = False

    def set_mode(self, mode: int) -> None:
        """Switch the run mode; raises ``ValueError`` for an unknown mode."""
        new_mode = Mode(mode)
        self.write_parameter(Param.RUN_MODE, float(new_mode))
        self._mode = new_mode

    def _ensure_mode(self, mode: Mode) -> None:
        if self._mode != mode:
            self.set_mode(mode)

    def _ensure_enabled(self) -> None:
        if not self.is_enabled:
            self.enable()

    def set_position(self, position: float) -> None:
        """Target position in radians (CSP mode)."""
        self._ensure_mode(Mode.POSITION_CSP)
        self.write_parameter(Param.LOC_REF, position)

    def set_position_with_params(self, position: float, velocity: float, acceleration: float) -> None:
        """Target position with velocity and acceleration limits (PP mode)."""
        self._ensure_mode(Mode.POSITION_PP)
        self.write_parameter(Param.VEL_MAX, velocity)
        self.write_parameter(Param.ACC_SET, acceleration)
        self.write_parameter(Param.LOC_REF, position)

    def set_velocity(self, velocity: float) -> None:
        self._ensure_mode(Mode.VELOCITY)
        self.write_parameter(Param.SPD_REF, velocity)

    def set_acceleration(self, acceleration: float) -> None:
        self.write_parameter(Param.ACC_RAD, acceleration)

    def set_current(self, current: float) -> None:
        self._ensure_mode(Mode.CURRENT)
        self.write_parameter(Param.IQ_REF, current)

    def set_operation_control(
        self, position: float, velocity: float, torque: float, kp: float, kd: float
    ) -> None:
        self._ensure_mode(Mode.OPERATION)
        data, torque_int = encode_operation_control(position, velocity, torque, kp, kd)
        self._send(CommType.OPERATION_CONTROL, data, torque_int)

    def set_torque_limit(self, torque_limit: float) -> None:
        self.write_parameter(Param.LIMIT_TORQUE, torque_limit)

    def set_zero_position(self) -> None:
        self._send(CommType.SET_ZERO, bytes([1]) + bytes(7))

    def set_can_id(self, new_id: int) -> None:
        self._send(CommType.SET_CAN_ID, _EMPTY_PAYLOAD, (new_id << 16) | (self.master_id << 8))
        self.motor_id = new_id & 0xFF

    def save_parameters(self) -> None:
        self._send(CommType.SAVE_PARAMS)

    def set_active_reporting(self, enable: bool, interval_ms: int = 10) -> None:
        data = bytes([1 if enable else 0]) + bytes(7)
        self._send(CommType.ACTIVE_REPORTING, data)
        if enable:
            interval_value = max((interval_ms & 0xFFFF) // 5 + 1, 1)
            self.write_parameter(Param.EPS_CAN_TIME, float(interval_value))

    def set_zero_flag(self, zero_flag: int) -> None:
        self.write_parameter(Param.ZERO_STA, float(zero_flag & 0xFF))

    def read_parameter(self, param_index: int) -> float:
        """Request a parameter and wait up to 500 ms for the reply."""
        self._waiting_for_response = True
        self._last_param_read = param_index & 0xFFFF
        try:
            self._send(CommType.READ_PARAM, pack_param_read(param_index))
        except MotorError:
            self._waiting_for_response = False
            raise

        start = self._clock()
        while self._waiting_for_response and self._clock() - start < PARAM_TIMEOUT_MS:
            self.process_can_message()
            self._sleep(PARAM_POLL_MS)

        if self._waiting_for_response:
            self._waiting_for_response = False
            raise MotorError(
                f"no reply for parameter {param_index:#06x} from motor {self.motor_id}"
            )
        return self._param_response

    def write_parameter(self, param_index: int, value: float) -> None:
        self._send(CommType.WRITE_PARAM, pack_param_write(param_index, value))

    def process_can_message(self) -> CanFrame | None:
        """Take one frame from the bus, if any, and apply it to this motor's state."""
        frame = self.bus.receive()
        if frame is not None:
            self.handle_frame(frame)
        return frame

    def handle_frame(self, frame: CanFrame) -> bool:
        """Apply a received frame; return whether it updated this motor."""
        comm_type = frame.comm_type
        if comm_type == CommType.MOTOR_FEEDBACK:
            decoded = decode_feedback(frame, self.motor_id)
            if decoded is None:
                return False
            feedback, fault = decoded
            self._feedback = feedback
            self._fault = replace(fault, fault_details=self._fault.fault_details)
            self.last_feedback = self._clock()
            return True
        if comm_type == CommType.READ_PARAM:
            param_index, value = parse_param_response(frame.data)
            if param_index != self._last_param_read:
                return False
            self._param_response = value
            self._waiting_for_response = False
            return True
        if comm_type == CommType.FAULT_FEEDBACK:
            if len(frame.data) < 4:
                raise ValueError(f"fault frame needs 4 bytes, got {len(frame.data)}")
            (details,) = struct.unpack_from("<I", frame.data)
            self._fault = fault_from_details(details)
            return True
        return False

    def clear_fault(self) -> None:
        self.disable(clear_fault=True)

    def has_fault(self) -> bool:
        return self._fault.has_fault()

    def _check_fault(self, test_name: str) -> None:
        if self.has_fault():
            description = fault_description(self._fault.fault_details)
            raise MotorError(f"Motor fault during {test_name} test: {description}")

    def test_position_control(self, position: float) -> bool:
        """Move to ``position`` and wait up to 5 s for it to be reached within 0.05 rad."""
        self._ensure_enabled()
        self.set_position(position)

        start = self._clock()
        position_error = 1.0
        while abs(position_error) > POSITION_TOLERANCE and self._clock() - start < POSITION_TIMEOUT_MS:
            self.process_can_message()
            position_error = position - self._feedback.position
            self._check_fault("position")
            self._sleep(TEST_POLL_MS)
        return abs(position_error) <= POSITION_TOLERANCE

    def test_velocity_control(self, velocity: float, duration_ms: int) -> bool:
        """Run at ``velocity`` for ``duration_ms``, then stop."""
        self._ensure_enabled()
        self.set_velocity(velocity)

        start = self._clock()
        while self._clock() - start < duration_ms:
            self.process_can_message()
            self._check_fault("velocity")
            self._sleep(TEST_POLL_MS)

        self.set_velocity(0.0)
        return True

    def test_sinusoidal_movement(self, amplitude: float, frequency: float, duration_ms: int) -> bool:
        """Oscillate around the current position, then return to it."""
        self._ensure_enabled()
        self._ensure_mode(Mode.POSITION_CSP)

        center = self._feedback.position
        start = self._clock()
        while self._clock() - start < duration_ms:
            elapsed_seconds = (self._clock() - start) / 1000.0
            angle = 2 * math.pi * frequency * elapsed_seconds
            self.set_position(center + amplitude * math.sin(angle))
            self.process_can_message()
            self._check_fault("sinusoidal")
            self._sleep(TEST_POLL_MS)

        self.set_position(center)
        return True