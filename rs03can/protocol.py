"""Wire format of the RS03 motor CAN protocol: identifiers, scaling and payloads."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum

P_MIN = -12.57
P_MAX = 12.57
V_MIN = -20.0
V_MAX = 20.0
KP_MIN = 0.0
KP_MAX = 5000.0
KD_MIN = 0.0
KD_MAX = 100.0
T_MIN = -60.0
T_MAX = 60.0

FAULT_STR_SIZE = 256
NO_FAULT = "No fault."


class Mode(IntEnum):
    """Motor operating modes (value of the run-mode parameter)."""

    OPERATION = 0
    POSITION_PP = 1
    VELOCITY = 2
    CURRENT = 3
    POSITION_CSP = 5


class CommType(IntEnum):
    """Communication types carried in bits 24-28 of the extended identifier."""

    GET_DEVICE_ID = 0x0
    OPERATION_CONTROL = 0x1
    MOTOR_FEEDBACK = 0x2
    MOTOR_ENABLE = 0x3
    MOTOR_STOP = 0x4
    SET_ZERO = 0x6
    SET_CAN_ID = 0x7
    READ_PARAM = 0x11
    WRITE_PARAM = 0x12
    FAULT_FEEDBACK = 0x15
    SAVE_PARAMS = 0x16
    SET_BAUDRATE = 0x17
    ACTIVE_REPORTING = 0x18


class Param(IntEnum):
    """Parameter indices readable and writable over the bus."""

    RUN_MODE = 0x7005
    IQ_REF = 0x7006
    SPD_REF = 0x700A
    LIMIT_TORQUE = 0x700B
    CUR_KP = 0x7010
    CUR_KI = 0x7011
    CUR_FILT_GAIN = 0x7014
    LOC_REF = 0x7016
    LIMIT_SPD = 0x7017
    LIMIT_CUR = 0x7018
    MECH_POS = 0x7019
    IQF = 0x701A
    MECH_VEL = 0x701B
    VBUS = 0x701C
    LOC_KP = 0x701E
    SPD_KP = 0x701F
    SPD_KI = 0x7020
    SPD_FILT_GAIN = 0x7021
    ACC_RAD = 0x7022
    VEL_MAX = 0x7024
    ACC_SET = 0x7025
    EPS_CAN_TIME = 0x7026
    CAN_TIMEOUT = 0x7028
    ZERO_STA = 0x7029


@dataclass(frozen=True)
class CanFrame:
    """An extended CAN frame with up to eight payload bytes."""

    can_id: int
    data: bytes = b""

    def __post_init__(self) -> None:
        payload = bytes(self.data)
        if len(payload) > 8:
            raise ValueError(f"CAN payload is {len(payload)} bytes, at most 8 allowed")
        if not 0 <= self.can_id <= 0x1FFFFFFF:
            raise ValueError(f"CAN identifier {self.can_id:#x} out of 29-bit range")
        object.__setattr__(self, "data", payload)

    @property
    def dlc(self) -> int:
        return len(self.data)

    @property
    def comm_type(self) -> int:
        return (self.can_id >> 24) & 0x1F


@dataclass
class MotorFeedback:
    """Last state reported by a motor."""

    position: float = 0.0
    velocity: float = 0.0
    torque: float = 0.0
    temperature: float = 0.0
    fault: int = 0
    mode: int = 0


@dataclass
class MotorFault:
    """Fault flags and their human-readable description."""

    uncalibrated: bool = False
    overload: bool = False
    encoder_fault: bool = False
    overtemperature: bool = False
    overcurrent: bool = False
    undervoltage: bool = False
    fault_details: int = 0
    fault_str: str = field(default="")

    def has_fault(self) -> bool:
        return (
            self.uncalibrated
            or self.overload
            or self.encoder_fault
            or self.overtemperature
            or self.overcurrent
            or self.undervoltage
        )


def float_to_uint(x: float, x_min: float, x_max: float, bits: int) -> int:
    """Clamp ``x`` to ``[x_min, x_max]`` and scale it to an unsigned ``bits``-bit integer."""
    span = x_max - x_min
    x = min(max(x, x_min), x_max)
    return int((x - x_min) * float((1 << bits) - 1) / span)


def uint_to_float(x: int, x_min: float, x_max: float, bits: int) -> float:
    """Scale an unsigned ``bits``-bit integer back into ``[x_min, x_max]``."""
    span = x_max - x_min
    return float(x) * span / float((1 << bits) - 1) + x_min


def create_extended_id(comm_type: int, dest_id: int, data2: int = 0) -> int:
    """Build the 29-bit identifier: type in bits 24-28, data area 2 in 8-23, target in 0-7."""
    return ((comm_type & 0x1F) << 24) | ((data2 & 0xFFFF) << 8) | (dest_id & 0xFF)


_FAULT_BITS = (
    (0, "Motor overtemperature fault. "),
    (1, "Driver chip fault. "),
    (2, "Undervoltage fault. "),
    (3, "Overvoltage fault. "),
    (7, "Encoder not calibrated. "),
    (14, "Gridlock I²T overload fault. "),
)


def fault_description(fault_code: int) -> str:
    """Describe the bits of a detailed fault code."""
    description = "".join(text for bit, text in _FAULT_BITS if fault_code & (1 << bit))
    return description or NO_FAULT


def _bit(value: int, position: int) -> bool:
    return bool((value >> position) & 0x01)


def fault_from_status(status: int) -> MotorFault:
    """Fault flags from the six status bits carried in a feedback identifier."""
    fault = MotorFault(
        uncalibrated=_bit(status, 5),
        overload=_bit(status, 4),
        encoder_fault=_bit(status, 3),
        overtemperature=_bit(status, 2),
        overcurrent=_bit(status, 1),
        undervoltage=_bit(status, 0),
    )
    if fault.has_fault():
        parts = (
            (fault.uncalibrated, "Not calibrated. "),
            (fault.overload, "Overload. "),
            (fault.encoder_fault, "Encoder fault. "),
            (fault.overtemperature, "Overtemperature. "),
            (fault.overcurrent, "Overcurrent. "),
            (fault.undervoltage, "Undervoltage. "),
        )
        text = "".join(label for flag, label in parts if flag)
    else:
        text = NO_FAULT
    fault.fault_str = text[: FAULT_STR_SIZE - 1]
    return fault


def fault_from_details(fault_details: int) -> MotorFault:
    """Fault flags from the 32-bit value of a fault feedback frame."""
    fault_details &= 0xFFFFFFFF
    return MotorFault(
        uncalibrated=_bit(fault_details, 7),
        overload=_bit(fault_details, 14),
        encoder_fault=False,
        overtemperature=_bit(fault_details, 0),
        overcurrent=False,
        undervoltage=_bit(fault_details, 2),
        fault_details=fault_details,
        fault_str=fault_description(fault_details)[:FAULT_STR_SIZE],
    )


def _require_length(data: bytes, length: int, what: str) -> None:
    if len(data) < length:
        raise ValueError(f"{what} needs {length} bytes, got {len(data)}")


def decode_feedback(frame: CanFrame, motor_id: int) -> tuple[MotorFeedback, MotorFault] | None:
    """Decode a feedback frame; ``None`` if it comes from a different motor."""
    can_id = frame.can_id
    if (can_id >> 16) & 0xFF != motor_id:
        return None
    _require_length(frame.data, 8, "feedback frame")
    fault = fault_from_status((can_id >> 16) & 0x3F)
    pos_int, vel_int, torque_int, temp_int = struct.unpack(">4H", frame.data[:8])
    feedback = MotorFeedback(
        position=uint_to_float(pos_int, P_MIN, P_MAX, 16),
        velocity=uint_to_float(vel_int, V_MIN, V_MAX, 16),
        torque=uint_to_float(torque_int, T_MIN, T_MAX, 16),
        temperature=temp_int / 10.0,
        mode=(can_id >> 22) & 0x03,
    )
    return feedback, fault


def encode_operation_control(
    position: float, velocity: float, torque: float, kp: float, kd: float
) -> tuple[bytes, int]:
    """Payload and data-area-2 torque value of an operation control command."""
    data = struct.pack(
        ">4H",
        float_to_uint(position, P_MIN, P_MAX, 16),
        float_to_uint(velocity, V_MIN, V_MAX, 16),
        float_to_uint(kp, KP_MIN, KP_MAX, 16),
        float_to_uint(kd, KD_MIN, KD_MAX, 16),
    )
    return data, float_to_uint(torque, T_MIN, T_MAX, 16)


def pack_param_read(param_index: int) -> bytes:
    """Payload of a parameter read request."""
    return struct.pack("<H6x", param_index & 0xFFFF)


def pack_param_write(param_index: int, value: float) -> bytes:
    """Payload of a parameter write: index, two zero bytes, then a 32-bit float."""
    return struct.pack("<H2xf", param_index & 0xFFFF, value)


def parse_param_response(data: bytes) -> tuple[int, float]:
    """Parameter index and value from a parameter response payload."""
    data = bytes(data)
    _require_length(data, 8, "parameter response")
    param_index, value = struct.unpack("<H2xf", data[:8])
    return param_index, value