import struct
from collections import deque

import pytest

from rs03can.motor import CanBus, MotorError, RS03Motor
from rs03can.protocol import (
    P_MAX,
    P_MIN,
    T_MAX,
    T_MIN,
    V_MAX,
    V_MIN,
    CanFrame,
    CommType,
    Mode,
    Param,
    create_extended_id,
    encode_operation_control,
    float_to_uint,
    pack_param_read,
    pack_param_write,
    parse_param_response,
)

# Feedback identifiers put the motor id in bits 16-23, whose low six bits are
# also read as fault status; 0x40 leaves them clear.
CLEAN_ID = 0x40


class FakeClock:
    def __init__(self):
        self.now = 0

    def __call__(self):
        return self.now

    def sleep(self, ms):
        self.now += ms


def feedback_frame(motor_id, position=0.0, velocity=0.0, torque=0.0, temp_c=25.0):
    data = struct.pack(
        ">4H",
        float_to_uint(position, P_MIN, P_MAX, 16),
        float_to_uint(velocity, V_MIN, V_MAX, 16),
        float_to_uint(torque, T_MIN, T_MAX, 16),
        int(round(temp_c * 10)),
    )
    return CanFrame(create_extended_id(CommType.MOTOR_FEEDBACK, 0, motor_id << 8), data)


class FakeBus(CanBus):
    def __init__(self, motor_id=1, params=None, echo_position=False, accept=True):
        self.motor_id = motor_id
        self.params = params or {}
        self.echo_position = echo_position
        self.accept = accept
        self.sent = []
        self.inbox = deque()

    def send(self, frame):
        if not self.accept:
            return False
        self.sent.append(frame)
        if frame.comm_type == CommType.READ_PARAM:
            index = frame.data[0] | (frame.data[1] << 8)
            if index in self.params:
                self.inbox.append(
                    CanFrame(
                        create_extended_id(CommType.READ_PARAM, 0, self.motor_id << 8),
                        pack_param_write(index, self.params[index]),
                    )
                )
        if self.echo_position and frame.comm_type == CommType.WRITE_PARAM:
            index, value = parse_param_response(frame.data)
            if index == Param.LOC_REF:
                self.inbox.append(feedback_frame(self.motor_id, position=value))
        return True

    def receive(self):
        return self.inbox.popleft() if self.inbox else None

    def writes(self, param):
        result = []
        for frame in self.sent:
            if frame.comm_type == CommType.WRITE_PARAM:
                index, value = parse_param_response(frame.data)
                if index == param:
                    result.append(value)
        return result


def make_motor(motor_id=1, **bus_kwargs):
    bus = FakeBus(motor_id=motor_id, **bus_kwargs)
    clock = FakeClock()
    motor = RS03Motor(bus, motor_id, 0, clock=clock, sleep=clock.sleep)
    return motor, bus, clock


def test_begin_disables_reporting_and_reads_bus_voltage():
    motor, bus, _ = make_motor(params={Param.VBUS: 24.0})
    assert motor.begin() == 24.0
    assert bus.sent[0].comm_type == CommType.ACTIVE_REPORTING
    assert bus.sent[0].data[0] == 0
    assert bus.sent[1].comm_type == CommType.READ_PARAM
    assert bus.sent[1].data == pack_param_read(Param.VBUS)
    assert len(bus.sent) == 2


def test_begin_times_out_without_reply():
    motor, _, clock = make_motor()
    with pytest.raises(MotorError):
        motor.begin()
    assert clock.now >= 500


def test_read_parameter_ignores_other_index():
    motor, bus, _ = make_motor()
    bus.inbox.append(
        CanFrame(
            create_extended_id(CommType.READ_PARAM, 0, 1 << 8),
            pack_param_write(Param.MECH_POS, 3.0),
        )
    )
    with pytest.raises(MotorError):
        motor.read_parameter(Param.VBUS)


def test_enable_frame_identifier():
    motor, bus, _ = make_motor()
    motor.enable()
    assert bus.sent[0].can_id == 0x03000001
    assert bus.sent[0].data == bytes(8)
    assert motor.is_enabled is True


def test_enable_send_failure_raises():
    motor, _, _ = make_motor(accept=False)
    with pytest.raises(MotorError):
        motor.enable()
    assert motor.is_enabled is False


def test_disable_and_clear_fault():
    motor, bus, _ = make_motor()
    motor.enable()
    motor.disable()
    assert bus.sent[-1].comm_type == CommType.MOTOR_STOP
    assert bus.sent[-1].data[0] == 0
    assert motor.is_enabled is False
    motor.clear_fault()
    assert bus.sent[-1].data == bytes([1]) + bytes(7)


def test_set_mode_rejects_unknown_mode():
    motor, bus, _ = make_motor()
    with pytest.raises(ValueError):
        motor.set_mode(4)
    assert bus.sent == []


def test_set_position_switches_mode_once():
    motor, bus, _ = make_motor()
    motor.set_position(1.5)
    assert bus.writes(Param.RUN_MODE) == [5.0]
    assert bus.writes(Param.LOC_REF) == [1.5]
    assert motor.mode == Mode.POSITION_CSP
    motor.set_position(-0.5)
    assert len(bus.sent) == 3


def test_set_position_with_params_order():
    motor, bus, _ = make_motor()
    motor.set_position_with_params(2.0, 3.0, 4.0)
    indices = [parse_param_response(f.data)[0] for f in bus.sent]
    assert indices == [Param.RUN_MODE, Param.VEL_MAX, Param.ACC_SET, Param.LOC_REF]
    assert motor.mode == Mode.POSITION_PP


def test_set_current_uses_current_mode():
    motor, bus, _ = make_motor()
    motor.set_current(2.5)
    assert bus.writes(Param.RUN_MODE) == [3.0]
    assert bus.writes(Param.IQ_REF) == [2.5]


def test_operation_control_zero_command():
    motor, bus, _ = make_motor()
    motor.set_operation_control(0.0, 0.0, 0.0, 0.0, 0.0)
    assert len(bus.sent) == 1
    assert bus.sent[0].can_id == 0x017FFF01
    assert bus.sent[0].data == b"\x7f\xff\x7f\xff\x00\x00\x00\x00"


def test_operation_control_matches_encoding():
    motor, bus, _ = make_motor()
    motor.set_operation_control(1.0, 2.0, 3.0, 100.0, 1.0)
    data, torque_int = encode_operation_control(1.0, 2.0, 3.0, 100.0, 1.0)
    assert bus.sent[0].data == data
    assert (bus.sent[0].can_id >> 8) & 0xFFFF == torque_int


def test_set_can_id_addresses_old_id_then_switches():
    motor, bus, _ = make_motor()
    motor.set_can_id(7)
    assert bus.sent[0].comm_type == CommType.SET_CAN_ID
    assert bus.sent[0].can_id & 0xFF == 1
    assert motor.motor_id == 7
    motor.enable()
    assert bus.sent[1].can_id & 0xFF == 7


def test_active_reporting_sets_interval():
    motor, bus, _ = make_motor()
    motor.set_active_reporting(True, 20)
    assert bus.sent[0].data[0] == 1
    assert bus.writes(Param.EPS_CAN_TIME) == [5.0]


def test_zero_position_payload():
    motor, bus, _ = make_motor()
    motor.set_zero_position()
    assert bus.sent[0].comm_type == CommType.SET_ZERO
    assert bus.sent[0].data[0] == 1


def test_feedback_frame_updates_state():
    motor, _, clock = make_motor(motor_id=CLEAN_ID)
    clock.now = 123
    assert motor.handle_frame(feedback_frame(CLEAN_ID, position=1.0, temp_c=25.0)) is True
    feedback = motor.feedback
    assert feedback.position == pytest.approx(1.0, abs=1e-3)
    assert feedback.temperature == pytest.approx(25.0)
    assert feedback.mode == 1
    assert motor.has_fault() is False
    assert motor.fault.fault_str == "No fault."
    assert motor.last_feedback == 123


def test_feedback_from_motor_one_reports_undervoltage():
    motor, _, _ = make_motor(motor_id=1)
    motor.handle_frame(feedback_frame(1))
    assert motor.has_fault() is True
    assert motor.fault.fault_str == "Undervoltage. "


def test_feedback_from_other_motor_ignored():
    motor, _, _ = make_motor(motor_id=CLEAN_ID)
    assert motor.handle_frame(feedback_frame(0x41, position=2.0)) is False
    assert motor.feedback.position == 0.0


def test_fault_feedback_frame():
    motor, _, _ = make_motor()
    details = (1 << 0) | (1 << 14)
    frame = CanFrame(create_extended_id(CommType.FAULT_FEEDBACK, 0, 1 << 8), struct.pack("<I4x", details))
    assert motor.handle_frame(frame) is True
    fault = motor.fault
    assert fault.overtemperature is True
    assert fault.overload is True
    assert fault.fault_details == details
    assert fault.fault_str == "Motor overtemperature fault. Gridlock I²T overload fault. "


def test_feedback_copy_is_independent():
    motor, _, _ = make_motor(motor_id=CLEAN_ID)
    copy = motor.feedback
    copy.position = 9.0
    assert motor.feedback.position == 0.0


def test_position_control_reaches_one_radian():
    motor, bus, _ = make_motor(motor_id=CLEAN_ID, echo_position=True)
    assert motor.test_position_control(1.0) is True
    assert bus.sent[0].comm_type == CommType.MOTOR_ENABLE
    assert motor.feedback.position == pytest.approx(1.0, abs=0.05)


def test_position_control_times_out_without_feedback():
    motor, _, clock = make_motor(motor_id=CLEAN_ID)
    assert motor.test_position_control(1.0) is False
    assert clock.now >= 5000


def test_position_control_fault_raises():
    motor, _, _ = make_motor(motor_id=1, echo_position=True)
    with pytest.raises(MotorError, match="position test"):
        motor.test_position_control(1.0)


def test_velocity_control_runs_then_stops():
    motor, bus, clock = make_motor(motor_id=CLEAN_ID)
    assert motor.test_velocity_control(1.0, 3000) is True
    assert clock.now >= 3000
    assert bus.writes(Param.SPD_REF) == [1.0, 0.0]
    assert motor.mode == Mode.VELOCITY


def test_sinusoidal_movement_stays_in_amplitude():
    motor, bus, clock = make_motor(motor_id=CLEAN_ID)
    assert motor.test_sinusoidal_movement(0.5, 0.5, 8000) is True
    targets = bus.writes(Param.LOC_REF)
    assert clock.now >= 8000
    assert all(-0.5 - 1e-6 <= t <= 0.5 + 1e-6 for t in targets)
    assert max(targets) > 0.4
    assert min(targets) < -0.4
    assert targets[-1] == 0.0
    assert bus.writes(Param.RUN_MODE) == [5.0]


def test_process_can_message_returns_frame():
    motor, bus, _ = make_motor(motor_id=CLEAN_ID)
    assert motor.process_can_message() is None
    frame = feedback_frame(CLEAN_ID, velocity=2.0)
    bus.inbox.append(frame)
    assert motor.process_can_message() == frame
    assert motor.feedback.velocity == pytest.approx(2.0, abs=1e-2)