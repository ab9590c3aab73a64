# rs03can

A small Python library for driving RS03 servo motors over a CAN bus. It builds
and decodes the motor's 29-bit extended frames, reads and writes motor
parameters, tracks feedback and fault state, and computes and sends simple
motion patterns across several motors at once.

## Installation

```
pip install .
```

The `test` extra (`pip install .[test]`) adds pytest.

## Protocol helpers

`rs03can.protocol` holds the wire format and has no state of its own:

- `Mode`, `CommType` and `Param`: operating modes, communication types and
  parameter indices, as `IntEnum`s.
- `CanFrame(can_id, data)`: an immutable extended CAN frame. It raises
  `ValueError` for an identifier outside 29 bits or more than eight data
  bytes, and offers `dlc` and `comm_type` properties.
- `MotorFeedback` and `MotorFault`: dataclasses for the motor's reported
  state; `MotorFault.has_fault()` tells whether any fault flag is set.
- `create_extended_id(comm_type, dest_id, data2)`: build a frame identifier
  (type in bits 24-28, data area 2 in bits 8-23, target in bits 0-7).
- `float_to_uint` / `uint_to_float`: map physical values to and from the
  fixed-point ranges the motor uses; `float_to_uint` clamps to the range.
- `encode_operation_control(position, velocity, torque, kp, kd)`: the eight
  payload bytes and the torque value for data area 2 of an operation-control
  command.
- `pack_param_read`, `pack_param_write`, `parse_param_response`: parameter
  access payloads.
- `decode_feedback(frame, motor_id)`: turn a feedback frame into a
  `(MotorFeedback, MotorFault)` pair, or `None` if the frame belongs to
  another motor.
- `fault_from_status`, `fault_from_details`, `fault_description`: fault
  decoding and human-readable text.

```python
from rs03can.protocol import CommType, create_extended_id, fault_description

frame_id = create_extended_id(CommType.MOTOR_ENABLE, 1, 0)
print(hex(frame_id))              # 0x3000001
print(fault_description(0b101))   # Motor overtemperature fault. Undervoltage fault.
```

## Controlling a motor

`rs03can.motor.RS03Motor` wraps one motor on a bus. The bus is an object
with `send(frame)`, returning whether the frame was accepted, and
`receive()`, returning the next `CanFrame` or `None`; `rs03can.motor.CanBus`
is an abstract base class for it.

```python
from rs03can.motor import RS03Motor
from rs03can.protocol import Mode

motor = RS03Motor(bus, 1, 0)       # motor id 1, master id 0
vbus = motor.begin()               # disables active reporting, returns bus voltage
motor.enable()
motor.set_mode(Mode.POSITION_CSP)
motor.set_position(1.0)            # radians
motor.process_can_message()        # pull one frame from the bus, if any
print(motor.feedback, motor.has_fault())
motor.disable()
```

Errors are raised, not returned:

- `MotorError` when the bus refuses a frame, when `read_parameter` gets no
  reply within 500 ms, or when a motor fault is seen during one of the test
  routines.
- `ValueError` from `set_mode` for a mode that is not a `Mode`.

`set_position`, `set_position_with_params`, `set_velocity`, `set_current` and
`set_operation_control` switch the motor into the matching mode first when it
is in another one. `handle_frame(frame)` applies a frame that was received
some other way, updating feedback, fault state or a pending parameter read.
`feedback` and `fault` return copies of the current state.

The constructor also accepts `clock` (current time in milliseconds) and
`sleep` (wait a number of milliseconds) callables, so that timeouts and waits
can be driven by something other than real time.

Longer checks are available:

- `test_position_control(position)` returns whether the position was reached
  within 0.05 rad in 5 s.
- `test_velocity_control(velocity, duration_ms)` runs at a velocity, then
  stops.
- `test_sinusoidal_movement(amplitude, frequency, duration_ms)` oscillates
  around the current position, then returns to it.

## Several motors

`rs03can.patterns` drives a group of motors through a shared motion pattern:

```python
from rs03can.patterns import MotorGroup, Pattern, pattern_from_key

group = MotorGroup([motor_a, motor_b, motor_c])
print(group.select(Pattern.WAVE, now_ms=0))   # Starting wave pattern
group.run(now_ms=250)
print(group.status_report())
```

`Pattern` offers `STOP`, `SEQUENCE`, `WAVE` and `SYNCHRONIZED`.
`pattern_from_key("2")` maps the keys `0` to `3` onto them and gives `None`
for any other key. `pattern_positions(pattern, elapsed_ms, count)` gives the
target positions without touching any motor (`None` for `STOP`).
`MotorGroup.run` sends the positions to the motors, or sets every motor's
velocity to zero under `STOP`, and returns what it commanded.
`status_report()` gives position, velocity, temperature and any fault of each
motor as text.

## What it does not do

The library talks to no CAN hardware itself: there is no driver for any CAN
adapter, so a `CanBus` implementation has to be supplied. It also has no
command-line program and no loop of its own; calling `run`,
`process_can_message` and the other methods at the right times is left to
the application.