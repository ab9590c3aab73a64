"""Control RS03 servo motors over a CAN bus: wire format, single-motor control and group patterns."""

__version__ = "0.1.0"
__all__ = ["motor", "patterns", "protocol"]