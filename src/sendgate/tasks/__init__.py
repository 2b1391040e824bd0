"""SendGate background tasks."""

from sendgate.tasks.sweep import start_stall_sweep, stop_stall_sweep, sweep_once

__all__ = ["start_stall_sweep", "stop_stall_sweep", "sweep_once"]
