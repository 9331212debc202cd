"""Background workers."""
from .ledger_monitor import start_ledger_monitor, sweep_stuck_events

__all__ = ["start_ledger_monitor", "sweep_stuck_events"]
