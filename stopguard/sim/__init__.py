"""
Deterministic broker and clock for tests and the ``simulate`` command.
"""
from stopguard.sim.broker import RejectionSpec, SimBroker
from stopguard.sim.sim_clock import SimClock

__all__ = ["SimBroker", "SimClock", "RejectionSpec"]
