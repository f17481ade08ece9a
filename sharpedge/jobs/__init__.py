"""
Scheduled tick runners.

Each job runs once per invocation, keeps no state between runs except the
store, and returns a TickSummary.
"""

from sharpedge.jobs.signals import run_signals
from sharpedge.jobs.watch import run_watch
from sharpedge.jobs.correlate import run_correlate
from sharpedge.jobs.settle import run_settle

__all__ = [
    "run_signals",
    "run_watch",
    "run_correlate",
    "run_settle",
]
