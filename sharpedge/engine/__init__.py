"""
Signal pipeline engine.

Implements the sharp-vs-exchange decision pipeline:
1. De-vig multi-book quotes into fair probabilities
2. Classify exchange prices against fair value
3. Size positions with layered Kelly
4. Group correlated legs per event
5. Escalate scan frequency on probability movement
6. Gate every signal before it is executable
7. Settle signals against market resolution
"""

from sharpedge.engine.quotes import QuoteAggregator, QuoteBook
from sharpedge.engine.fair_probability import FairProbabilityEngine
from sharpedge.engine.edge import EdgeClassifier
from sharpedge.engine.sizing import PositionSizer
from sharpedge.engine.correlation import MultiLegDetector
from sharpedge.engine.escalation import EscalationEngine
from sharpedge.engine.gate import ExecutionGate
from sharpedge.engine.settlement import SettlementReconciler

__all__ = [
    "QuoteAggregator",
    "QuoteBook",
    "FairProbabilityEngine",
    "EdgeClassifier",
    "PositionSizer",
    "MultiLegDetector",
    "EscalationEngine",
    "ExecutionGate",
    "SettlementReconciler",
]
