"""Multi-stage causal inference workflow: planner, stage agents and router."""

__version__ = "0.1.0"
