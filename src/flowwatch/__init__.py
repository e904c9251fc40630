"""Workflow supervision: log tailing, anomaly detection and corrective task queueing."""

__version__ = "0.3.0"
