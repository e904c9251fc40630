from flowwatch.detectors.output_monitor import OutputMonitor
from flowwatch.detectors.rules import RuleEngine, RuleMatch

__all__ = ["OutputMonitor", "RuleEngine", "RuleMatch"]
