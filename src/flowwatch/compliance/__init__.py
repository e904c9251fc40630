from flowwatch.compliance.monitor import ComplianceMonitor, coverage_key, is_source_file, is_test_file
from flowwatch.compliance.policy import RULE_IDS, PolicySet, RulePolicy, load_policies
from flowwatch.compliance.inspector import GitInspector, ProjectInspector, StaticInspector

__all__ = [
    "ComplianceMonitor",
    "GitInspector",
    "PolicySet",
    "ProjectInspector",
    "RULE_IDS",
    "RulePolicy",
    "StaticInspector",
    "coverage_key",
    "is_source_file",
    "is_test_file",
    "load_policies",
]
