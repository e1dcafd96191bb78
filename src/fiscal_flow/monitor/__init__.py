"""Rule engine and proactive monitor."""

from fiscal_flow.monitor.monitor import (
    AlertService,
    MarginAnalyzer,
    MonitorSummary,
    ProactiveMonitor,
)
from fiscal_flow.monitor.rules import (
    DEFAULT_THRESHOLDS,
    Finding,
    ProjectMargin,
    RuleSet,
    compute_margin,
    evaluate_client_rules,
    evaluate_margin,
    load_ruleset,
    render_template,
)
from fiscal_flow.monitor.vitals import (
    ClientVitals,
    compute_vitals,
    get_client_vitals,
    get_uncategorized_count,
)

__all__ = [
    "DEFAULT_THRESHOLDS",
    "AlertService",
    "ClientVitals",
    "Finding",
    "MarginAnalyzer",
    "MonitorSummary",
    "ProactiveMonitor",
    "ProjectMargin",
    "RuleSet",
    "compute_margin",
    "compute_vitals",
    "evaluate_client_rules",
    "evaluate_margin",
    "get_client_vitals",
    "get_uncategorized_count",
    "load_ruleset",
    "render_template",
]
