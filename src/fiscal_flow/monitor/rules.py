"""Partner rulesets and rule evaluation.

Client rules run over a client's vitals. Margin rules run per project and
fire only when both the hours-consumed and the margin-gap thresholds are
crossed.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from fiscal_flow.models import AlertRule, RuleType, Severity, as_decimal, as_uuid
from fiscal_flow.monitor.vitals import ClientVitals
from fiscal_flow.store import RecordStore, Row

DEFAULT_THRESHOLDS: dict[RuleType, Decimal] = {
    RuleType.PROJECT_MARGIN_WARNING: Decimal("-10"),
    RuleType.PROJECT_MARGIN_CRITICAL: Decimal("-20"),
    RuleType.HOURS_OVERRUN_WARNING: Decimal("80"),
    RuleType.HOURS_OVERRUN_CRITICAL: Decimal("90"),
    RuleType.CASH_CRITICAL: Decimal("7"),
    RuleType.AR_OVERDUE_WARNING: Decimal("15"),
    RuleType.UNCATEGORIZED_COUNT: Decimal("20"),
}

AP_EXCEEDS_CASH = "AP_EXCEEDS_CASH"

ACTIVE_PROJECT_STATUSES = ("ATIVO", "active")


@dataclass
class Finding:
    """A triggered rule, before it is written as an alert."""

    alert_type: str
    severity: Severity
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleSet:
    """Active rules of one partner, keyed by type."""

    partner_id: UUID
    rules: dict[RuleType, AlertRule] = field(default_factory=dict)

    def threshold(self, rule_type: RuleType) -> Decimal:
        rule = self.rules.get(rule_type)
        if rule is not None and rule.threshold_value is not None:
            return rule.threshold_value
        return DEFAULT_THRESHOLDS[rule_type]

    def severity(self, rule_type: RuleType, default: Severity) -> Severity:
        rule = self.rules.get(rule_type)
        if rule is not None and rule.alert_severity is not None:
            return rule.alert_severity
        return default

    def template(self, rule_type: RuleType) -> str | None:
        rule = self.rules.get(rule_type)
        return rule.custom_message_template if rule is not None else None


async def load_ruleset(store: RecordStore, partner_id: Any) -> RuleSet:
    """Load a partner's active rules; the oldest active rule per type wins."""
    rows = await store.select(
        "alert_rulesets",
        {"partner_id": partner_id, "is_active": True},
        order_by=("created_at",),
    )
    ruleset = RuleSet(partner_id=as_uuid(partner_id))
    for row in rows:
        try:
            rule = AlertRule.from_row(row)
        except ValueError:
            continue
        ruleset.rules.setdefault(rule.rule_type, rule)
    return ruleset


def _fmt(value: Decimal | float | int) -> str:
    return f"{Decimal(str(value)):.1f}"


def render_template(template: str, values: dict[str, Any]) -> str:
    """Substitute ``{name}`` placeholders, leaving unknown names as written."""
    message = template
    for name, value in values.items():
        message = message.replace("{" + name + "}", str(value))
    return message


def _message(ruleset: RuleSet, rule_type: RuleType, default: str, values: dict[str, Any]) -> str:
    template = ruleset.template(rule_type)
    if template:
        return render_template(template, values)
    return default


# === Client rules ===


def evaluate_client_rules(
    client_name: str,
    vitals: ClientVitals,
    uncategorized_count: int,
    ruleset: RuleSet,
) -> list[Finding]:
    """Evaluate the four client rules independently."""
    findings: list[Finding] = []

    runway_days = ruleset.threshold(RuleType.CASH_CRITICAL)
    if vitals.days_to_negative is not None and vitals.days_to_negative <= runway_days:
        values = {
            "client_name": client_name,
            "days_to_negative": vitals.days_to_negative,
            "min_projected_balance": _fmt(vitals.min_projected_balance),
        }
        findings.append(
            Finding(
                alert_type=RuleType.CASH_CRITICAL.value,
                severity=ruleset.severity(RuleType.CASH_CRITICAL, Severity.CRITICAL),
                message=_message(
                    ruleset,
                    RuleType.CASH_CRITICAL,
                    f"{client_name}: cash projected to turn negative in "
                    f"{vitals.days_to_negative} days",
                    values,
                ),
                metadata={
                    "rule_type": RuleType.CASH_CRITICAL.value,
                    "days_to_negative": vitals.days_to_negative,
                    "min_projected_balance": str(vitals.min_projected_balance),
                    "threshold": str(runway_days),
                },
            )
        )

    if vitals.cash_balance > 0 and vitals.ar_overdue_30d > 0:
        ratio = vitals.ar_overdue_30d / vitals.cash_balance * 100
        limit = ruleset.threshold(RuleType.AR_OVERDUE_WARNING)
        if ratio > limit:
            values = {"client_name": client_name, "ar_overdue_pct": _fmt(ratio)}
            findings.append(
                Finding(
                    alert_type=RuleType.AR_OVERDUE_WARNING.value,
                    severity=ruleset.severity(RuleType.AR_OVERDUE_WARNING, Severity.CRITICAL),
                    message=_message(
                        ruleset,
                        RuleType.AR_OVERDUE_WARNING,
                        f"{client_name}: receivables overdue over 30 days are "
                        f"{_fmt(ratio)}% of cash",
                        values,
                    ),
                    metadata={
                        "rule_type": RuleType.AR_OVERDUE_WARNING.value,
                        "ar_overdue_30d": str(vitals.ar_overdue_30d),
                        "cash_balance": str(vitals.cash_balance),
                        "ratio": _fmt(ratio),
                        "threshold": str(limit),
                    },
                )
            )

    limit = ruleset.threshold(RuleType.UNCATEGORIZED_COUNT)
    if uncategorized_count > limit:
        values = {"client_name": client_name, "uncategorized_count": uncategorized_count}
        findings.append(
            Finding(
                alert_type=RuleType.UNCATEGORIZED_COUNT.value,
                severity=ruleset.severity(RuleType.UNCATEGORIZED_COUNT, Severity.WARNING),
                message=_message(
                    ruleset,
                    RuleType.UNCATEGORIZED_COUNT,
                    f"{client_name}: {uncategorized_count} uncategorized transactions",
                    values,
                ),
                metadata={
                    "rule_type": RuleType.UNCATEGORIZED_COUNT.value,
                    "uncategorized_count": uncategorized_count,
                    "threshold": str(limit),
                },
            )
        )

    if vitals.ap_due_7d > vitals.cash_balance:
        findings.append(
            Finding(
                alert_type=AP_EXCEEDS_CASH,
                severity=Severity.WARNING,
                message=(
                    f"{client_name}: payables due within 7 days "
                    f"({_fmt(vitals.ap_due_7d)}) exceed cash ({_fmt(vitals.cash_balance)})"
                ),
                metadata={
                    "rule_type": AP_EXCEEDS_CASH,
                    "ap_due_7d": str(vitals.ap_due_7d),
                    "cash_balance": str(vitals.cash_balance),
                },
            )
        )

    return findings


# === Margin rules ===


@dataclass
class ProjectMargin:
    project_id: UUID | None
    project_name: str
    client_id: UUID | None
    hours_consumed_pct: Decimal
    invoiced_pct: Decimal

    @property
    def margin_gap(self) -> Decimal:
        return self.invoiced_pct - self.hours_consumed_pct

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_id": str(self.project_id) if self.project_id else None,
            "project_name": self.project_name,
            "hours_consumed_pct": float(round(self.hours_consumed_pct, 1)),
            "invoiced_pct": float(round(self.invoiced_pct, 1)),
            "margin_gap": float(round(self.margin_gap, 1)),
        }


def compute_margin(project: Row) -> ProjectMargin | None:
    """Consumption and invoicing percentages, or None without budgeted hours."""
    budget_hours = as_decimal(project.get("budget_hours")) or Decimal("0")
    if budget_hours <= 0:
        return None
    hours_logged = as_decimal(project.get("total_hours_logged")) or Decimal("0")
    budget_amount = as_decimal(project.get("budget_amount")) or Decimal("0")
    billed = as_decimal(project.get("total_billed")) or Decimal("0")

    invoiced_pct = billed / budget_amount * 100 if budget_amount > 0 else Decimal("0")
    return ProjectMargin(
        project_id=as_uuid(project.get("id")),
        project_name=str(project.get("name") or ""),
        client_id=as_uuid(project.get("client_id")),
        hours_consumed_pct=hours_logged / budget_hours * 100,
        invoiced_pct=invoiced_pct,
    )


def evaluate_margin(margin: ProjectMargin, ruleset: RuleSet) -> Finding | None:
    """At most one finding per project; both thresholds must be crossed."""
    gap = margin.margin_gap
    hours = margin.hours_consumed_pct

    if gap <= ruleset.threshold(RuleType.PROJECT_MARGIN_CRITICAL) and hours >= ruleset.threshold(
        RuleType.HOURS_OVERRUN_CRITICAL
    ):
        rule_type, severity = RuleType.PROJECT_MARGIN_CRITICAL, Severity.CRITICAL
        default = (
            f"Critical margin on {margin.project_name}: {_fmt(hours)}% of hours consumed, "
            f"{_fmt(margin.invoiced_pct)}% invoiced"
        )
    elif gap <= ruleset.threshold(RuleType.PROJECT_MARGIN_WARNING) and hours >= ruleset.threshold(
        RuleType.HOURS_OVERRUN_WARNING
    ):
        rule_type, severity = RuleType.PROJECT_MARGIN_WARNING, Severity.WARNING
        default = (
            f"Margin at risk on {margin.project_name}: {_fmt(hours)}% of hours consumed, "
            f"{_fmt(margin.invoiced_pct)}% invoiced"
        )
    else:
        return None

    values = {
        "project_name": margin.project_name,
        "hours_consumed_pct": _fmt(hours),
        "invoiced_pct": _fmt(margin.invoiced_pct),
        "margin_gap": _fmt(gap),
    }
    return Finding(
        alert_type=rule_type.value,
        severity=ruleset.severity(rule_type, severity),
        message=_message(ruleset, rule_type, default, values),
        metadata={"rule_type": rule_type.value, "project_id": str(margin.project_id), **values},
    )
