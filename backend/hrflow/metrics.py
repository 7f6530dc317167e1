# backend/hrflow/metrics.py
from prometheus_client import Counter, Histogram

# === Core metrics (definitions ONLY here) ===
requests_submitted_total = Counter(
    "workflow_requests_submitted_total", "Workflow requests submitted", ["workflow_code"]
)

decisions_total = Counter(
    "workflow_decisions_total", "Approver decisions recorded", ["decision"]
)

requests_finalized_total = Counter(
    "workflow_requests_finalized_total", "Requests reaching a terminal status", ["status"]
)

sla_actions_total = Counter(
    "workflow_sla_actions_total", "Timeout actions applied by the SLA sweep", ["action"]
)

sla_warnings_total = Counter(
    "workflow_sla_warnings_total", "Early SLA warnings emitted"
)

notifications_failed_total = Counter(
    "workflow_notifications_failed_total", "Notification deliveries that failed", ["event"]
)

sweep_duration_seconds = Histogram(
    "workflow_sla_sweep_duration_seconds", "Wall time of one SLA sweep"
)

DECISIONS = ["approve", "reject", "delegate", "withdraw"]
TERMINAL = ["approved", "rejected", "withdrawn", "auto_approved", "auto_rejected"]
TIMEOUT_ACTIONS = ["auto_approve", "auto_reject", "escalate", "remind"]

def init_metrics_zero(workflow_codes=()):
    # create label combos at 0 so dashboards never see "no data"
    for c in workflow_codes:
        requests_submitted_total.labels(workflow_code=c).inc(0)
    for d in DECISIONS:
        decisions_total.labels(decision=d).inc(0)
    for s in TERMINAL:
        requests_finalized_total.labels(status=s).inc(0)
    for a in TIMEOUT_ACTIONS:
        sla_actions_total.labels(action=a).inc(0)
    sla_warnings_total.inc(0)
