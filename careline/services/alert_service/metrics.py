"""Alert metrics, derived from stored alerts. Never written back."""
from collections import Counter
from datetime import datetime
from typing import Iterable, Optional

from careline.shared.models import (
    AlertMetrics,
    AlertSeverity,
    AlertStatus,
    AlertType,
    EmergencyAlert,
    NotificationStatus,
)

_DELIVERED_STATUSES = (
    NotificationStatus.SENT,
    NotificationStatus.DELIVERED,
    NotificationStatus.ACKNOWLEDGED,
)


def compute_alert_metrics(
    alerts: Iterable[EmergencyAlert],
    since: Optional[datetime] = None,
) -> AlertMetrics:
    """Aggregate counts and rates over alerts created at or after `since`."""
    selected = [a for a in alerts if since is None or a.created_at >= since]
    total = len(selected)

    by_severity = Counter(a.severity.value for a in selected)
    by_status = Counter(a.status.value for a in selected)
    by_type = Counter(a.alert_type.value for a in selected)

    ack_seconds = [
        (a.acknowledged_at - a.created_at).total_seconds()
        for a in selected
        if a.acknowledged_at is not None
    ]
    escalated = sum(
        1 for a in selected
        if a.escalation_level > 0 or a.status == AlertStatus.ESCALATED
    )
    resolved = by_status.get(AlertStatus.RESOLVED.value, 0)
    exhausted = sum(1 for a in selected if a.exhausted_at is not None)

    notifications = [n for a in selected for n in a.notifications]
    sent = sum(1 for n in notifications if n.status in _DELIVERED_STATUSES)
    failed = sum(1 for n in notifications if n.status == NotificationStatus.FAILED)

    def rate(count: int) -> float:
        return count / total if total else 0.0

    return AlertMetrics(
        total_alerts=total,
        by_severity={s.value: by_severity.get(s.value, 0) for s in AlertSeverity},
        by_status={s.value: by_status.get(s.value, 0) for s in AlertStatus},
        by_type={t.value: by_type.get(t.value, 0) for t in AlertType},
        average_time_to_acknowledge_seconds=(
            sum(ack_seconds) / len(ack_seconds) if ack_seconds else None
        ),
        acknowledgment_rate=rate(len(ack_seconds)),
        escalation_rate=rate(escalated),
        resolution_rate=rate(resolved),
        exhaustion_rate=rate(exhausted),
        notifications_sent=sent,
        notifications_failed=failed,
    )
