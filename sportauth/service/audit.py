from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sportauth.logging import get_audit_fallback_logger, get_logger, redact_value
from sportauth.service.errors import ForbiddenError, NotFoundError, ValidationError
from sportauth.storage.common import AuditStore
from sportauth.storage.models import (
    AuditAction,
    AuditEvent,
    AuditFilters,
    AuditResource,
    AuditStatus,
    Severity,
    utcnow,
)

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 50
ALERT_WINDOW = timedelta(days=7)
ALERT_SEVERITIES = [Severity.HIGH, Severity.CRITICAL]
TOP_FAILED_IPS = 10

METRIC_PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

# Explicit severities; anything absent falls back to status-based defaults
_SEVERITY: Dict[AuditAction, Severity] = {
    AuditAction.REFRESH_TOKEN_REUSE: Severity.CRITICAL,
    AuditAction.SUSPICIOUS_ACTIVITY: Severity.CRITICAL,
    AuditAction.ACCOUNT_LOCKED: Severity.HIGH,
    AuditAction.MFA_DISABLED: Severity.HIGH,
    AuditAction.PASSWORD_RESET_REQUESTED: Severity.HIGH,
    AuditAction.ALL_SESSIONS_REVOKED: Severity.MEDIUM,
    AuditAction.LOGIN_FAILED: Severity.MEDIUM,
    AuditAction.MFA_LOGIN_FAILED: Severity.MEDIUM,
    AuditAction.TOKEN_REFRESH_FAILED: Severity.MEDIUM,
    AuditAction.LOGIN: Severity.MEDIUM,
    AuditAction.LOGOUT: Severity.MEDIUM,
    AuditAction.MFA_ENABLED: Severity.MEDIUM,
    AuditAction.OAUTH_LOGIN: Severity.MEDIUM,
    AuditAction.OAUTH_ACCOUNT_LINKED: Severity.MEDIUM,
    AuditAction.OAUTH_ACCOUNT_UNLINKED: Severity.MEDIUM,
    AuditAction.ACCOUNT_DEACTIVATED: Severity.MEDIUM,
    AuditAction.PASSWORD_CHANGED: Severity.LOW,
    AuditAction.SECURITY_ALERT_ACKNOWLEDGED: Severity.LOW,
    AuditAction.API_KEY_CREATED: Severity.MEDIUM,
    AuditAction.API_KEY_REGENERATED: Severity.MEDIUM,
    AuditAction.API_KEY_DELETED: Severity.MEDIUM,
    AuditAction.API_KEY_RATE_LIMITED: Severity.MEDIUM,
}


def resolve_severity(action: AuditAction, status: AuditStatus) -> Severity:
    if action in _SEVERITY:
        return _SEVERITY[action]
    if status == AuditStatus.FAILURE:
        return Severity.MEDIUM
    return Severity.LOW


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are read as UTC; stored timestamps are always aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _is_failed_login(event: AuditEvent) -> bool:
    """A wrong-password attempt, including the one that tripped the lockout."""
    if event.action == AuditAction.LOGIN_FAILED:
        return True
    return (
        event.action == AuditAction.ACCOUNT_LOCKED
        and event.details.get("reason") == "invalid_password"
    )


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from; copied onto every audit record it produces."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class AuditPage:
    events: List[AuditEvent]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class SecurityMetrics:
    period: str
    start: datetime
    end: datetime
    total_events: int
    failed_logins: int
    successful_logins: int
    events_by_severity: Dict[str, int]
    mfa_events: Dict[str, int]
    top_failed_ips: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def login_success_rate(self) -> int:
        attempts = self.successful_logins + self.failed_logins
        if not self.successful_logins:
            return 0
        return round(self.successful_logins / attempts * 100)


class AuditPipeline:
    """Append-only security audit log plus its read-side aggregations.

    ``record`` is best-effort: a failed write goes to the fallback logger
    with the full payload and is never raised to the caller.
    """

    def __init__(self, store: AuditStore, *, fallback_logger=None) -> None:
        self.store = store
        self.logger = get_logger(__name__)
        self._fallback_logger = fallback_logger

    def _fallback(self):
        return self._fallback_logger or get_audit_fallback_logger()

    def record(self, event: AuditEvent) -> bool:
        try:
            self.store.append_audit_event(event)
        except Exception as exc:
            self._fallback().error(
                "audit_write_failed",
                error=str(exc),
                audit_id=event.id,
                audit_action=event.action.value,
                audit_resource=event.resource.value,
                audit_status=event.status.value,
                audit_severity=event.severity.value,
                account_id=event.account_id,
                resource_id=event.resource_id,
                details=redact_value(event.details),
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                timestamp=event.timestamp.isoformat(),
            )
            return False
        return True

    def log(
        self,
        action: AuditAction,
        resource: AuditResource,
        *,
        status: AuditStatus = AuditStatus.SUCCESS,
        account_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
        severity: Optional[Severity] = None,
        api_key_id: Optional[str] = None,
    ) -> AuditEvent:
        """Build an event with the resolved severity and record it."""
        ctx = context or RequestContext()
        event = AuditEvent.new(
            action,
            resource,
            status=status,
            severity=severity or resolve_severity(action, status),
            account_id=account_id,
            resource_id=resource_id,
            details=details,
            ip_address=ctx.ip_address or "unknown",
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
            api_key_id=api_key_id,
        )
        self.record(event)
        return event

    # -- read side ---------------------------------------------------------

    def query(
        self,
        filters: Optional[AuditFilters] = None,
        *,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        if page < 1:
            raise ValidationError("page must be >= 1", detail={"field": "page"})
        if limit < 1:
            raise ValidationError("limit must be >= 1", detail={"field": "limit"})
        limit = min(limit, MAX_PAGE_SIZE)
        filters = filters or AuditFilters()
        filters = replace(filters, start=_as_utc(filters.start), end=_as_utc(filters.end))
        if filters.start and filters.end and filters.start > filters.end:
            raise ValidationError("start must not be after end", detail={"field": "start"})
        events, total = self.store.query_audit_events(
            filters, offset=(page - 1) * limit, limit=limit
        )
        return AuditPage(events=events, total=total, page=page, limit=limit)

    def _window(self, start: datetime, account_id: Optional[str], **kwargs) -> List[AuditEvent]:
        events, _ = self.store.query_audit_events(
            AuditFilters(account_id=account_id, start=start, **kwargs)
        )
        return events

    def metrics(self, period: str = "7d", *, account_id: Optional[str] = None) -> SecurityMetrics:
        if period not in METRIC_PERIODS:
            raise ValidationError(
                f"period must be one of {', '.join(METRIC_PERIODS)}",
                detail={"field": "period"},
            )
        end = utcnow()
        start = end - METRIC_PERIODS[period]
        events = self._window(start, account_id)

        by_severity = {s.value: 0 for s in Severity}
        mfa_events: Counter = Counter()
        failed_ips: Counter = Counter()
        failed = succeeded = 0
        for event in events:
            by_severity[event.severity.value] += 1
            if event.resource == AuditResource.MFA:
                mfa_events[event.action.value] += 1
            if _is_failed_login(event):
                failed += 1
                failed_ips[event.ip_address or "unknown"] += 1
            elif event.action == AuditAction.LOGIN and event.status == AuditStatus.SUCCESS:
                succeeded += 1

        return SecurityMetrics(
            period=period,
            start=start,
            end=end,
            total_events=len(events),
            failed_logins=failed,
            successful_logins=succeeded,
            events_by_severity=by_severity,
            mfa_events=dict(mfa_events),
            top_failed_ips=[
                {"ip": ip, "attempts": count}
                for ip, count in failed_ips.most_common(TOP_FAILED_IPS)
            ],
        )

    def alerts(self, limit: int = 20, *, account_id: Optional[str] = None) -> List[AuditEvent]:
        """High and critical events from the last seven days, newest first."""
        events, _ = self.store.query_audit_events(
            AuditFilters(
                account_id=account_id,
                severities=list(ALERT_SEVERITIES),
                start=utcnow() - ALERT_WINDOW,
            ),
            limit=max(1, min(limit, MAX_PAGE_SIZE)),
        )
        return events

    def acknowledge(
        self,
        event_id: str,
        actor_id: str,
        *,
        account_scope: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> AuditEvent:
        """Mark an alert reviewed. The acknowledgement is itself audited.

        ``account_scope`` restricts non-admin actors to their own alerts.
        """
        target = self.store.get_audit_event(event_id)
        if not target:
            raise NotFoundError("Alert not found", detail={"event_id": event_id})
        if account_scope is not None and target.account_id != account_scope:
            raise ForbiddenError("Permission denied")
        acknowledged = self.store.acknowledge_audit_event(event_id, actor_id, utcnow())
        if not acknowledged:
            raise NotFoundError("Alert not found", detail={"event_id": event_id})
        self.log(
            AuditAction.SECURITY_ALERT_ACKNOWLEDGED,
            AuditResource.SECURITY,
            account_id=actor_id,
            resource_id=event_id,
            details={
                "alert_id": event_id,
                "original_action": target.action.value,
                "original_severity": target.severity.value,
            },
            context=context,
        )
        self.logger.info("security_alert_acknowledged", event_id=event_id, actor_id=actor_id)
        return acknowledged

    def dashboard(self, account_id: Optional[str] = None) -> Dict[str, Any]:
        now = utcnow()
        last_day = now - timedelta(hours=24)
        last_week = now - timedelta(days=7)
        last_month = now - timedelta(days=30)

        recent, _ = self.store.query_audit_events(
            AuditFilters(account_id=account_id, start=last_week), limit=50
        )
        _, total = self.store.query_audit_events(AuditFilters(account_id=account_id), limit=0)
        _, critical = self.store.query_audit_events(
            AuditFilters(account_id=account_id, severity=Severity.CRITICAL, start=last_month),
            limit=0,
        )
        week = self._window(last_week, account_id)

        daily: Counter = Counter()
        actions: Counter = Counter()
        ips: Counter = Counter()
        failed_logins = recent_activity = 0
        for event in week:
            daily[event.timestamp.strftime("%Y-%m-%d")] += 1
            actions[event.action.value] += 1
            ips[event.ip_address or "unknown"] += 1
            if _is_failed_login(event):
                failed_logins += 1
            if event.timestamp >= last_day:
                recent_activity += 1

        return {
            "recent_events": recent,
            "statistics": {
                "total_events": total,
                "critical_events": critical,
                "failed_logins": failed_logins,
                "recent_activity": recent_activity,
            },
            "trends": {
                "daily_events": [
                    {"date": day, "count": count} for day, count in sorted(daily.items())
                ],
                "top_actions": [
                    {"action": action, "count": count}
                    for action, count in actions.most_common(10)
                ],
                "ip_addresses": [
                    {"ip": ip, "count": count} for ip, count in ips.most_common(10)
                ],
            },
        }

    def purge_expired(self, retention_days: int) -> int:
        return self.store.purge_expired_audit_events(utcnow() - timedelta(days=retention_days))
