"""
Detection of repeated failed access attempts.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from .models import AccessLogFilters, SuspiciousActivityReport, utcnow


class SuspiciousActivityDetector:
    """Flags users and IPs with too many failed attempts in a sliding window.

    Nothing is kept between calls; every call re-reads the failed entries of
    the window from the audit store.
    """

    def __init__(self, store, clock: Callable[[], datetime] = utcnow):
        self.logger = get_logger("access.detector")
        self.store = store
        self.clock = clock

    async def detect(
        self,
        tenant_id: str,
        window_minutes: int = 30,
        threshold: int = 5,
        now: Optional[datetime] = None,
    ) -> SuspiciousActivityReport:
        if window_minutes < 1:
            raise ValidationError("window_minutes must be positive", {"window_minutes": window_minutes})
        if threshold < 1:
            raise ValidationError("threshold must be positive", {"threshold": threshold})

        now = now or self.clock()
        filters = AccessLogFilters(
            success=False,
            start_time=now - timedelta(minutes=window_minutes),
            end_time=now,
        )
        failed = await self.store.fetch(tenant_id, filters, 0, None)

        by_user = Counter(entry.user_id for entry in failed if entry.user_id)
        by_ip = Counter(entry.ip_address for entry in failed if entry.ip_address)

        suspicious_users = [
            {"user_id": user_id, "failed_attempt_count": count}
            for user_id, count in by_user.most_common()
            if count >= threshold
        ]
        suspicious_ips = [
            {"ip": ip, "count": count}
            for ip, count in by_ip.most_common()
            if count >= threshold
        ]

        if suspicious_users or suspicious_ips:
            self.logger.warning(
                "Suspicious access activity detected",
                tenant_id=tenant_id,
                users=len(suspicious_users),
                ips=len(suspicious_ips),
                window_minutes=window_minutes,
                threshold=threshold,
            )

        return SuspiciousActivityReport(
            suspicious_users=suspicious_users,
            suspicious_ips=suspicious_ips,
            window_minutes=window_minutes,
            threshold=threshold,
        )
