"""
Approver metrics cache.

Best-effort performance data for routing. Owned by a RoutingEngine instance
and safe to share between threads; entries may be stale.
"""

import threading
from typing import Callable, Dict, Iterable, List, Optional, Protocol

from ..config import Settings, get_settings
from ..logging_config import routing_logger
from ..schemas.routing import ApproverMetrics, Availability, TeamMember

EXPERTISE_BY_ROLE: Dict[str, List[str]] = {
    "admin": ["campaign", "journey", "asset", "brand", "general"],
    "approver": ["campaign", "journey", "general"],
    "reviewer": ["asset", "brand", "general"],
    "publisher": ["campaign", "journey"],
    "creator": ["asset", "brand"],
    "viewer": [],
}


class MetricsSource(Protocol):
    """Real workload and response-time feed"""

    def fetch(self, member: TeamMember) -> Optional[ApproverMetrics]: ...


def default_metrics(member: TeamMember, settings: Optional[Settings] = None) -> ApproverMetrics:
    """Synthesized metrics for a member nobody has reported on"""
    settings = settings or get_settings()
    return ApproverMetrics(
        user_id=member.id,
        average_response_time=settings.default_response_time_hours,
        approval_rate=settings.default_approval_rate,
        current_workload=0,
        expertise_areas=list(EXPERTISE_BY_ROLE.get(member.role, ["general"])),
        availability=Availability.AVAILABLE,
    )


class ApproverMetricsCache:
    """Thread-safe map of user id -> ApproverMetrics. Reads return copies."""

    def __init__(self):
        self._entries: Dict[str, ApproverMetrics] = {}
        self._lock = threading.RLock()

    def get(self, user_id: str) -> Optional[ApproverMetrics]:
        with self._lock:
            metrics = self._entries.get(user_id)
            return metrics.model_copy(deep=True) if metrics else None

    def set(self, metrics: ApproverMetrics) -> None:
        with self._lock:
            self._entries[metrics.user_id] = metrics.model_copy(deep=True)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._entries

    def values(self) -> List[ApproverMetrics]:
        with self._lock:
            return [m.model_copy(deep=True) for m in self._entries.values()]

    def total_workload(self, user_ids: Optional[Iterable[str]] = None) -> int:
        with self._lock:
            if user_ids is None:
                return sum(m.current_workload for m in self._entries.values())
            return sum(
                self._entries[uid].current_workload
                for uid in user_ids
                if uid in self._entries
            )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def ensure(
        self,
        members: Iterable[TeamMember],
        loader: Callable[[TeamMember], Optional[ApproverMetrics]],
        fallback: Callable[[TeamMember], ApproverMetrics],
    ) -> int:
        """
        Seed metrics for members not yet cached.

        A loader failure for one member is logged and replaced by the fallback;
        it never aborts the refresh. Returns the number of entries added.
        """
        added = 0
        for member in members:
            if member.id in self:
                continue

            try:
                metrics = loader(member)
            except Exception as e:
                routing_logger.warning(
                    "Approver metrics refresh failed, using defaults",
                    user_id=member.id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                metrics = None

            if metrics is None:
                metrics = fallback(member)

            with self._lock:
                # Another thread may have seeded the entry meanwhile; keep the first one
                if member.id not in self._entries:
                    self._entries[member.id] = metrics
                    added += 1
        return added
