from tracker.analytics.stats import (
    compute_direction_summary,
    compute_identifier_stats,
    compute_return,
)
from tracker.analytics.view import SubjectView

__all__ = [
    "SubjectView",
    "compute_direction_summary",
    "compute_identifier_stats",
    "compute_return",
]
