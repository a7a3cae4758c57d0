"""SuaTalk Analysis - Recording analysis lifecycle.

    pending -> processing -> completed
                   |  ^
                   v  |
                  failed -> cancelled   (maintenance only, retry_count >= 3)

completed and cancelled are terminal.
"""

from analysis.models import AnalysisStatus

ALLOWED_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.PENDING: frozenset({AnalysisStatus.PROCESSING}),
    AnalysisStatus.PROCESSING: frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.FAILED}),
    AnalysisStatus.FAILED: frozenset({AnalysisStatus.PROCESSING, AnalysisStatus.CANCELLED}),
    AnalysisStatus.COMPLETED: frozenset(),
    AnalysisStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Statuses where a dispatched analyze_audio job must do nothing
SETTLED_OR_IN_FLIGHT = frozenset({AnalysisStatus.PROCESSING}) | TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    """Return True if current -> target is in the transition table."""
    try:
        return AnalysisStatus(target) in ALLOWED_TRANSITIONS[AnalysisStatus(current)]
    except ValueError:
        return False


def sources_for(target: AnalysisStatus) -> frozenset[AnalysisStatus]:
    """Statuses from which target may be entered."""
    return frozenset(
        status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets
    )


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES
