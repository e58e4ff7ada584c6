"""Job lifecycle transition table.

::

    pending ──pick up──> generating ──success──> generated ──approve──> approved
                              │                      │
                              └──failure──> error    │
                                              │      │
                         pending <──regenerate┴──────┘

``approved`` is terminal.  ``error`` is terminal until the operator triggers
a regenerate; nothing is retried automatically.
"""

from __future__ import annotations

from enum import Enum

from mintworks.core.errors import InvalidTransitionError
from mintworks.core.models import Job, JobStatus


class JobEvent(str, Enum):
    PICK_UP = "pick up"
    SUCCEED = "complete"
    FAIL = "fail"
    APPROVE = "approve"
    REGENERATE = "regenerate"


TRANSITIONS: dict[tuple[JobStatus, JobEvent], JobStatus] = {
    (JobStatus.PENDING, JobEvent.PICK_UP): JobStatus.GENERATING,
    (JobStatus.GENERATING, JobEvent.SUCCEED): JobStatus.GENERATED,
    (JobStatus.GENERATING, JobEvent.FAIL): JobStatus.ERROR,
    (JobStatus.GENERATED, JobEvent.APPROVE): JobStatus.APPROVED,
    (JobStatus.GENERATED, JobEvent.REGENERATE): JobStatus.PENDING,
    (JobStatus.ERROR, JobEvent.REGENERATE): JobStatus.PENDING,
}


def next_status(current: JobStatus, event: JobEvent) -> JobStatus | None:
    """Return the status *event* leads to from *current*, or ``None``."""
    return TRANSITIONS.get((current, event))


def require_transition(job: Job, event: JobEvent) -> JobStatus:
    """Return the target status for *event*, or raise if it is not allowed.

    Raises:
        InvalidTransitionError: If *event* is not valid from ``job.status``.
    """
    target = next_status(job.status, event)
    if target is None:
        raise InvalidTransitionError(job.id, job.status.value, event.value)
    return target
