"""
Status transition tables for marketplace jobs, job applications and
auto-topup policies. Any transition not listed here is rejected.
"""
from enum import Enum

from app.db.models.auto_topup_policy import AutoTopupStatus
from app.db.models.job_application import ApplicationStatus
from app.db.models.marketplace_job import JobStatus


class EntityType(str, Enum):
    JOB = "job"
    APPLICATION = "application"
    AUTO_TOPUP = "auto_topup"


JOB_TRANSITIONS = {
    JobStatus.AVAILABLE: [JobStatus.ASSIGNED, JobStatus.CANCELLED, JobStatus.EXPIRED],
    JobStatus.ASSIGNED: [JobStatus.COMPLETED, JobStatus.CANCELLED],
    JobStatus.COMPLETED: [],
    JobStatus.CANCELLED: [],
    JobStatus.EXPIRED: [],
}

# assigned is only reached through application selection
MANUAL_JOB_TARGETS = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

APPLICATION_TRANSITIONS = {
    ApplicationStatus.SUBMITTED: [
        ApplicationStatus.UNDER_REVIEW,
        ApplicationStatus.SELECTED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ],
    ApplicationStatus.UNDER_REVIEW: [
        ApplicationStatus.SELECTED,
        ApplicationStatus.REJECTED,
        ApplicationStatus.WITHDRAWN,
    ],
    ApplicationStatus.SELECTED: [],
    ApplicationStatus.REJECTED: [],
    ApplicationStatus.WITHDRAWN: [],
}

AUTO_TOPUP_TRANSITIONS = {
    AutoTopupStatus.DISABLED: [AutoTopupStatus.ENABLED],
    AutoTopupStatus.ENABLED: [AutoTopupStatus.DISABLED, AutoTopupStatus.PROCESSING],
    AutoTopupStatus.PROCESSING: [AutoTopupStatus.ENABLED, AutoTopupStatus.SUSPENDED],
    # leaving suspended requires a payment method update
    AutoTopupStatus.SUSPENDED: [AutoTopupStatus.ENABLED, AutoTopupStatus.DISABLED],
}

TRANSITION_TABLES = {
    EntityType.JOB: (JobStatus, JOB_TRANSITIONS),
    EntityType.APPLICATION: (ApplicationStatus, APPLICATION_TRANSITIONS),
    EntityType.AUTO_TOPUP: (AutoTopupStatus, AUTO_TOPUP_TRANSITIONS),
}
