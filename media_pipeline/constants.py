"""Shared constants for stages, transaction statuses, and history details.

These values centralize naming so the stage workers, the ledger, the
dispatcher and the operational scripts stay consistent with each other and
with what is stored in the database.

Transaction statuses (transactions.status):
- ``created``: Submission accepted and recorded.
- ``processing``: A stage worker picked the submission up.
- ``response_generated``: Analysis produced the reply text.
- ``delivered``: Reply (or terminal error message) reached the user. Terminal.
- ``failure_temporary``: A failure was recorded; more attempts remain.
- ``failure_permanent``: The failure threshold was reached. Terminal.
- ``recovery_in_progress``: Claimed for redelivery by one recoverer; delivered
  from here directly.

Stages (queue names):
- ``entry``: Legacy enqueue contract; forwards to ``upload`` untouched.
- ``upload``: Pushes local media to the inference backend's file storage.
- ``processing_check``: Polls remote file state, rescheduling with backoff.
- ``analysis``: Runs inference and hands the reply to the dispatcher.
"""

STATUS_CREATED = "created"
STATUS_PROCESSING = "processing"
STATUS_RESPONSE_GENERATED = "response_generated"
STATUS_DELIVERED = "delivered"
STATUS_FAILURE_TEMPORARY = "failure_temporary"
STATUS_FAILURE_PERMANENT = "failure_permanent"
STATUS_RECOVERY_IN_PROGRESS = "recovery_in_progress"

ALL_STATUSES = (
    STATUS_CREATED,
    STATUS_PROCESSING,
    STATUS_RESPONSE_GENERATED,
    STATUS_DELIVERED,
    STATUS_FAILURE_TEMPORARY,
    STATUS_FAILURE_PERMANENT,
    STATUS_RECOVERY_IN_PROGRESS,
)

TERMINAL_STATUSES = frozenset({STATUS_DELIVERED, STATUS_FAILURE_PERMANENT})

# Statuses a resumable transaction may be in
INCOMPLETE_STATUSES = (STATUS_PROCESSING, STATUS_RESPONSE_GENERATED, STATUS_FAILURE_TEMPORARY)

# Statuses a redelivery claim may start from; an idle claim left by a crash is taken over
RECOVERABLE_STATUSES = INCOMPLETE_STATUSES + (STATUS_RECOVERY_IN_PROGRESS,)

# Allowed status transitions; anything else is rejected by the ledger
TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_CREATED: frozenset({
        STATUS_PROCESSING,
        STATUS_FAILURE_TEMPORARY,
        STATUS_FAILURE_PERMANENT,
        STATUS_RECOVERY_IN_PROGRESS,
    }),
    STATUS_PROCESSING: frozenset({
        STATUS_RESPONSE_GENERATED,
        STATUS_DELIVERED,
        STATUS_FAILURE_TEMPORARY,
        STATUS_FAILURE_PERMANENT,
        STATUS_RECOVERY_IN_PROGRESS,
    }),
    STATUS_RESPONSE_GENERATED: frozenset({
        STATUS_DELIVERED,
        STATUS_FAILURE_TEMPORARY,
        STATUS_FAILURE_PERMANENT,
        STATUS_RECOVERY_IN_PROGRESS,
    }),
    STATUS_FAILURE_TEMPORARY: frozenset({
        STATUS_DELIVERED,
        STATUS_FAILURE_TEMPORARY,
        STATUS_FAILURE_PERMANENT,
        STATUS_RECOVERY_IN_PROGRESS,
    }),
    STATUS_RECOVERY_IN_PROGRESS: frozenset({
        STATUS_PROCESSING,
        STATUS_RECOVERY_IN_PROGRESS,
        STATUS_DELIVERED,
        STATUS_FAILURE_TEMPORARY,
        STATUS_FAILURE_PERMANENT,
    }),
    STATUS_DELIVERED: frozenset(),
    STATUS_FAILURE_PERMANENT: frozenset(),
}

# History details written alongside status changes
DETAIL_CREATED = "transaction created"
DETAIL_RECOVERY_DATA = "recovery data attached"
DETAIL_RESPONSE = "response generated"
DETAIL_DELIVERED = "delivered"
DETAIL_RECOVERY = "recovery started"

# Submission kinds
KIND_TEXT = "text"
KIND_IMAGE = "image"
KIND_VIDEO = "video"
KIND_AUDIO = "audio"
MEDIA_KINDS = frozenset({KIND_IMAGE, KIND_VIDEO})

# Description modes
MODE_SHORT = "short"
MODE_LONG = "long"

# Stages
STAGE_ENTRY = "entry"
STAGE_UPLOAD = "upload"
STAGE_PROCESSING_CHECK = "processing_check"
STAGE_ANALYSIS = "analysis"
STAGES = (STAGE_ENTRY, STAGE_UPLOAD, STAGE_PROCESSING_CHECK, STAGE_ANALYSIS)

# Remote file states reported by the inference backend
FILE_PROCESSING = "PROCESSING"
FILE_ACTIVE = "ACTIVE"
FILE_SUCCEEDED = "SUCCEEDED"
FILE_FAILED = "FAILED"

# Pending notification delivery statuses
DELIVERY_PENDING = "pending"
DELIVERY_ABANDONED = "abandoned"
