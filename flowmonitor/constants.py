TERMINAL_STATES = frozenset({"SUCCESS", "FAILED", "KILLED"})
ACTIVE_STATES = frozenset({"RUNNING", "CREATED", "RESTARTED", "PENDING"})
DEFAULT_STATE = "RUNNING"
STREAM_ENDED_STATE = "NONE"

# Progress weights per task state
COMPLETED_TASK_WEIGHT = 1.0
RUNNING_TASK_WEIGHT = 0.5
QUEUED_TASK_WEIGHT = 0.1
RUNNING_PROGRESS_CAP = 99.0
PARSE_FAILURE_NUDGE = 2.0

# Consecutive snapshots without any signal before a running view may drop to idle
QUIET_SNAPSHOT_LIMIT = 2

WEBHOOK_TRIGGER_TYPE = "io.kestra.plugin.core.trigger.Webhook"

STATE_LABELS = {
    "CREATED": "Created",
    "RUNNING": "Running",
    "SUCCESS": "Success",
    "FAILED": "Failed",
    "KILLED": "Killed",
    "PAUSED": "Paused",
    "RESTARTED": "Restarted",
    "PENDING": "Pending",
}
