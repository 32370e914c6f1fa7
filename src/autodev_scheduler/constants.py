STATE_DIR_NAME = ".autodev"
CONFIG_FILE = "config.yaml"
CHECKPOINTS_DIR = "checkpoints"
CHECKPOINT_POINTER_FILE = "CURRENT.json"
EVENTS_FILE = "events.jsonl"
DECISIONS_FILE = "decisions.yaml"
HANDOFF_FILE = "handoff.yaml"
CANCEL_FILE = "cancel"
MEMORY_FILE = "memory.yaml"
LOCK_FILE = ".lock"
WORKTREES_DIR = "worktrees"
WINDOWS_LOCK_BYTES = 4096

CHECKPOINT_FORMAT_VERSION = 1

DEFAULT_MAX_PARALLELISM = 3
DEFAULT_SEQUENTIAL_THRESHOLD = 1
DEFAULT_MAX_RETRIES = 2
DEFAULT_TASK_TIMEOUT_SECONDS = 600.0
DEFAULT_CONTEXT_ACQUIRE_RETRIES = 2
DEFAULT_RETRY_INITIAL_DELAY = 0.5
DEFAULT_RETRY_MAX_DELAY = 10.0
DEFAULT_CHECKPOINT_INTERVAL_SECONDS = 300.0
DEFAULT_CHECKPOINT_WRITE_RETRIES = 2
DEFAULT_CHECKPOINTS_TO_KEEP = 3
DEFAULT_SESSION_BUDGET = 200_000
DEFAULT_BUDGET_WARNING_THRESHOLD = 0.80
DEFAULT_BUDGET_CHECKPOINT_THRESHOLD = 0.95
DEFAULT_BRANCH_PREFIX = "auto/"

DISPOSAL_DELETE_ON_SUCCESS = "delete-on-success"
DISPOSAL_KEEP_FOR_AUDIT = "keep-for-audit"
DISPOSAL_POLICIES = {DISPOSAL_DELETE_ON_SUCCESS, DISPOSAL_KEEP_FOR_AUDIT}

# Evidence entries are condensed before they are stored in checkpoints.
EVIDENCE_SUMMARY_MAX_CHARS = 2000

FAILURE_VERIFICATION = "verification_failed"
FAILURE_TIMEOUT = "timeout"
FAILURE_EXECUTION = "execution_error"
FAILURE_CONTEXT = "context_acquisition"
FAILURE_UPSTREAM = "upstream_failed"
FAILURE_CONFLICT = "conflict_escalated"
FAILURE_MERGE = "merge_failed"
FAILURE_STALLED = "stalled_graph"
FAILURE_CANCELLED = "cancelled"

# Kinds that a resumed run can pick up again without a human decision.
RESUMABLE_FAILURES = {
    FAILURE_TIMEOUT,
    FAILURE_CONTEXT,
    FAILURE_UPSTREAM,
    FAILURE_CANCELLED,
    FAILURE_MERGE,
}

RESOLUTION_HINTS = {
    FAILURE_VERIFICATION: [
        "Inspect the task evidence for the failing verification output.",
        "Fix the task or its verification command, then resume the run.",
    ],
    FAILURE_TIMEOUT: [
        "Raise task_timeout_seconds or split the task into smaller tasks.",
    ],
    FAILURE_CONTEXT: [
        "Check that the project is a healthy git repository (git worktree list).",
        "Remove stale worktrees under .autodev/worktrees and resume.",
    ],
    FAILURE_CONFLICT: [
        "Review the escalated conflict and record a choice with `autodev-scheduler resolve`.",
        "Resume the run to apply the recorded choice.",
    ],
    FAILURE_MERGE: [
        "Merge the preserved branch manually, then resume the run.",
    ],
    FAILURE_STALLED: [
        "Check the unmet dependencies listed in the report.",
    ],
}
