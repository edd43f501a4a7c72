STATE_DIR_NAME = ".feature_runner"
CONFIG_FILE = "config.yaml"
FEATURES_FILE = "features.yaml"
FEATURES_LOCK_FILE = "features.lock"
EVENTS_FILE = "events.jsonl"
WORKTREES_DIR = "worktrees"

DEFAULT_CONCURRENCY = 2
DEFAULT_MAX_TURNS = 20
DEFAULT_REQUEST_TIMEOUT_SECONDS = 300.0
DEFAULT_PROVIDER_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_MAX_SECONDS = 30.0
DEFAULT_COMMAND_TIMEOUT_SECONDS = 600.0
DEFAULT_EVENT_BUFFER_SIZE = 256
DEFAULT_BRANCH_PREFIX = "feature/"
DEFAULT_LOG_LEVEL = "INFO"

# Output caps for tool results fed back into the conversation.
TOOL_OUTPUT_LIMIT = 20_000
VERIFY_OUTPUT_TAIL = 2_000
SEARCH_MAX_MATCHES = 200

INTERRUPTED_ERROR = "Interrupted: orchestrator restart"
