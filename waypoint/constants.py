"""Shared defaults for the waypoint engine."""

DEFAULT_EXECUTION_MODE = "GUIDED"
DEFAULT_MAX_RECOVERY_ATTEMPTS = 3
DEFAULT_MAX_CONTEXT_SIZE = 10_000
DEFAULT_GIT_TIMEOUT_SECONDS = 10.0
DEFAULT_IO_WORKERS = 4
DEFAULT_MAX_QUERY_RESULTS = 1000
DEFAULT_MAX_QUERY_PARAMETERS = 10
DEFAULT_RECOMMENDATION_LIMIT = 3
DEFAULT_CAS_RETRIES = 3
DEFAULT_WARNING_BUFFER = 100

ALLOWED_EXPRESSION_PATTERN = r"^[\w\s\"'.\-+*/()=!<>&|]+$"
MAX_EXPRESSION_CLAUSES = 8

VOLATILE_SLICES = ("status", "comments", "delegations", "progress")
VOLATILE_SLICE_PREFIXES = ("batch:",)

# Forward edges that the recommendation heuristic favours.
CANONICAL_TRANSITIONS = (
    "boomerang_to_researcher",
    "research_to_architecture",
    "architecture_to_implementation",
    "implementation_to_review",
    "review_to_completion",
)

GIT_CURRENT_BRANCH = ["rev-parse", "--abbrev-ref", "HEAD"]
GIT_STATUS = ["status", "--porcelain"]
GIT_UNTRACKED_FILES = ["ls-files", "--others", "--exclude-standard"]
