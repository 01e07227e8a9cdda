"""Project-wide constants for gitgraph."""

VERSION = "0.1.0"

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
RECORD_FIELD_COUNT = 10

# %H %h %P %an %ae %at %ct %D %s %b, unit-separated and record-terminated.
LOG_PRETTY_FORMAT = (
    "--pretty=format:%H%x1f%h%x1f%P%x1f%an%x1f%ae%x1f%at%x1f%ct%x1f%D%x1f%s%x1f%b%x1e"
)
BRANCH_REF_FORMAT = (
    "--format=%(refname)%1f%(objectname)%1f%(upstream:short)%1f%(upstream:remotename)"
)
STASH_LIST_FORMAT = "--format=%H%x1f%gd"

DEFAULT_GIT_BINARY = "git"
DEFAULT_REMOTE = "origin"
DEFAULT_GRAPH_LIMIT = 15_000
DEFAULT_SEARCH_WORKERS = 8

STATE_SCHEMA_VERSION = 2
STATE_FILE_NAME = "state.json"
STATE_DIR_NAME = "gitgraph"

DEFAULT_ACTIONS_RESOURCE = "default_actions.yaml"

CONFIG_PLACEHOLDER_PREFIX = "GIT_CONFIG:"
EXEC_PLACEHOLDER_PREFIX = "GIT_EXEC:"

# Context keys each action scope requires before expansion.
SCOPE_REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "global": (),
    "commit": ("COMMIT_HASH",),
    "commits": ("COMMIT_HASHES",),
    "stash": ("STASH_NAME",),
    "tag": ("TAG_NAME",),
    "branch": ("BRANCH_NAME",),
    "branch-drop": ("BRANCH_NAME", "confirmed"),
}
