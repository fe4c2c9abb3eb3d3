"""Constants used across prwatch.

Internal values that are not part of the editable settings schema.
"""

# Persisted state files (relative to the work dir)
LEDGER_FILENAME = ".pr-state.json"
SETTINGS_FILENAME = ".pr-settings.json"
LOCK_FILENAME = "prwatch.pid"

# Work dir layout
REPOS_DIRNAME = "repos"
WORKTREES_DIRNAME = "worktrees"
REVIEWS_DIRNAME = "reviews"

# Review store layout
ITEM_DIR_PREFIX = "pr-"
VERSION_PREFIX = "v-"
VERSION_SUFFIX = ".md"
META_FILENAME = "meta.json"
LEGACY_REVIEW_PREFIX = "pr-review-"
VERSION_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"

# Hosting queries
REPO_LIST_LIMIT = 50  # Per exact repository
SEARCH_LIMIT = 100  # "involving me" search
GH_TIMEOUT_S = 60.0
GH_DIFF_TIMEOUT_S = 120.0

# Review generator
DEFAULT_REVIEW_COMMAND = "claude --print"
DEFAULT_REVIEW_TIMEOUT_S = 1800.0
ERROR_SNIPPET_CHARS = 500
SHORT_SHA_CHARS = 7

# Control surface
DEFAULT_API_HOST = "0.0.0.0"
DEFAULT_API_PORT = 3456

DEFAULT_CLONE_URL = "https://github.com/{repo}.git"
DEFAULT_LOG_LEVEL = "INFO"
