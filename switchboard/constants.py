# Markers that identify a repository/workspace root when walking upward
ROOT_MARKERS = (".git", "pyproject.toml")
ROOT_MARKER_GLOBS = ("*.sln",)

CONFIG_FILE_NAME = "switchboard.yaml"
CONFIG_PATH_ENV = "SWITCHBOARD_CONFIG"
ENVIRONMENT_ENV = "SWITCHBOARD_ENVIRONMENT"

DEFAULT_CONNECTION_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0

MAX_SUGGESTIONS = 3
