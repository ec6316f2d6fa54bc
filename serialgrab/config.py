import os
import re
from typing import Optional

# ========= Static config =========
BAUD_RATE = 115200
READ_TIMEOUT = 0.1
BUFFER_SIZE = 4096

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_STABLE_POLLS = 2
DEFAULT_MAX_SIZE = 1_000_000
TERMINATE_GRACE = 2.0
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30

DEFAULT_TERMINAL_COMMAND = "picocom -q -b 115200 -f n -y n -d 8 -p 1 {port}"
DEFAULT_REMOTE_TMP_ROOT = "/tmp"
PROBE_DIR_NAME = ".serialgrab_probe"
READ_ONLY_INDICATOR = "Read-only"

# ========= Framing literals =========
# The remote shell assembles each literal from pieces so the echoed
# command line never carries the full token.
DELIMITER_HALF = "@" * 5
DELIMITER = DELIMITER_HALF * 2
DELIMITER_SYMBOL = "@"
SIZE_SENTINEL_WORD = "TOO_LARGE"
UNREADABLE_SENTINEL_WORD = "UNREADABLE"
SIZE_SENTINEL = f"%%{SIZE_SENTINEL_WORD}%%"
UNREADABLE_SENTINEL = f"%%{UNREADABLE_SENTINEL_WORD}%%"
SENTINELS = (SIZE_SENTINEL, UNREADABLE_SENTINEL)

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
WHITESPACE = re.compile(r"\s+")


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower().strip() in ("true", "1", "yes", "on")


# ========= Runtime Configuration =========
class RunConfig:
    def __init__(self):
        self.PORT: Optional[str] = None
        self.BACKEND: str = "serial"
        self.TERMINAL_COMMAND: str = DEFAULT_TERMINAL_COMMAND

        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True

        self.MAX_SIZE: int = DEFAULT_MAX_SIZE
        self.LISTING_MAX_SIZE: Optional[int] = None
        self.OUTPUT_ROOT: str = os.path.join(os.getcwd(), "serialgrab-out")
        self.REMOTE_TMP_ROOT: str = DEFAULT_REMOTE_TMP_ROOT
        self.MOUNT_POINT: Optional[str] = None
        self.REMOUNT_COMMAND: Optional[str] = None
        self.EXCLUDE_PATTERN: Optional[str] = None

        self.POLL_INTERVAL: float = DEFAULT_POLL_INTERVAL
        self.STABLE_POLLS: int = DEFAULT_STABLE_POLLS

        self.RUN_LOG_PATH: Optional[str] = None
        self.TRANSCRIPT_PATH: Optional[str] = None

        self.PROBE_MOUNT: bool = False
        self.EDIT_LIST: bool = False
        self.ASSUME_YES: bool = False

    def load_from_env(self):
        self.PORT = os.environ.get("SERIALGRAB_PORT", self.PORT)
        self.BACKEND = os.environ.get("SERIALGRAB_BACKEND", self.BACKEND)
        self.TERMINAL_COMMAND = os.environ.get("SERIALGRAB_TERMINAL_COMMAND", self.TERMINAL_COMMAND)

        self.SSH_HOST = os.environ.get("SERIALGRAB_SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SERIALGRAB_SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SERIALGRAB_SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SERIALGRAB_SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SERIALGRAB_SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_VERIFY_HOST_KEY = _env_bool("SERIALGRAB_SSH_VERIFY_HOST_KEY", self.SSH_VERIFY_HOST_KEY)

        self.MAX_SIZE = int(os.environ.get("SERIALGRAB_MAX_SIZE", self.MAX_SIZE))
        listing_max = os.environ.get("SERIALGRAB_LISTING_MAX_SIZE")
        if listing_max:
            self.LISTING_MAX_SIZE = int(listing_max)
        self.OUTPUT_ROOT = os.environ.get("SERIALGRAB_OUTPUT_ROOT", self.OUTPUT_ROOT)
        self.REMOTE_TMP_ROOT = os.environ.get("SERIALGRAB_REMOTE_TMP_ROOT", self.REMOTE_TMP_ROOT)
        self.MOUNT_POINT = os.environ.get("SERIALGRAB_MOUNT_POINT", self.MOUNT_POINT)
        self.REMOUNT_COMMAND = os.environ.get("SERIALGRAB_REMOUNT_COMMAND", self.REMOUNT_COMMAND)
        self.EXCLUDE_PATTERN = os.environ.get("SERIALGRAB_EXCLUDE", self.EXCLUDE_PATTERN)

        self.POLL_INTERVAL = float(os.environ.get("SERIALGRAB_POLL_INTERVAL", self.POLL_INTERVAL))
        self.STABLE_POLLS = int(os.environ.get("SERIALGRAB_STABLE_POLLS", self.STABLE_POLLS))

        self.RUN_LOG_PATH = os.environ.get("SERIALGRAB_RUN_LOG", self.RUN_LOG_PATH)
        self.TRANSCRIPT_PATH = os.environ.get("SERIALGRAB_TRANSCRIPT", self.TRANSCRIPT_PATH)

        self.PROBE_MOUNT = _env_bool("SERIALGRAB_PROBE_MOUNT", self.PROBE_MOUNT)
        self.ASSUME_YES = _env_bool("SERIALGRAB_ASSUME_YES", self.ASSUME_YES)

    def listing_max_size(self) -> int:
        if self.LISTING_MAX_SIZE is not None:
            return self.LISTING_MAX_SIZE
        return self.MAX_SIZE

    def mount_point(self) -> str:
        return self.MOUNT_POINT or self.REMOTE_TMP_ROOT

# Global instance
config = RunConfig()
