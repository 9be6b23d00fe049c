import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# -----------------------------
# Constants
# -----------------------------
RECONNECT_DELAY = 60              # one-shot reconnect after an unexpected drop
FETCH_LOCK_TIMEOUT = 60           # fetch locks auto-expire after a minute
HELLO_TIMEOUT = 30                # seconds to wait for the RTM hello frame
WS_PING_INTERVAL = 20
WS_PING_TIMEOUT = 10
LIST_PAGE_SIZE = 200              # users.list / conversations.list page size

# messages and file titles starting with this were sent by the bridge
SELF_SENT_MARKER = "\ufff0"
MATRIX_TO_LINK = "https://matrix.to/#/"
ATTACHMENT_BULLET = "●"
LIST_BULLET_POINTS = ("●", "○", "■", "‣")
LIST_INDENT = "    "

# Slack's named attachment colors
ATTACHMENT_COLORS = {
    "good": "#2eb886",
    "warning": "#daa038",
    "danger": "#a30200",
}

DEFAULT_DB_PATH = "slackpuppet.db"

REQUIRED_ENV_VARS = [
    "SLACK_TOKEN",
]


@dataclass
class BridgeConfig:
    token: str
    puppet_id: int = 1
    db_path: str = DEFAULT_DB_PATH
    reconnect_delay: float = RECONNECT_DELAY
    file_logging: bool = False
    matrix_domain: str = "localhost"


def load_config(env_path: Optional[str] = ".env") -> BridgeConfig:
    """Load bridge settings from the environment, after reading `env_path`."""
    if env_path:
        load_dotenv(env_path)
    for v in REQUIRED_ENV_VARS:
        if not os.getenv(v):
            raise ValueError(f"Required environment variable {v} is not set")

    return BridgeConfig(
        token=os.getenv("SLACK_TOKEN").strip(),
        puppet_id=int(os.getenv("SLACK_PUPPET_ID", 1)),
        db_path=os.getenv("SLACK_DB_PATH", DEFAULT_DB_PATH),
        reconnect_delay=float(os.getenv("RECONNECT_DELAY", RECONNECT_DELAY)),
        file_logging=os.getenv("ENABLE_FILE_LOGGING", "false").lower() == "true",
        matrix_domain=os.getenv("MATRIX_DOMAIN", "localhost"),
    )
