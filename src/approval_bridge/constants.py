"""Shared constants for the approval bridge."""

from pathlib import Path


HOME_DIR = Path.home() / ".approval-bridge"
LOG_DIR = HOME_DIR / "logs"
DATA_DIR = HOME_DIR / "data"
RULES_FILE = DATA_DIR / "permission-rules.json"
DB_DIR = HOME_DIR / "db"
DB_FILE = DB_DIR / "bridge.db"
AUDIT_DIR = HOME_DIR / "audit"
SERVER_HOST = "127.0.0.1"
SERVER_PORT = 3000
SHELL_TOOL = "Bash"
DEFAULT_OPTIONS = ("Yes", "No")
