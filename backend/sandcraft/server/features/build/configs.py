import os
from enum import Enum


class SandboxProviderType(str, Enum):
    """Remote execution backend used for project sandboxes.

    E2B: Hosted microVM sandboxes with pause/resume snapshots
    """

    E2B = "e2b"


SANDBOX_PROVIDER = SandboxProviderType(os.environ.get("SANDBOX_PROVIDER", "e2b"))

# E2B credentials and template
E2B_API_KEY = os.environ.get("E2B_API_KEY") or None
# Leave unset to use the provider's default base template
E2B_TEMPLATE_ID = os.environ.get("E2B_TEMPLATE_ID") or None

# Hard lifetime the provider enforces on a running sandbox before reclaiming it.
# Local state can drift from the provider once this passes, which is why
# ensure_running re-checks liveness.
SANDBOX_PROVIDER_TIMEOUT_SECONDS = int(
    os.environ.get("SANDBOX_PROVIDER_TIMEOUT_SECONDS", "3600")
)

# Sandbox lifecycle configuration
# Must stay above AGENT_MESSAGE_TIMEOUT_SECONDS so a turn is never paused mid-run
SANDBOX_IDLE_TIMEOUT_SECONDS = int(
    os.environ.get("SANDBOX_IDLE_TIMEOUT_SECONDS", "900")
)
# How long a paused sandbox is kept before it is terminated outright
SANDBOX_MAX_HIBERNATION_SECONDS = int(
    os.environ.get("SANDBOX_MAX_HIBERNATION_SECONDS", "3600")
)
SANDBOX_CLEANUP_INTERVAL_SECONDS = int(
    os.environ.get("SANDBOX_CLEANUP_INTERVAL_SECONDS", "10")
)
SANDBOX_CLEANUP_ENABLED = (
    os.environ.get("SANDBOX_CLEANUP_ENABLED", "true").lower() == "true"
)

# Command execution
DEFAULT_COMMAND_TIMEOUT_SECONDS = int(
    os.environ.get("DEFAULT_COMMAND_TIMEOUT_SECONDS", "60")
)

# Agent runtime configuration
AGENT_MESSAGE_TIMEOUT_SECONDS = int(
    os.environ.get("AGENT_MESSAGE_TIMEOUT_SECONDS", "300")
)
# Installing the agent SDK on a fresh sandbox can take a while
AGENT_BOOTSTRAP_TIMEOUT_SECONDS = int(
    os.environ.get("AGENT_BOOTSTRAP_TIMEOUT_SECONDS", "120")
)
ANTHROPIC_API_KEY = os.environ.get("ANTHROPIC_API_KEY", "")

# Paths inside the sandbox
AGENT_HOME_DIR = os.environ.get("AGENT_HOME_DIR", "/home/user/.agent")
AGENT_PROJECT_DIR = os.environ.get("AGENT_PROJECT_DIR", "/home/user/project")
AGENT_WORKER_FILENAME = "agent_worker.py"
AGENT_SDK_PACKAGE = os.environ.get("AGENT_SDK_PACKAGE", "claude-agent-sdk")

# Tools the in-sandbox agent may use (comma-separated list)
_allowed_tools_str = os.environ.get(
    "AGENT_ALLOWED_TOOLS", "Read,Write,Edit,Bash,Glob,Grep,WebFetch"
)
AGENT_ALLOWED_TOOLS: list[str] = [
    t.strip() for t in _allowed_tools_str.split(",") if t.strip()
]

# Tool names whose successful results imply a file was written
FILE_WRITING_TOOLS = frozenset({"Write", "Edit", "MultiEdit"})
