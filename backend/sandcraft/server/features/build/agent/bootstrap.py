"""Installs the agent runtime into a sandbox on first use.

Runs on every turn, so the common path is a single cheap shell probe. A
marker file named after the worker script's digest makes an updated worker
get re-uploaded into sandboxes that still carry an older copy.
"""

import hashlib
import shlex
from functools import lru_cache
from pathlib import Path

from sandcraft.server.features.build.configs import AGENT_BOOTSTRAP_TIMEOUT_SECONDS
from sandcraft.server.features.build.configs import AGENT_HOME_DIR
from sandcraft.server.features.build.configs import AGENT_PROJECT_DIR
from sandcraft.server.features.build.configs import AGENT_SDK_PACKAGE
from sandcraft.server.features.build.configs import AGENT_WORKER_FILENAME
from sandcraft.server.features.build.errors import ProvisionFailedError
from sandcraft.server.features.build.sandbox.manager import SandboxLifecycleManager
from sandcraft.utils.logger import setup_logger

logger = setup_logger()

WORKER_SCRIPT_PATH = Path(__file__).parent / "worker" / AGENT_WORKER_FILENAME

_READY_MARKER = "agent-runtime-ready"


@lru_cache(maxsize=1)
def load_worker_script() -> str:
    return WORKER_SCRIPT_PATH.read_text()


def worker_digest() -> str:
    return hashlib.sha256(load_worker_script().encode()).hexdigest()[:16]


def worker_remote_path() -> str:
    return f"{AGENT_HOME_DIR}/{AGENT_WORKER_FILENAME}"


def _marker_path() -> str:
    return f"{AGENT_HOME_DIR}/.worker-{worker_digest()}"


def build_probe_command() -> str:
    """Shell probe that prints the ready marker only if everything is in place."""
    sdk_module = AGENT_SDK_PACKAGE.replace("-", "_")
    return (
        f"test -d {shlex.quote(AGENT_PROJECT_DIR)} "
        f"&& test -f {shlex.quote(_marker_path())} "
        f"&& python3 -c {shlex.quote(f'import {sdk_module}')} 2>/dev/null "
        f"&& echo {_READY_MARKER} || echo missing"
    )


async def ensure_agent_runtime(
    manager: SandboxLifecycleManager, sandbox_id: str
) -> bool:
    """Make sure the worker script, project dir and agent SDK exist.

    Returns True if anything had to be installed.

    Raises:
        ProvisionFailedError: the SDK could not be installed
    """
    probe = await manager.execute_command(sandbox_id, build_probe_command(), cwd="/")
    if _READY_MARKER in probe.stdout:
        return False

    logger.info(f"Bootstrapping agent runtime in sandbox {sandbox_id}")

    await manager.make_dir(sandbox_id, AGENT_PROJECT_DIR)
    await manager.make_dir(sandbox_id, AGENT_HOME_DIR)
    await manager.write_file(sandbox_id, worker_remote_path(), load_worker_script())

    install = await manager.execute_command(
        sandbox_id,
        f"python3 -m pip install --quiet --upgrade {shlex.quote(AGENT_SDK_PACKAGE)}",
        cwd="/",
        timeout_seconds=AGENT_BOOTSTRAP_TIMEOUT_SECONDS,
    )
    if not install.succeeded:
        raise ProvisionFailedError(
            f"Failed to install {AGENT_SDK_PACKAGE} in sandbox {sandbox_id}: "
            f"{install.stderr.strip() or install.stdout.strip()}"
        )

    # Only written once everything above succeeded
    await manager.write_file(sandbox_id, _marker_path(), worker_digest())
    logger.info(f"Agent runtime installed in sandbox {sandbox_id}")
    return True
