import os
import subprocess
import logging
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 300


def run_command(
    command: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: Optional[float] = DEFAULT_TIMEOUT_SEC,
    input_text: Optional[str] = None,
) -> Tuple[bool, str]:
    """
    Run one external command and capture stdout+stderr as a single string.

    Args:
        command: argv list; never passed through a shell
        cwd: Working directory
        env: Overrides layered on top of the current process environment
        timeout: Seconds before the process is killed
        input_text: Optional text written to the process stdin (used for secrets)

    Returns:
        (succeeded, output). A non-zero exit, a timeout or a missing executable
        all come back as succeeded=False with diagnostic output; nothing is raised.
    """
    proc_env = os.environ.copy()
    if env:
        proc_env.update({k: v for k, v in env.items() if v is not None})

    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            env=proc_env,
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        partial = e.output or ""
        if isinstance(partial, bytes):
            partial = partial.decode(errors="replace")
        logger.warning(f"Command {command[0]} timed out after {timeout}s")
        return False, f"{partial}\n[timed out after {timeout}s]".lstrip("\n")
    except FileNotFoundError:
        logger.error(f"Executable not found: {command[0]}")
        return False, f"command not found: {command[0]}"
    except OSError as e:
        logger.error(f"Failed to start {command[0]}: {e}")
        return False, f"failed to start {command[0]}: {e}"

    output = result.stdout or ""
    if result.returncode != 0:
        logger.debug(f"Command {command[0]} exited with {result.returncode}")
        return False, output
    return True, output
