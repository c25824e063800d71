import time
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from tenacity import RetryCallState, Retrying, retry_if_result, stop_after_attempt

from forge_deploy.modules.deployments.command_runner import run_command
from forge_deploy.modules.deployments.models import WARN, FAIL

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 500
REDACTED = "***"


def redact(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in text."""
    for secret in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(secret, REDACTED)
    return text


def output_tail(output: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    """Last non-empty lines of command output, flattened for a single log line."""
    text = " | ".join(line.strip() for line in (output or "").splitlines() if line.strip())
    if len(text) > limit:
        text = "..." + text[-limit:]
    return text


def matches_non_retryable(output: str, patterns: Optional[Iterable[str]]) -> Optional[str]:
    """Return the first pattern found in output (case-insensitive), else None."""
    if not patterns:
        return None
    lowered = (output or "").lower()
    for pattern in patterns:
        if pattern and pattern.lower() in lowered:
            return pattern
    return None


class RetryingExecutor:
    """
    Runs provider commands with exponential backoff.

    Transient failures are retried up to max_retries attempts, sleeping
    backoff_base ** attempt seconds between them. Output matching one of the
    non_retryable_patterns fails immediately. Every decision is appended to
    the deployment's log through append_log before returning.
    """

    def __init__(
        self,
        append_log: Callable[[str, str], None],
        runner: Callable[..., Tuple[bool, str]] = run_command,
        sleep: Callable[[float], None] = time.sleep,
        default_timeout: Optional[float] = None,
    ):
        self.append_log = append_log
        self.runner = runner
        self.sleep = sleep
        self.default_timeout = default_timeout
        self._secrets: Set[str] = set()

    def register_secret(self, value: Optional[str]) -> None:
        """Values registered here are masked in every log line this executor writes."""
        if value:
            self._secrets.add(value)

    def redact(self, text: str) -> str:
        return redact(text, self._secrets)

    def run_once(
        self,
        command: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """Single attempt, no logging to the deploy log."""
        return self.runner(
            command,
            cwd=cwd,
            env=env,
            timeout=timeout or self.default_timeout,
            input_text=input_text,
        )

    def run_with_retry(
        self,
        command: List[str],
        *,
        step_name: str,
        deployment_id: str,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        non_retryable_patterns: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
    ) -> Tuple[bool, str]:
        max_retries = max(1, max_retries)
        attempts = []

        def attempt() -> Tuple[bool, str]:
            attempts.append(1)
            return self.run_once(command, cwd=cwd, env=env, timeout=timeout, input_text=input_text)

        def should_retry(result: Tuple[bool, str]) -> bool:
            succeeded, output = result
            return not succeeded and not matches_non_retryable(output, non_retryable_patterns)

        def log_retry(retry_state: RetryCallState) -> None:
            _, output = retry_state.outcome.result()
            number = retry_state.attempt_number
            delay = retry_state.next_action.sleep
            logger.info(
                f"[{deployment_id}] {step_name} attempt {number}/{max_retries} failed, retrying in {delay:g}s"
            )
            self.append_log(
                deployment_id,
                f"{WARN} {step_name} attempt {number}/{max_retries} failed, "
                f"retrying in {delay:g}s: {self.redact(output_tail(output))}",
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_retries),
            wait=lambda retry_state: backoff_base ** retry_state.attempt_number,
            retry=retry_if_result(should_retry),
            before_sleep=log_retry,
            sleep=self.sleep,
            # out of attempts: hand back the last (failed) result instead of raising RetryError
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        succeeded, output = retrying(attempt)

        if succeeded:
            if len(attempts) > 1:
                logger.info(f"[{deployment_id}] {step_name} succeeded on attempt {len(attempts)}")
            return True, output

        detail = self.redact(output_tail(output))
        pattern = matches_non_retryable(output, non_retryable_patterns)
        if pattern:
            logger.warning(f"[{deployment_id}] {step_name} hit non-retryable error ({pattern})")
            self.append_log(
                deployment_id,
                f"{FAIL} {step_name} failed with non-retryable error ({pattern}): {detail}",
            )
        else:
            logger.error(f"[{deployment_id}] {step_name} failed after {max_retries} attempts")
            self.append_log(
                deployment_id,
                f"{FAIL} {step_name} failed after {max_retries} attempts: {detail}",
            )
        return False, output
