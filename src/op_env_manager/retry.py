"""
Resilient remote calls -- retry with exponential backoff and jitter.

Transient failures (network, timeout, rate limiting, service unavailable)
are retried; permanent failures (authentication, not found, permission,
invalid input) fail on the first attempt. Anything we cannot classify is
treated as permanent so unexpected errors surface instead of looping.

Configuration via environment variables:
    OP_MAX_RETRIES      Retries after the first attempt (default 3, 0-10)
    OP_RETRY_DELAY      Initial delay in seconds (default 1, 0.1-10)
    OP_BACKOFF_FACTOR   Exponential multiplier (default 2, 1.5-5)
    OP_MAX_DELAY        Delay cap in seconds (default 30, 5-300)
    OP_RETRY_JITTER     Randomly shorten delays by 0-25% (default true)
    OP_DISABLE_RETRY    Single attempt only (default false)
    OP_RETRY_QUIET      No retry logging (default false)
"""

from __future__ import annotations

import logging
import os
import random
import re
import socket
import subprocess
import time
from enum import Enum
from typing import Callable, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError, RemoteError

logger = logging.getLogger("op_env_manager.retry")

T = TypeVar("T")

_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"network|timeout|connection|timed out|unreachable",
        r"rate limit|too many requests|\b429\b",
        r"temporarily unavailable|service unavailable|\b503\b",
        r"could not resolve|dns|name resolution",
        r"connection reset|connection refused|ECONNRESET|ECONNREFUSED",
    )
]

_PERMANENT_PATTERN = re.compile(
    r"not authenticated|authentication|invalid token|permission denied|"
    r"access denied|not found|no item|no vault|isn't an item|isn't a vault|invalid",
    re.IGNORECASE,
)


class ErrorKind(str, Enum):
    """Retry classification of a failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an exception for retry purposes.

    Args:
        exc: The failure raised by a remote operation.

    Returns:
        ErrorKind.TRANSIENT only for failures worth retrying.
    """
    if isinstance(exc, (TimeoutError, ConnectionError, socket.gaierror, subprocess.TimeoutExpired)):
        return ErrorKind.TRANSIENT

    if isinstance(exc, RemoteError):
        text = exc.output or str(exc)
    else:
        text = str(exc)

    if any(p.search(text) for p in _RETRYABLE_PATTERNS):
        return ErrorKind.TRANSIENT
    if _PERMANENT_PATTERN.search(text):
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) is ErrorKind.TRANSIENT


class RetryConfig(BaseModel):
    """Retry policy. Out-of-range values are rejected, never clamped."""

    max_retries: int = Field(default=3, ge=0, le=10)
    initial_delay: float = Field(default=1.0, ge=0.1, le=10)
    backoff_factor: float = Field(default=2.0, ge=1.5, le=5)
    max_delay: float = Field(default=30.0, ge=5, le=300)
    jitter: bool = True
    disabled: bool = False
    quiet: bool = False

    @property
    def max_attempts(self) -> int:
        if self.disabled:
            return 1
        return self.max_retries + 1

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RetryConfig":
        """Build a config from OP_* environment variables.

        Raises:
            ConfigError: If any variable is malformed or out of range.
        """
        env = os.environ if environ is None else environ
        errors: list[str] = []
        values: dict[str, object] = {}

        numeric = {
            "OP_MAX_RETRIES": ("max_retries", int),
            "OP_RETRY_DELAY": ("initial_delay", float),
            "OP_BACKOFF_FACTOR": ("backoff_factor", float),
            "OP_MAX_DELAY": ("max_delay", float),
        }
        for var, (field, kind) in numeric.items():
            raw = env.get(var, "").strip()
            if not raw:
                continue
            try:
                values[field] = kind(raw)
            except ValueError:
                noun = "an integer" if kind is int else "a number"
                errors.append(f"Invalid {var}={raw!r}: must be {noun}")

        flags = {
            "OP_RETRY_JITTER": "jitter",
            "OP_DISABLE_RETRY": "disabled",
            "OP_RETRY_QUIET": "quiet",
        }
        for var, field in flags.items():
            raw = env.get(var, "").strip()
            if not raw:
                continue
            if raw not in ("true", "false"):
                errors.append(f"Invalid {var}={raw!r}: must be 'true' or 'false'")
                continue
            values[field] = raw == "true"

        if not errors:
            try:
                return cls(**values)
            except ValidationError as exc:
                names = {field: var for var, (field, _) in numeric.items()}
                for err in exc.errors():
                    field = str(err["loc"][0]) if err["loc"] else "?"
                    var = names.get(field, field)
                    errors.append(f"Invalid {var}={values.get(field)!r}: {err['msg']}")

        raise ConfigError("Invalid retry configuration: " + "; ".join(errors))


def compute_delay(
    retry_index: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``retry_index`` (0-based).

    ``min(max_delay, initial_delay * backoff_factor ** retry_index)``,
    shortened by a random 0-25% when jitter is on.
    """
    delay = min(
        config.max_delay,
        config.initial_delay * (config.backoff_factor ** retry_index),
    )
    if config.jitter:
        delay -= delay * 0.25 * rng()
    return delay


def with_retry(
    label: str,
    operation: Callable[[], T],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run ``operation`` with retry and exponential backoff.

    Args:
        label: Human-readable description, used in log messages.
        operation: Zero-argument callable performing the remote call.
        config: Retry policy. Defaults to RetryConfig.from_env().
        sleep: Sleep function (injectable for tests).
        rng: Random source in [0, 1) for jitter.

    Returns:
        Whatever ``operation`` returns.

    Raises:
        The last exception raised by ``operation``, unchanged.
    """
    cfg = config or RetryConfig.from_env()
    max_attempts = cfg.max_attempts

    attempt = 0
    while True:
        try:
            result = operation()
        except Exception as exc:
            attempt += 1
            kind = classify_error(exc)

            if kind is not ErrorKind.TRANSIENT:
                if not cfg.quiet and max_attempts > 1:
                    logger.error("Non-retryable error (%s): %s", label, exc)
                raise

            if attempt >= max_attempts:
                if not cfg.quiet and max_attempts > 1:
                    logger.error("Failed after %d attempts: %s", max_attempts, label)
                    logger.error("Last error: %s", exc)
                raise

            delay = compute_delay(attempt - 1, cfg, rng)
            if not cfg.quiet:
                logger.warning(
                    "Attempt %d/%d failed: %s (%s)", attempt, max_attempts, label, exc
                )
                logger.info(
                    "Retrying in %.2fs... (attempt %d/%d)", delay, attempt + 1, max_attempts
                )
            sleep(delay)
            continue

        if attempt > 0 and not cfg.quiet:
            logger.info("Succeeded on attempt %d/%d: %s", attempt + 1, max_attempts, label)
        return result


class ResilientClient:
    """Runs remote calls through ``with_retry`` with a fixed policy.

    Every remote call made by the sync engine and the reference resolver
    goes through one of these.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig.from_env()
        self._sleep = sleep
        self._rng = rng

    def call(self, label: str, fn: Callable[..., T], *args, **kwargs) -> T:
        """Call ``fn(*args, **kwargs)`` with retry."""
        return with_retry(
            label,
            lambda: fn(*args, **kwargs),
            config=self.config,
            sleep=self._sleep,
            rng=self._rng,
        )
