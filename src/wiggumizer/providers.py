"""Model invocation clients.

Every client exposes ``invoke(system_prompt, user_message) -> str``.
Failures are raised as :class:`ModelError` carrying a ``kind`` that the
retry layer uses to decide between retrying and giving up:

- ``rate_limited``: back off longer, then retry
- ``transient``: network trouble, timeouts, 5xx, overloaded; retry
- ``fatal``: bad credentials, bad request, missing executable; abort

Two clients are provided:

- :class:`CliRunnerClient` runs a local agent CLI (``claude -p``,
  ``codex exec -`` ...) and reads the response from stdout, optionally
  streaming it line by line.
- :class:`HttpMessagesClient` posts to an Anthropic-style messages API
  with ``requests``.
"""

from __future__ import annotations

import enum
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import requests

from .config import ProviderConfig
from .subprocess_helper import run_subprocess, run_subprocess_live

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "429")
_TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "econnreset",
    "etimedout",
    "network",
    "overloaded",
    "temporarily unavailable",
    "503",
    "502",
    "529",
)


class ModelErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ModelError(RuntimeError):
    """A model invocation failed.

    Attributes:
        kind: Classification used for retry decisions
        status_code: HTTP status, when there was one
    """

    def __init__(
        self,
        message: str,
        kind: ModelErrorKind = ModelErrorKind.FATAL,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind is not ModelErrorKind.FATAL


def classify_status(status_code: int) -> ModelErrorKind:
    if status_code == 429:
        return ModelErrorKind.RATE_LIMITED
    if status_code >= 500 or status_code in (408, 409):
        return ModelErrorKind.TRANSIENT
    return ModelErrorKind.FATAL


def classify_message(message: str) -> ModelErrorKind:
    text = message.lower()
    if any(marker in text for marker in _RATE_LIMIT_MARKERS):
        return ModelErrorKind.RATE_LIMITED
    if any(marker in text for marker in _TRANSIENT_MARKERS):
        return ModelErrorKind.TRANSIENT
    return ModelErrorKind.FATAL


def classify_error(exc: BaseException) -> ModelErrorKind:
    """Map any exception raised while calling a model to an error kind."""
    if isinstance(exc, ModelError):
        return exc.kind
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return ModelErrorKind.TRANSIENT
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ModelErrorKind.TRANSIENT
    return classify_message(str(exc))


class ModelClient(Protocol):
    def invoke(self, system_prompt: str, user_message: str) -> str:
        ...


def build_cli_invocation(argv: List[str], prompt: str) -> Tuple[List[str], Optional[str]]:
    """Build argv and optional stdin for an agent CLI.

    A literal ``{prompt}`` argument is replaced by the prompt; otherwise
    the prompt is fed on stdin.
    """
    argv = [str(x) for x in argv]
    if "{prompt}" in argv:
        return [prompt if x == "{prompt}" else x for x in argv], None
    return argv, prompt


class CliRunnerClient:
    """Invoke a local agent CLI and return its stdout."""

    def __init__(
        self,
        argv: List[str],
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
        stream: bool = False,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> None:
        if not argv:
            raise ValueError("Runner argv cannot be empty")
        self.argv = list(argv)
        self.cwd = cwd
        self.timeout = timeout
        self.stream = stream
        self.on_line = on_line

    def invoke(self, system_prompt: str, user_message: str) -> str:
        prompt = f"{system_prompt}\n\n{user_message}" if system_prompt else user_message
        argv, stdin_text = build_cli_invocation(self.argv, prompt)

        try:
            if self.stream:
                result = run_subprocess_live(
                    argv,
                    cwd=self.cwd,
                    timeout=self.timeout,
                    input_text=stdin_text,
                    forward_output=False,
                    on_line=self.on_line,
                )
            else:
                result = run_subprocess(
                    argv, cwd=self.cwd, timeout=self.timeout, input_text=stdin_text
                )
        except RuntimeError as e:
            message = str(e)
            kind = (
                ModelErrorKind.FATAL
                if message.startswith("Command not found")
                else ModelErrorKind.TRANSIENT
            )
            raise ModelError(message, kind=kind) from e

        if result.failed:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise ModelError(
                f"{argv[0]} exited with code {result.returncode}: {detail}",
                kind=classify_message(detail),
            )
        return result.stdout

    def __repr__(self) -> str:
        return f"CliRunnerClient(argv={self.argv!r})"


class HttpMessagesClient:
    """Call a messages-style HTTP API (Anthropic wire format)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 8192,
        api_url: str = "https://api.anthropic.com/v1/messages",
        timeout: float = 600,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ModelError("API key is empty", kind=ModelErrorKind.FATAL)
        self._api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self.api_url = api_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def invoke(self, system_prompt: str, user_message: str) -> str:
        payload: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": user_message}],
        }
        if system_prompt:
            payload["system"] = system_prompt

        try:
            response = self._session.post(
                self.api_url, headers=self._headers(), json=payload, timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise ModelError(
                f"Model API call timed out after {self.timeout}s",
                kind=ModelErrorKind.TRANSIENT,
            ) from e
        except requests.exceptions.RequestException as e:
            raise ModelError(f"Model API call failed: {e}", kind=classify_error(e)) from e

        if response.status_code >= 400:
            raise ModelError(
                f"Model API returned {response.status_code}: {response.text[:500]}",
                kind=classify_status(response.status_code),
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ModelError(
                f"Failed to parse model API response: {e}", kind=ModelErrorKind.TRANSIENT
            ) from e

        blocks = data.get("content") or []
        text = "".join(
            b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text"
        )
        if not text:
            logger.warning("Model API returned no text content (stop_reason=%s)", data.get("stop_reason"))
        return text

    def __repr__(self) -> str:
        return f"HttpMessagesClient(model={self.model!r}, key=***)"


def build_client(
    cfg: ProviderConfig,
    cwd: Optional[Path] = None,
    on_line: Optional[Callable[[str], None]] = None,
) -> ModelClient:
    """Create the configured client.

    Raises:
        ModelError: If the HTTP client's API key variable is not set
    """
    if cfg.kind == "http":
        api_key = os.environ.get(cfg.api_key_env, "")
        if not api_key:
            raise ModelError(
                f"{cfg.api_key_env} environment variable not set",
                kind=ModelErrorKind.FATAL,
            )
        return HttpMessagesClient(
            api_key=api_key,
            model=cfg.model,
            max_tokens=cfg.max_tokens,
            api_url=cfg.api_url,
            timeout=cfg.timeout_seconds,
        )
    return CliRunnerClient(
        argv=cfg.argv,
        cwd=cwd,
        timeout=cfg.timeout_seconds,
        stream=cfg.stream,
        on_line=on_line,
    )
