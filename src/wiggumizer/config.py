from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

try:
    import tomllib  # py>=3.11
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore

logger = logging.getLogger(__name__)

RESPONSE_STYLES = ("diff", "whole_file")
PROVIDER_KINDS = ("cli", "http")

WILDCARD_INCLUDE = "**/*"

DEFAULT_EXCLUDE: Tuple[str, ...] = (
    "node_modules/**",
    ".git/**",
    "dist/**",
    "build/**",
    ".wiggumizer/**",
    "coverage/**",
    "*.min.js",
    "package-lock.json",
)


# -------------------------
# Dataclasses
# -------------------------


@dataclass(frozen=True)
class LoopConfig:
    max_iterations: int = 20
    response_style: str = "diff"  # diff|whole_file
    dry_run: bool = False
    auto_commit: bool = False
    no_change_limit: int = 2


@dataclass(frozen=True)
class FilesConfig:
    include: List[str] = field(default_factory=lambda: [WILDCARD_INCLUDE])
    exclude: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))
    respect_gitignore: bool = True
    prompt: str = "PROMPT.md"


@dataclass(frozen=True)
class ContextConfig:
    max_context_bytes: int = 100_000
    max_files: int = 50


@dataclass(frozen=True)
class ConvergenceConfig:
    history_size: int = 10
    fuzz_window: int = 3


@dataclass(frozen=True)
class ProviderConfig:
    kind: str = "cli"  # cli|http
    argv: List[str] = field(default_factory=lambda: ["claude", "-p"])
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 8192
    api_url: str = "https://api.anthropic.com/v1/messages"
    api_key_env: str = "ANTHROPIC_API_KEY"
    timeout_seconds: int = 600
    stream: bool = False


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    circuit_breaker_threshold: int = 5
    circuit_reset_seconds: float = 60.0


@dataclass(frozen=True)
class ValidationCommand:
    name: str
    command: str
    required: bool = True
    timeout_seconds: int = 300


@dataclass(frozen=True)
class ValidationConfig:
    commands: List[ValidationCommand] = field(default_factory=list)


@dataclass(frozen=True)
class OutputSettings:
    verbosity: str = "normal"  # quiet|normal|verbose
    format: str = "text"  # text|json


@dataclass(frozen=True)
class Config:
    loop: LoopConfig = field(default_factory=LoopConfig)
    files: FilesConfig = field(default_factory=FilesConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    output: OutputSettings = field(default_factory=OutputSettings)


# -------------------------
# Parsing helpers
# -------------------------


def _coerce_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"true", "1", "yes", "y", "on"}:
            return True
        if v in {"false", "0", "no", "n", "off"}:
            return False
    return default


def _coerce_str_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else list(default)
    if isinstance(value, list):
        return [str(x) for x in value if str(x).strip()]
    return list(default)


def _pick(raw: Dict[str, Any], snake: str, camel: Optional[str] = None) -> Any:
    """Read a key accepting both snake_case and the legacy camelCase."""
    if snake in raw:
        return raw[snake]
    if camel and camel in raw:
        return raw[camel]
    return None


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    raw = data.get(name, {}) or {}
    return raw if isinstance(raw, dict) else {}


def _load_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Failed to parse config file %s: %s", path, e)
        return {}


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to parse config file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def _load_any(path: Path) -> Dict[str, Any]:
    if path.suffix in {".yml", ".yaml"}:
        return _load_yaml(path)
    return _load_toml(path)


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Merge b into a (recursively for dicts), return new dict.

    ``None`` values in b never override a.
    """

    out: Dict[str, Any] = dict(a)
    for k, v in b.items():
        if v is None:
            continue
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _normalize_legacy_layout(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the flat top-level keys of ``.wiggumizer.yml`` onto sections."""

    out = dict(data)
    loop_raw = dict(_section(out, "loop"))
    for snake, camel in (
        ("max_iterations", "maxIterations"),
        ("auto_commit", "autoCommit"),
        ("dry_run", "dryRun"),
        ("response_style", "responseStyle"),
    ):
        value = _pick(out, snake, camel)
        if value is not None and _pick(loop_raw, snake, camel) is None:
            loop_raw[snake] = value
    if loop_raw:
        out["loop"] = loop_raw

    context_raw = dict(_section(out, "context"))
    limits = out.get("contextLimits")
    if isinstance(limits, dict):
        if "maxSize" in limits:
            context_raw.setdefault("max_context_bytes", limits["maxSize"])
        if "maxFiles" in limits:
            context_raw.setdefault("max_files", limits["maxFiles"])
    if context_raw:
        out["context"] = context_raw
    return out


def _load_config_data(project_root: Path) -> Tuple[Dict[str, Any], List[Path]]:
    """Return merged config data and the list of config files read (in order)."""

    paths: List[Path] = []

    # 1) user-level YAML
    home = os.environ.get("HOME")
    if home:
        p0 = Path(home) / ".wiggumizer.yml"
        if p0.is_file():
            paths.append(p0)

    # 2) project YAML
    p1 = project_root / ".wiggumizer.yml"
    if p1.is_file():
        paths.append(p1)

    # 3) project TOML (.wiggumizer/ first, root file overrides)
    for p in (project_root / ".wiggumizer" / "wiggumizer.toml", project_root / "wiggumizer.toml"):
        if p.is_file():
            paths.append(p)

    # 4) explicit env override
    env = os.environ.get("WIGGUMIZER_CONFIG")
    if env:
        p4 = Path(env)
        if not p4.is_absolute():
            p4 = (project_root / p4).resolve()
        if p4.is_file():
            paths.append(p4)

    data: Dict[str, Any] = {}
    for p in paths:
        data = _deep_merge(data, _normalize_legacy_layout(_load_any(p)))

    return data, paths


def _parse_validation(raw: Dict[str, Any]) -> ValidationConfig:
    commands: List[ValidationCommand] = []
    raw_cmds = raw.get("commands", []) or []
    if not isinstance(raw_cmds, list):
        raw_cmds = []
    for i, item in enumerate(raw_cmds):
        if isinstance(item, str):
            if item.strip():
                commands.append(ValidationCommand(name=f"check-{i + 1}", command=item))
            continue
        if not isinstance(item, dict) or not str(item.get("command", "")).strip():
            continue
        commands.append(
            ValidationCommand(
                name=str(item.get("name", f"check-{i + 1}")),
                command=str(item["command"]),
                required=_coerce_bool(item.get("required"), True),
                timeout_seconds=_coerce_int(
                    _pick(item, "timeout_seconds", "timeout"), 300
                ),
            )
        )
    return ValidationConfig(commands=commands)


# -------------------------
# Public API
# -------------------------


def load_config(project_root: Path) -> Config:
    """Load and normalize configuration.

    Sources, lowest precedence first: ``~/.wiggumizer.yml``,
    ``.wiggumizer.yml``, ``.wiggumizer/wiggumizer.toml``,
    ``wiggumizer.toml``, ``$WIGGUMIZER_CONFIG``.

    The returned config is always usable (defaults applied).

    Raises:
        ValueError: If an enumerated setting has an unknown value
    """

    data, read_paths = _load_config_data(project_root)
    for p in read_paths:
        logger.debug("Loaded config from %s", p)

    loop_raw = _section(data, "loop")
    files_raw = _section(data, "files")
    context_raw = _section(data, "context")
    convergence_raw = _section(data, "convergence")
    provider_raw = _section(data, "provider")
    retry_raw = _section(data, "retry")
    validation_raw = _section(data, "validation")
    output_raw = _section(data, "output")

    response_style = (
        str(_pick(loop_raw, "response_style", "responseStyle") or LoopConfig.response_style)
        .strip()
        .lower()
    )
    if response_style not in RESPONSE_STYLES:
        raise ValueError(
            f"Invalid loop.response_style: {response_style!r}. "
            f"Must be one of: {', '.join(RESPONSE_STYLES)}."
        )

    loop = LoopConfig(
        max_iterations=_coerce_int(
            _pick(loop_raw, "max_iterations", "maxIterations"), LoopConfig.max_iterations
        ),
        response_style=response_style,
        dry_run=_coerce_bool(_pick(loop_raw, "dry_run", "dryRun"), False),
        auto_commit=_coerce_bool(_pick(loop_raw, "auto_commit", "autoCommit"), False),
        no_change_limit=_coerce_int(
            _pick(loop_raw, "no_change_limit", "noChangeLimit"), LoopConfig.no_change_limit
        ),
    )

    files = FilesConfig(
        include=_coerce_str_list(files_raw.get("include"), [WILDCARD_INCLUDE]),
        exclude=_coerce_str_list(files_raw.get("exclude"), list(DEFAULT_EXCLUDE)),
        respect_gitignore=_coerce_bool(
            _pick(files_raw, "respect_gitignore", "respectGitignore"), True
        ),
        prompt=str(files_raw.get("prompt", FilesConfig.prompt)),
    )

    context = ContextConfig(
        max_context_bytes=_coerce_int(
            _pick(context_raw, "max_context_bytes", "maxContextSize"),
            ContextConfig.max_context_bytes,
        ),
        max_files=_coerce_int(
            _pick(context_raw, "max_files", "maxFiles"), ContextConfig.max_files
        ),
    )

    convergence = ConvergenceConfig(
        history_size=max(
            4,
            _coerce_int(
                _pick(convergence_raw, "history_size", "historySize"),
                ConvergenceConfig.history_size,
            ),
        ),
        fuzz_window=max(
            0,
            _coerce_int(
                _pick(convergence_raw, "fuzz_window", "fuzzWindow"),
                ConvergenceConfig.fuzz_window,
            ),
        ),
    )

    kind = str(provider_raw.get("kind", ProviderConfig.kind)).strip().lower()
    if kind not in PROVIDER_KINDS:
        raise ValueError(
            f"Invalid provider.kind: {kind!r}. Must be one of: {', '.join(PROVIDER_KINDS)}."
        )
    defaults = ProviderConfig()
    provider = ProviderConfig(
        kind=kind,
        argv=_coerce_str_list(provider_raw.get("argv"), defaults.argv),
        model=str(provider_raw.get("model", defaults.model)),
        max_tokens=_coerce_int(_pick(provider_raw, "max_tokens", "maxTokens"), defaults.max_tokens),
        api_url=str(_pick(provider_raw, "api_url", "apiUrl") or defaults.api_url),
        api_key_env=str(_pick(provider_raw, "api_key_env", "apiKeyEnv") or defaults.api_key_env),
        timeout_seconds=_coerce_int(
            _pick(provider_raw, "timeout_seconds", "timeout"), defaults.timeout_seconds
        ),
        stream=_coerce_bool(provider_raw.get("stream"), False),
    )

    retry = RetryConfig(
        max_retries=max(0, _coerce_int(_pick(retry_raw, "max_retries", "maxRetries"), 3)),
        base_delay_seconds=_coerce_float(
            _pick(retry_raw, "base_delay_seconds", "baseDelay"), RetryConfig.base_delay_seconds
        ),
        max_delay_seconds=_coerce_float(
            _pick(retry_raw, "max_delay_seconds", "maxDelay"), RetryConfig.max_delay_seconds
        ),
        circuit_breaker_threshold=_coerce_int(
            _pick(retry_raw, "circuit_breaker_threshold", "circuitBreakerThreshold"),
            RetryConfig.circuit_breaker_threshold,
        ),
        circuit_reset_seconds=_coerce_float(
            _pick(retry_raw, "circuit_reset_seconds", "circuitResetDelay"),
            RetryConfig.circuit_reset_seconds,
        ),
    )

    verbosity = str(output_raw.get("verbosity", "normal")).strip().lower()
    if verbosity not in {"quiet", "normal", "verbose"}:
        verbosity = "normal"
    fmt = str(output_raw.get("format", "text")).strip().lower()
    if fmt not in {"text", "json"}:
        fmt = "text"

    return Config(
        loop=loop,
        files=files,
        context=context,
        convergence=convergence,
        provider=provider,
        retry=retry,
        validation=_parse_validation(validation_raw),
        output=OutputSettings(verbosity=verbosity, format=fmt),
    )
