from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from src.guard.types import RunMode

_BOOL_TRUE = {"true", "1", "yes", "y", "on"}
_BOOL_FALSE = {"false", "0", "no", "n", "off"}


def _coerce_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    low = str(value).strip().lower()
    if low in _BOOL_TRUE:
        return True
    if low in _BOOL_FALSE:
        return False
    raise ValueError(f"Invalid boolean for {name}: {value!r}")


@dataclass
class RunConfig:
    base_url: str = ""
    openapi: Optional[str] = None          # path or URL of the OpenAPI document
    mode: str = RunMode.FULL.value
    parallel: bool = False
    max_parallel: int = 1
    auto_start_vm: bool = False
    max_wait_seconds: int = 300
    skip_cleanup: bool = False
    skip_verify: bool = False
    use_real_data: bool = False
    module: Optional[str] = None
    ignored_diff_paths: List[str] = field(default_factory=list)

    token_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    grant_type: str = "password"
    bearer_token: Optional[str] = None
    token_refresh_margin: float = 30.0

    health_url: Optional[str] = None
    http_timeout: float = 30.0
    verify_tls: bool = True
    run_timeout: Optional[float] = None

    fixtures: Optional[str] = None
    blacklist: List[str] = field(default_factory=list)
    server_fields: Dict[str, List[str]] = field(default_factory=dict)
    resource_ids: Dict[str, str] = field(default_factory=dict)

    junit_output: Optional[str] = None
    json_output: Optional[str] = None
    console: bool = False

    def __post_init__(self) -> None:
        self.validate()

    @property
    def run_mode(self) -> RunMode:
        return RunMode(self.mode)

    @property
    def effective_parallelism(self) -> int:
        return self.max_parallel if self.parallel else 1

    def validate(self) -> None:
        try:
            RunMode(self.mode)
        except ValueError:
            raise ValueError(f"Unknown mode {self.mode!r} (expected full, readonly or fixtures)") from None
        if int(self.max_parallel) < 1:
            raise ValueError(f"max_parallel must be >= 1, got {self.max_parallel}")
        if int(self.max_wait_seconds) < 0:
            raise ValueError("max_wait_seconds must be >= 0")
        if self.run_timeout is not None and float(self.run_timeout) <= 0:
            raise ValueError("run_timeout must be > 0")

    def require_base_url(self) -> str:
        if not self.base_url:
            raise ValueError("base_url missing (set GUARD_BASE_URL or base_url in the config file)")
        return self.base_url.rstrip("/")

    def merged(self, overrides: Dict[str, Any]) -> "RunConfig":
        """New config with the non-None overrides applied (unknown keys are rejected)."""
        known = {f.name: f for f in fields(self)}
        values = {name: getattr(self, name) for name in known}
        for key, value in overrides.items():
            if key not in known:
                raise ValueError(f"Unknown config key: {key}")
            if value is None:
                continue
            values[key] = _coerce(known[key].name, value, values[key])
        return RunConfig(**values)

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "RunConfig":
        env = os.environ if environ is None else environ
        mapping = {
            "GUARD_BASE_URL": "base_url",
            "SUT_BASE_URL": "base_url",
            "GUARD_OPENAPI": "openapi",
            "GUARD_MODE": "mode",
            "GUARD_PARALLEL": "parallel",
            "GUARD_MAX_PARALLEL": "max_parallel",
            "GUARD_AUTO_START_VM": "auto_start_vm",
            "GUARD_MAX_WAIT_SECONDS": "max_wait_seconds",
            "GUARD_RUN_TIMEOUT": "run_timeout",
            "GUARD_TOKEN_URL": "token_url",
            "API_USERNAME": "username",
            "API_PASSWORD": "password",
            "GRANT_TYPE": "grant_type",
            "SUT_AUTH_TOKEN": "bearer_token",
            "GUARD_HEALTH_URL": "health_url",
            "HTTP_TIMEOUT_SECONDS": "http_timeout",
            "HTTP_VERIFY_TLS": "verify_tls",
            "GUARD_FIXTURES": "fixtures",
            "GUARD_MODULE": "module",
        }
        overrides: Dict[str, Any] = {}
        for env_key, cfg_key in mapping.items():
            value = env.get(env_key)
            if value not in (None, "") and cfg_key not in overrides:
                overrides[cfg_key] = value

        config = cls()
        config_file = env.get("GUARD_CONFIG")
        if config_file:
            config = cls.from_yaml(config_file)
        return config.merged(overrides)

    @classmethod
    def from_yaml(cls, path: str) -> "RunConfig":
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Config file not found: {p}")
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {p} must contain a mapping")
        return cls().merged(data)


def _coerce(name: str, value: Any, current: Any) -> Any:
    if isinstance(current, bool) or name in {
        "parallel", "auto_start_vm", "skip_cleanup", "skip_verify", "use_real_data", "verify_tls", "console",
    }:
        return _coerce_bool(value, name)
    if name in {"max_parallel", "max_wait_seconds"}:
        return int(value)
    if name in {"http_timeout", "token_refresh_margin", "run_timeout"}:
        return float(value)
    if name in {"ignored_diff_paths", "blacklist"}:
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return [str(v) for v in value]
    if name == "server_fields":
        return {str(k): [str(f) for f in v] for k, v in dict(value).items()}
    if name == "resource_ids":
        return {str(k): str(v) for k, v in dict(value).items()}
    return value
