from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .errors import ConfigError
from .iam_view import DEFAULT_ID_CORRELATED_TYPES


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False


@dataclass
class IAMSection:
    base_url: str = ""
    system_id: str = "bk_cmdb"
    app_code: str = ""
    app_secret: str = ""     # secret – never log in clear text
    user: str = "admin"
    supplier_account: str = "0"
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 3
    page_size: int = 500


@dataclass
class SyncSection:
    id_correlated_types: List[str] = field(default_factory=lambda: list(DEFAULT_ID_CORRELATED_TYPES))
    # cmdb type -> iam type, or {iam_type, id_prefix}; empty means built-in mapping
    resource_types: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    iam: IAMSection
    sync: SyncSection
    logging: LoggingSection

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./iamsync.yml",
    os.path.expanduser("~/.config/iamsync/config.yml"),
    "/etc/iamsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False},
    "iam": {
        "base_url": "",
        "system_id": "bk_cmdb",
        "app_code": "",
        "app_secret": "",
        "user": "admin",
        "supplier_account": "0",
        "verify_tls": True,
        "timeout_sec": 30,
        "retries": 3,
        "page_size": 500,
    },
    "sync": {"id_correlated_types": list(DEFAULT_ID_CORRELATED_TYPES), "resource_types": {}},
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str = "IAMSYNC_") -> Dict[str, Any]:
    """
    Convert IAMSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    Comma-separated values become lists for list-typed keys (see _coerce_types).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(x) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Minimal type coercion for booleans, integers and lists in known keys.
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if key_path[-1:] == ("id_correlated_types",) and isinstance(obj, str):
            return [p.strip() for p in obj.split(",") if p.strip()]
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(v, key_path + ("[]",)) for v in obj]
        if key_path[-1:] in [("verify_tls",), ("dry_run",)]:
            return to_bool(obj)
        if key_path[-1:] in [("timeout_sec",), ("retries",), ("page_size",)]:
            try:
                return int(obj)
            except (TypeError, ValueError):
                raise ConfigError(f"Expected an integer for {'.'.join(key_path)}: {obj!r}")
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate required fields when not in dry_run.
    """
    dry = bool(cfg.get("app", {}).get("dry_run", False))
    if dry:
        return
    iam = cfg.get("iam", {})
    missing = [f"iam.{k}" for k in ("base_url", "app_code", "app_secret") if not iam.get(k)]
    if missing:
        raise ConfigError(
            "Missing required configuration for non-dry run: " + ", ".join(missing)
        )


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "IAMSYNC_",
    use_dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix IAMSYNC_, nested via __; .env loaded first)
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - basic type coercion (bool/int/list)
      - validation of required fields when not in dry_run
    """
    if use_dotenv:
        env_path = find_dotenv(usecwd=True)
        if env_path:
            load_dotenv(env_path, override=False)

    file_cfg = _load_first_existing(files)
    env_cfg = _env_to_dict(env_prefix)

    # defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    try:
        return AppConfig(
            app=AppSection(**merged.get("app", {})),
            iam=IAMSection(**merged.get("iam", {})),
            sync=SyncSection(**merged.get("sync", {})),
            logging=LoggingSection(**merged.get("logging", {})),
        )
    except TypeError as e:
        raise ConfigError(f"Unknown configuration key: {e}") from e
