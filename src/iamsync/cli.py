"""
Command-line interface for iamsync.

Usage (examples):
  - Plan only (reads IAM when configured, never writes):
      python -m iamsync.cli sync --tasks ./tasks.yml --dry-run

  - Real sync:
      python -m iamsync.cli sync --tasks ./tasks.yml \
        --base-url http://127.0.0.1:8000 --app-code cmdb --app-secret XXX

Tasks file (YAML), one entry per (scope, category) pair:

    tasks:
      - name: hosts-of-biz-2
        attribute: {type: host, business_id: 2, layers: [{type: business, instance_id: 2}]}
        iam_id_prefix: ""
        skip_deregister: false
        desired:
          - {type: host, instance_id: 1000, name: web-1, business_id: 2,
             layers: [{type: business, instance_id: 2}]}

Remote source: `attribute`, or `search_condition` (+ optional `header`),
or a literal `remote` list of layer sequences.
"""

from __future__ import annotations

import argparse
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from .core.config import AppConfig, load_config
from .core.errors import ConfigError, IAMCancelled, RemoteListError
from .core.iam_client import IAMClient
from .core.iam_view import HttpIAMView, IAMView, PlanningIAMView
from .core.logging_setup import build_logger, shutdown_logger, task_logger
from .core.models import BackendResource, DesiredResource, SearchCondition, backend_resource
from .core.normalizer import DryRunNormalizer
from .core.reconciler import NormalizationError, Ok, SafetyGate, SyncResult
from .core.tasks import TaskEntry


@dataclass(frozen=True)
class TaskSpec:
    name: str
    iam_id_prefix: str
    skip_deregister: bool
    desired: List[DesiredResource]
    attribute: Optional[DesiredResource] = None
    search_condition: Optional[SearchCondition] = None
    header: Optional[Dict[str, str]] = None
    remote: Optional[List[BackendResource]] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], defaults: Mapping[str, Any]) -> "TaskSpec":
        name = str(raw.get("name") or "")
        if not name:
            raise ConfigError("Every task needs a 'name'")
        sources = [k for k in ("attribute", "search_condition", "remote") if raw.get(k) is not None]
        if len(sources) != 1:
            raise ConfigError(f"Task '{name}' needs exactly one of attribute/search_condition/remote")
        for k in ("attribute", "search_condition"):
            if k in sources and not (isinstance(raw[k], Mapping) and raw[k]):
                raise ConfigError(f"Task '{name}' has an empty or malformed '{k}'")
        if "remote" in sources and not isinstance(raw["remote"], list):
            raise ConfigError(f"Task '{name}' 'remote' must be a list of layer sequences")
        merged = {**defaults, **raw}
        return cls(
            name=name,
            iam_id_prefix=str(merged.get("iam_id_prefix") or ""),
            skip_deregister=bool(merged.get("skip_deregister", False)),
            desired=[DesiredResource.from_dict(d) for d in (raw.get("desired") or [])],
            attribute=DesiredResource.from_dict(raw["attribute"]) if raw.get("attribute") is not None else None,
            search_condition=SearchCondition.from_dict(raw["search_condition"]) if raw.get("search_condition") is not None else None,
            header={str(k): str(v) for k, v in (raw.get("header") or {}).items()} or None,
            remote=[backend_resource(r) for r in raw["remote"]] if raw.get("remote") is not None else None,
        )


def _read_tasks(path: str) -> List[TaskSpec]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Tasks file not found: {path}")
    with p.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        raise ConfigError(f"Tasks file must be a mapping with a 'tasks' list: {path}")
    defaults = data.get("defaults") or {}
    return [TaskSpec.from_dict(t, defaults) for t in data["tasks"]]


def _run_task(entry: TaskEntry, task: TaskSpec) -> SyncResult:
    if task.attribute is not None:
        return entry.diff_and_sync(task.name, task.attribute, task.iam_id_prefix, task.desired, task.skip_deregister)
    if task.search_condition is not None:
        return entry.diff_and_sync_instances(
            task.header, task.name, task.search_condition, task.iam_id_prefix, task.desired, task.skip_deregister
        )
    return entry.diff_and_sync_core(task.name, task.remote or [], task.iam_id_prefix, task.desired, task.skip_deregister)


_SUMMARY_KEYS = ["OK", "GATED", "FAILED", "REGISTERED", "DEREGISTERED", "SKIPPED"]


def _count(counts: Dict[str, int], result: Optional[SyncResult]) -> None:
    if isinstance(result, Ok):
        counts["OK"] += 1
        counts["REGISTERED"] += result.registered
        counts["DEREGISTERED"] += result.deregistered
        counts["SKIPPED"] += result.skipped
    elif isinstance(result, SafetyGate):
        counts["GATED"] += 1
    else:
        counts["FAILED"] += 1


def _summarize_counts(counts: Dict[str, int]) -> str:
    return " ".join(f"{k}={counts.get(k, 0)}" for k in _SUMMARY_KEYS)


def _build_view(cfg: AppConfig, cancel: threading.Event, logger) -> IAMView:
    normalizer = DryRunNormalizer(cfg.iam.system_id, cfg.sync.resource_types or None)
    client = None
    if cfg.iam.base_url:
        client = IAMClient(
            cfg.iam.base_url,
            system_id=cfg.iam.system_id,
            app_code=cfg.iam.app_code,
            app_secret=cfg.iam.app_secret,
            user=cfg.iam.user,
            supplier_account=cfg.iam.supplier_account,
            verify_tls=cfg.iam.verify_tls,
            timeout_sec=cfg.iam.timeout_sec,
            retries=cfg.iam.retries,
            page_size=cfg.iam.page_size,
            cancel_event=cancel,
            logger=logger,
        )
    view: IAMView = HttpIAMView(client, normalizer, id_correlated_types=cfg.sync.id_correlated_types, logger=logger)
    if cfg.app.dry_run:
        view = PlanningIAMView(view, logger=logger)
    return view


def _install_cancel_handlers(cancel: threading.Event) -> Dict[int, Any]:
    """Route SIGINT/SIGTERM to `cancel`. Returns the previous handlers."""
    if threading.current_thread() is not threading.main_thread():
        return {}

    def _on_signal(_signum, _frame):
        cancel.set()

    previous: Dict[int, Any] = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _on_signal)
    return previous


def _restore_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        if handler is not None:
            signal.signal(sig, handler)


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="iamsync", description="Reconcile IAM resources with the CMDB inventory")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("sync", help="Run reconciliation tasks")
    s.add_argument("--tasks", required=True, help="Tasks file (.yml)")
    s.add_argument("--only", action="append", default=[], help="Run only the named task (repeatable)")
    s.add_argument("--dry-run", action="store_true", help="Plan only, no register/deregister calls")
    s.add_argument("--config", default="", help="Config file (.yml), overrides the default search")

    # IAM / HTTP
    s.add_argument("--base-url", default="", help="IAM base URL")
    s.add_argument("--app-code", default="", help="IAM app code")
    s.add_argument("--app-secret", default="", help="IAM app secret")
    s.add_argument("--system-id", default="", help="IAM system id")
    s.add_argument("--verify-tls", default="", choices=["", "true", "false"], help="Verify TLS (https)")
    s.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")
    s.add_argument("--retries", type=int, default=None, help="HTTP retries (5xx/network)")

    # Logging
    s.add_argument("--logs-dir", default="", help="Logs base directory")
    s.add_argument("--console-level", default="", help="Console log level (INFO..CRITICAL)")
    s.add_argument("--file-level", default="", help="File log level (DEBUG..CRITICAL)")

    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only flags actually passed override file/env values."""
    iam = {
        "base_url": args.base_url,
        "app_code": args.app_code,
        "app_secret": args.app_secret,
        "system_id": args.system_id,
        "verify_tls": args.verify_tls,
        "timeout_sec": args.timeout_sec,
        "retries": args.retries,
    }
    logging_cfg = {
        "base_dir": args.logs_dir,
        "console_level": args.console_level,
        "file_level": args.file_level,
    }
    out: Dict[str, Any] = {
        "iam": {k: v for k, v in iam.items() if v not in ("", None)},
        "logging": {k: v for k, v in logging_cfg.items() if v},
    }
    if args.dry_run:
        out["app"] = {"dry_run": True}
    return out


def _sync_cmd(args: argparse.Namespace) -> int:
    kwargs: Dict[str, Any] = {"files": (args.config,)} if args.config else {}
    cfg = load_config(_cli_overrides(args), **kwargs)

    logger = build_logger(
        run_id=cfg.run_id,
        action="sync",
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"system": cfg.iam.system_id},
    )
    logger.info("Starting iamsync sync (dry_run=%s)", cfg.app.dry_run)

    cancel = threading.Event()
    previous: Dict[int, Any] = {}
    try:
        tasks = _read_tasks(args.tasks)
        if args.only:
            tasks = [t for t in tasks if t.name in set(args.only)]
        logger.info("Loaded %d tasks from %s", len(tasks), args.tasks)

        previous = _install_cancel_handlers(cancel)
        view = _build_view(cfg, cancel, logger)
        counts = {k: 0 for k in _SUMMARY_KEYS}
        for task in tasks:
            if cancel.is_set():
                logger.warning("Cancelled, stopping before task %s", task.name)
                counts["FAILED"] += 1
                break
            result: Optional[SyncResult] = None
            try:
                result = _run_task(TaskEntry(view, logger=task_logger(logger, task.name)), task)
            except IAMCancelled:
                logger.warning("Cancelled during task %s, stopping", task.name)
                counts["FAILED"] += 1
                break
            except RemoteListError as e:
                logger.error("task: %s failed: %s", task.name, e)
            if isinstance(result, NormalizationError):
                logger.error("task: %s normalization error (%s): %s", task.name, result.kind.value, result.message)
            _count(counts, result)

        summary = _summarize_counts(counts)
        logger.info("Sync summary: %s", summary)
        print(summary)
        return 2 if counts["FAILED"] else 0
    finally:
        _restore_handlers(previous)
        shutdown_logger(logger)


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.cmd == "sync":
        try:
            return _sync_cmd(args)
        except (ConfigError, FileNotFoundError) as e:
            print(f"iamsync: {e}", file=sys.stderr)
            return 2

    parser.error("Unknown command")  # pragma: no cover
    return 2  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
