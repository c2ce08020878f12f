"""
Reconciler: diff CMDB desired resources against IAM and apply the difference.

Lifecycle (one invocation, strictly in this order):
  filter remote -> batch dry-run (gates) -> index remote by key
  -> per-item dry-run & classify -> register missing -> deregister orphans

Safety policy:
- A failed batch dry-run, an empty canonical batch, or an id-correlated
  resource type end the run with no side effects.
- Deregistration is skipped on `skip_deregister` and on an empty desired set.
- At most one register call and one deregister call per invocation.

Outcomes are returned as a discriminated union (Ok | SafetyGate | NormalizationError),
never raised. Only cancellation propagates as IAMCancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Dict, Iterable, List, Optional, Sequence, Union

from .errors import IAMCancelled, IAMSyncError
from .iam_view import IAMView
from .keys import key_from_backend, key_from_canonical
from .models import BackendResource, DesiredResource, Scope


class GateReason(str, Enum):
    BATCH_DRY_RUN_FAILED = "batch_dry_run_failed"
    NO_CANONICAL_RESOURCES = "no_canonical_resources"
    ID_CORRELATED_TYPE = "id_correlated_type"


class NormalizationKind(str, Enum):
    UNEXPECTED_NIL = "unexpected_nil"
    ITEM_FAILED = "item_failed"


@dataclass(frozen=True)
class Ok:
    """The run completed; register/deregister failures are reported, not raised."""
    ok: ClassVar[bool] = True
    registered: int = 0
    deregistered: int = 0
    skipped: int = 0
    register_error: str = ""
    deregister_error: str = ""
    deregister_skipped: str = ""


@dataclass(frozen=True)
class SafetyGate:
    """The run stopped early on purpose; nothing was changed in IAM."""
    ok: ClassVar[bool] = True
    reason: GateReason
    detail: str = ""


@dataclass(frozen=True)
class NormalizationError:
    """A normalization surprise that must be surfaced to the caller."""
    ok: ClassVar[bool] = False
    kind: NormalizationKind
    message: str = ""


SyncResult = Union[Ok, SafetyGate, NormalizationError]


def filter_remote(remote: Iterable[BackendResource], iam_id_prefix: str) -> List[BackendResource]:
    """Keep non-empty resources whose leaf id starts with `iam_id_prefix`."""
    return [r for r in remote if r and r[-1].id.startswith(iam_id_prefix)]


class Reconciler:
    """Existence sync of one (scope, category) pair. Holds no state between runs."""

    def __init__(self, view: IAMView, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.view = view
        self.log = logger or logging.getLogger(__name__)

    def reconcile(
        self,
        task_name: str,
        remote: Iterable[BackendResource],
        iam_id_prefix: str,
        desired: Sequence[DesiredResource],
        skip_deregister: bool = False,
    ) -> SyncResult:
        remote = filter_remote(remote, iam_id_prefix)
        self.log.debug("task: %s, %d remote resources match prefix '%s'", task_name, len(remote), iam_id_prefix)

        try:
            batch = self.view.dry_run(*desired)
        except IAMCancelled:
            raise
        except IAMSyncError as e:
            self.log.error("task: %s, batch dry run failed, skip sync: %s", task_name, e)
            return SafetyGate(GateReason.BATCH_DRY_RUN_FAILED, str(e))
        if batch is None:
            self.log.error("task: %s, batch dry run succeeded but result is nil", task_name)
            return NormalizationError(NormalizationKind.UNEXPECTED_NIL, "dry run result is unexpected nil")
        if not batch.resources:
            self.log.debug("task: %s, no cmdb resource found, skip sync for safety", task_name)
            return SafetyGate(GateReason.NO_CANONICAL_RESOURCES)

        resource_type = batch.resources[0].resource_type
        if self.view.is_related_to_resource_id(resource_type):
            self.log.debug("task: %s, skip sync for id-correlated resource type %s", task_name, resource_type)
            return SafetyGate(GateReason.ID_CORRELATED_TYPE, resource_type)

        hits: Dict[str, int] = {}
        by_key: Dict[str, BackendResource] = {}
        for r in remote:
            k = key_from_backend(r)
            hits[k] = 0
            by_key[k] = r

        scope = Scope()
        to_register: List[DesiredResource] = []
        skipped = 0
        for res in desired:
            try:
                target = self.view.dry_run(res)
            except IAMCancelled:
                raise
            except IAMSyncError as e:
                self.log.error("task: %s, dry run of %s:%s failed: %s", task_name, res.type, res.instance_id, e)
                return NormalizationError(NormalizationKind.ITEM_FAILED, str(e))
            if target is None or len(target.resources) != 1:
                skipped += 1
                self.log.error(
                    "task: %s, skip %s:%s, dry run returned %s resources",
                    task_name, res.type, res.instance_id, 0 if target is None else len(target.resources),
                )
                continue
            canonical = target.resources[0]
            scope = canonical.scope
            k = key_from_canonical(canonical)
            if k in hits:
                hits[k] += 1
            else:
                to_register.append(res)

        self.log.debug("task: %s, hits: %s, to register: %d", task_name, hits, len(to_register))

        registered = 0
        register_error = ""
        if to_register:
            self.log.info("task: %s, register %d resources that only exist in cmdb", task_name, len(to_register))
            try:
                self.view.register(*to_register)
                registered = len(to_register)
            except IAMCancelled as e:
                self.log.warning("task: %s, cancelled during register, skip deregister: %s", task_name, e)
                return Ok(skipped=skipped, register_error=str(e), deregister_skipped="cancelled")
            except IAMSyncError as e:
                register_error = str(e)
                self.log.error("task: %s, register resources failed: %s", task_name, e)

        if skip_deregister:
            return Ok(registered, 0, skipped, register_error, deregister_skipped="skip_deregister")
        if not desired:
            self.log.info("task: %s, cmdb resource not found of current category, skip deregister for safety", task_name)
            return Ok(registered, 0, skipped, register_error, deregister_skipped="empty_desired")

        orphans = [by_key[k] for k, n in hits.items() if n == 0]
        if not orphans:
            return Ok(registered, 0, skipped, register_error)

        self.log.info("task: %s, deregister %d resources that only exist in iam", task_name, len(orphans))
        self.log.debug("task: %s, orphans: %s", task_name, [key_from_backend(o) for o in orphans])
        try:
            self.view.deregister(scope, *orphans)
        except IAMSyncError as e:
            self.log.error("task: %s, deregister resources failed: %s", task_name, e)
            return Ok(registered, 0, skipped, register_error, deregister_error=str(e))
        return Ok(registered, len(orphans), skipped, register_error)
