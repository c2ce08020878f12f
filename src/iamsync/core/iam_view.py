"""
IAM capability surface consumed by the reconciler.

- IAMView: abstract capability (list, dry-run, register, deregister, id-correlation).
- HttpIAMView: backed by IAMClient + DryRunNormalizer.
- PlanningIAMView: read-through wrapper that records writes instead of issuing them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Tuple

from .errors import IAMError
from .iam_client import IAMClient
from .models import BackendResource, DesiredResource, DryRunResult, Scope, SearchCondition
from .normalizer import DryRunNormalizer

DEFAULT_ID_CORRELATED_TYPES: Tuple[str, ...] = ("sys_system_base", "biz_custom_query")


class IAMView:
    """Capability set the reconciler depends on. Every call may raise IAMError."""

    def list_by_attribute(self, attribute: DesiredResource) -> List[BackendResource]:
        raise NotImplementedError

    def list_by_condition(self, header: Optional[Mapping[str, str]], condition: SearchCondition) -> List[BackendResource]:
        raise NotImplementedError

    def dry_run(self, *desired: DesiredResource) -> Optional[DryRunResult]:
        raise NotImplementedError

    def register(self, *desired: DesiredResource) -> None:
        raise NotImplementedError

    def deregister(self, scope: Scope, *backend: BackendResource) -> None:
        raise NotImplementedError

    def is_related_to_resource_id(self, resource_type: str) -> bool:
        raise NotImplementedError


class HttpIAMView(IAMView):
    """IAM view over HTTP. Without a client (offline dry runs) every remote call raises IAMError."""

    def __init__(
        self,
        client: Optional[IAMClient],
        normalizer: DryRunNormalizer,
        *,
        id_correlated_types: Iterable[str] = DEFAULT_ID_CORRELATED_TYPES,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.client = client
        self.normalizer = normalizer
        self.id_correlated_types = frozenset(id_correlated_types)
        self.log = logger or logging.getLogger("iamsync.view")

    def _client(self) -> IAMClient:
        if self.client is None:
            raise IAMError(status=0, url="", message="no IAM endpoint configured")
        return self.client

    def list_by_attribute(self, attribute: DesiredResource) -> List[BackendResource]:
        condition = self.normalizer.search_condition(attribute)
        header = {"X-Bk-Supplier-Account": attribute.supplier_account} if attribute.supplier_account else None
        return self._client().search_resources(condition, header=header)

    def list_by_condition(self, header: Optional[Mapping[str, str]], condition: SearchCondition) -> List[BackendResource]:
        return self._client().search_resources(condition, header=header)

    def dry_run(self, *desired: DesiredResource) -> Optional[DryRunResult]:
        return self.normalizer.dry_run(*desired)

    def register(self, *desired: DesiredResource) -> None:
        entities = self.normalizer.dry_run(*desired).resources
        if not entities:
            self.log.debug("Nothing registrable among %d resources", len(desired))
            return
        self._client().batch_register(entities)

    def deregister(self, scope: Scope, *backend: BackendResource) -> None:
        self._client().batch_deregister(scope, backend)

    def is_related_to_resource_id(self, resource_type: str) -> bool:
        return resource_type in self.id_correlated_types


@dataclass(frozen=True)
class PlannedCall:
    op: str
    scope: Optional[Scope]
    items: Tuple[Any, ...]


class PlanningIAMView(IAMView):
    """Delegates reads to `inner`; register/deregister are only recorded."""

    def __init__(self, inner: IAMView, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.inner = inner
        self.planned: List[PlannedCall] = []
        self.log = logger or logging.getLogger("iamsync.plan")

    def list_by_attribute(self, attribute: DesiredResource) -> List[BackendResource]:
        return self.inner.list_by_attribute(attribute)

    def list_by_condition(self, header: Optional[Mapping[str, str]], condition: SearchCondition) -> List[BackendResource]:
        return self.inner.list_by_condition(header, condition)

    def dry_run(self, *desired: DesiredResource) -> Optional[DryRunResult]:
        return self.inner.dry_run(*desired)

    def register(self, *desired: DesiredResource) -> None:
        self.planned.append(PlannedCall("register", None, tuple(desired)))
        self.log.info("[DRY RUN] would register %d resources", len(desired))

    def deregister(self, scope: Scope, *backend: BackendResource) -> None:
        self.planned.append(PlannedCall("deregister", scope, tuple(backend)))
        self.log.info("[DRY RUN] would deregister %d resources in %s:%s", len(backend), scope.scope_type, scope.scope_id)

    def is_related_to_resource_id(self, resource_type: str) -> bool:
        return self.inner.is_related_to_resource_id(resource_type)
