"""
Dry-run normalizer: projects CMDB resources into the canonical form IAM stores.

Rules:
- Only CMDB types present in the type mapping are registered with IAM;
  other types yield no canonical resource (0 per input).
- Scope is ("biz", <business id>) for business resources, else
  ("system", <system id>).
- Path = mapped parent layers, then the resource itself. Each id is the
  mapping's id_prefix followed by the CMDB instance id.
- Side-effect free; never talks to IAM.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from .errors import NormalizationFailed
from .models import (
    CanonicalResource,
    DesiredResource,
    DryRunResult,
    ResourceTypeAndID,
    Scope,
    SearchCondition,
)

SCOPE_BUSINESS = "biz"
SCOPE_SYSTEM = "system"


@dataclass(frozen=True)
class TypeSpec:
    """How one CMDB type maps to an IAM resource type."""
    iam_type: str
    id_prefix: str = ""

    @classmethod
    def from_cfg(cls, raw: Any) -> "TypeSpec":
        if isinstance(raw, str):
            return cls(iam_type=raw)
        if isinstance(raw, Mapping) and raw.get("iam_type"):
            return cls(iam_type=str(raw["iam_type"]), id_prefix=str(raw.get("id_prefix") or ""))
        raise NormalizationFailed(f"Invalid resource type mapping: {raw!r}")


DEFAULT_TYPES: Dict[str, TypeSpec] = {
    "business": TypeSpec("biz"),
    "set": TypeSpec("set"),
    "module": TypeSpec("module"),
    "host": TypeSpec("host"),
    "process": TypeSpec("process"),
    "plat": TypeSpec("plat"),
}


class DryRunNormalizer:
    def __init__(self, system_id: str, types: Optional[Mapping[str, Any]] = None) -> None:
        self.system_id = system_id
        if types is None:
            self.types: Dict[str, TypeSpec] = dict(DEFAULT_TYPES)
        else:
            self.types = {str(k): TypeSpec.from_cfg(v) for k, v in types.items()}

    def _scope(self, res: DesiredResource) -> Scope:
        if res.business_id > 0:
            return Scope(SCOPE_BUSINESS, str(res.business_id))
        return Scope(SCOPE_SYSTEM, self.system_id)

    def _pair(self, cmdb_type: str, instance_id: str) -> ResourceTypeAndID:
        spec = self.types.get(cmdb_type)
        if spec is None:
            raise NormalizationFailed(f"No IAM mapping for layer type '{cmdb_type}'")
        if not instance_id:
            raise NormalizationFailed(f"Empty instance id for layer type '{cmdb_type}'")
        return ResourceTypeAndID(spec.iam_type, f"{spec.id_prefix}{instance_id}")

    def canonical(self, res: DesiredResource) -> Optional[CanonicalResource]:
        """Return the canonical form, or None when the type is not registered with IAM."""
        spec = self.types.get(res.type)
        if spec is None:
            return None
        if not res.instance_id:
            raise NormalizationFailed(f"Resource of type '{res.type}' has no instance id")
        path = [self._pair(p.type, p.instance_id) for p in res.layers]
        path.append(ResourceTypeAndID(spec.iam_type, f"{spec.id_prefix}{res.instance_id}"))
        return CanonicalResource(
            scope=self._scope(res),
            resource_type=spec.iam_type,
            path=tuple(path),
            name=res.name,
        )

    def dry_run(self, *resources: DesiredResource) -> DryRunResult:
        out: List[CanonicalResource] = []
        for res in resources:
            c = self.canonical(res)
            if c is not None:
                out.append(c)
        return DryRunResult.of(out)

    def search_condition(self, attribute: DesiredResource) -> SearchCondition:
        """Query matching every IAM resource of the attribute's type under its parents."""
        spec = self.types.get(attribute.type)
        if spec is None:
            raise NormalizationFailed(f"No IAM mapping for type '{attribute.type}'")
        return SearchCondition(
            scope=self._scope(attribute),
            resource_type=spec.iam_type,
            parents=tuple(self._pair(p.type, p.instance_id) for p in attribute.layers),
        )
