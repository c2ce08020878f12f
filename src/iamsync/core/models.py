"""
Data model for CMDB -> IAM reconciliation.

- DesiredResource: what the CMDB asserts should exist (read-only to the core).
- BackendResource: IAM's layered representation; the last layer is the leaf.
- CanonicalResource: IAM-shaped projection of a DesiredResource (dry run).
- SearchCondition: query used to list resources from IAM.

All types are immutable. `from_dict` / `to_dict` helpers speak the JSON
shape of the IAM resource API and of the tasks file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Tuple


@dataclass(frozen=True)
class Scope:
    scope_type: str = ""
    scope_id: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"scope_type": self.scope_type, "scope_id": self.scope_id}


@dataclass(frozen=True)
class ResourceLayer:
    """One (type, id, name) element of an IAM layer sequence."""
    type: str
    id: str
    name: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ResourceLayer":
        return cls(
            type=str(raw.get("resource_type", "")),
            id=str(raw.get("resource_id", "")),
            name=str(raw.get("resource_name") or ""),
        )


BackendResource = Tuple[ResourceLayer, ...]


def backend_resource(layers: Iterable[Any]) -> BackendResource:
    """Build a BackendResource from layers or their API dicts."""
    return tuple(l if isinstance(l, ResourceLayer) else ResourceLayer.from_dict(l) for l in layers)


@dataclass(frozen=True)
class ParentItem:
    """A container of a desired resource, e.g. the set a module lives in."""
    type: str
    instance_id: str
    name: str = ""

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ParentItem":
        return cls(
            type=str(raw.get("type", "")),
            instance_id=str(raw.get("instance_id", "")),
            name=str(raw.get("name") or ""),
        )


@dataclass(frozen=True)
class DesiredResource:
    """A resource the CMDB asserts should exist in IAM."""
    type: str
    instance_id: str = ""
    name: str = ""
    business_id: int = 0
    supplier_account: str = ""
    layers: Tuple[ParentItem, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DesiredResource":
        iid = raw.get("instance_id")
        return cls(
            type=str(raw.get("type", "")),
            instance_id="" if iid is None else str(iid),
            name=str(raw.get("name") or ""),
            business_id=int(raw.get("business_id") or 0),
            supplier_account=str(raw.get("supplier_account") or ""),
            layers=tuple(ParentItem.from_dict(l) for l in (raw.get("layers") or [])),
        )


@dataclass(frozen=True)
class ResourceTypeAndID:
    type: str
    id: str

    def to_dict(self) -> Dict[str, str]:
        return {"resource_type": self.type, "resource_id": self.id}


@dataclass(frozen=True)
class CanonicalResource:
    """The form IAM stores for a desired resource."""
    scope: Scope
    resource_type: str
    path: Tuple[ResourceTypeAndID, ...]
    name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.scope.to_dict(),
            "resource_type": self.resource_type,
            "resource_id": [p.to_dict() for p in self.path],
            "resource_name": self.name,
        }


@dataclass(frozen=True)
class DryRunResult:
    resource_type: str = ""
    resources: List[CanonicalResource] = field(default_factory=list)

    @classmethod
    def of(cls, resources: List[CanonicalResource]) -> "DryRunResult":
        return cls(resource_type=resources[0].resource_type if resources else "", resources=resources)


@dataclass(frozen=True)
class SearchCondition:
    scope: Scope
    resource_type: str
    parents: Tuple[ResourceTypeAndID, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "SearchCondition":
        return cls(
            scope=Scope(str(raw.get("scope_type", "")), str(raw.get("scope_id", ""))),
            resource_type=str(raw.get("resource_type", "")),
            parents=tuple(
                ResourceTypeAndID(str(p.get("resource_type", "")), str(p.get("resource_id", "")))
                for p in (raw.get("parent_resources") or [])
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.scope.to_dict(),
            "resource_type": self.resource_type,
            "parent_resources": [p.to_dict() for p in self.parents],
        }
