"""
Canonical keys for layered resources.

Format: ``type1:id1-type2:id2-...-typeN:idN`` (no escaping). A BackendResource
and a CanonicalResource denoting the same resource at the same path yield
byte-equal keys.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from .models import BackendResource, CanonicalResource

KEY_SEP = "-"
PAIR_SEP = ":"


def _join(pairs: Iterable[Tuple[str, str]]) -> str:
    return KEY_SEP.join(f"{t}{PAIR_SEP}{i}" for t, i in pairs)


def key_from_backend(resource: BackendResource) -> str:
    return _join((layer.type, layer.id) for layer in resource)


def key_from_canonical(resource: CanonicalResource) -> str:
    return _join((p.type, p.id) for p in resource.path)
