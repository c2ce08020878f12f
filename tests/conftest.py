from typing import Any, Dict, List, Optional

import pytest

from iamsync.core.iam_view import IAMView
from iamsync.core.models import BackendResource, ResourceLayer
from iamsync.core.normalizer import DryRunNormalizer


class FakeIAMView(IAMView):
    """In-memory IAM view recording every call.

    - The first dry_run call is the batch one; `batch_error` is raised there.
    - `item_results` overrides per-item dry runs by instance id (value or exception).
    - `truthful=True` makes register/deregister mutate `remote`.
    """

    def __init__(
        self,
        remote: Optional[List[BackendResource]] = None,
        *,
        normalizer: Optional[DryRunNormalizer] = None,
        id_correlated: tuple = (),
        batch_error: Optional[Exception] = None,
        batch_result: Any = "real",
        item_results: Optional[Dict[str, Any]] = None,
        register_error: Optional[Exception] = None,
        deregister_error: Optional[Exception] = None,
        list_error: Optional[Exception] = None,
        truthful: bool = False,
    ) -> None:
        self.remote = list(remote or [])
        self.normalizer = normalizer or DryRunNormalizer("bk_cmdb")
        self.id_correlated = set(id_correlated)
        self.batch_error = batch_error
        self.batch_result = batch_result
        self.item_results = item_results or {}
        self.register_error = register_error
        self.deregister_error = deregister_error
        self.list_error = list_error
        self.truthful = truthful
        self.calls: List[tuple] = []
        self._dry_runs = 0

    def list_by_attribute(self, attribute):
        self.calls.append(("list_by_attribute", attribute))
        if self.list_error:
            raise self.list_error
        return list(self.remote)

    def list_by_condition(self, header, condition):
        self.calls.append(("list_by_condition", header, condition))
        if self.list_error:
            raise self.list_error
        return list(self.remote)

    def dry_run(self, *desired):
        first = self._dry_runs == 0
        self._dry_runs += 1
        if first:
            if self.batch_error:
                raise self.batch_error
            if self.batch_result != "real":
                return self.batch_result
        elif len(desired) == 1 and desired[0].instance_id in self.item_results:
            out = self.item_results[desired[0].instance_id]
            if isinstance(out, Exception):
                raise out
            return out
        return self.normalizer.dry_run(*desired)

    def register(self, *desired):
        self.calls.append(("register", desired))
        if self.register_error:
            raise self.register_error
        if self.truthful:
            for c in self.normalizer.dry_run(*desired).resources:
                self.remote.append(tuple(ResourceLayer(p.type, p.id) for p in c.path))

    def deregister(self, scope, *backend):
        self.calls.append(("deregister", scope, backend))
        if self.deregister_error:
            raise self.deregister_error
        if self.truthful:
            self.remote = [r for r in self.remote if r not in backend]

    def is_related_to_resource_id(self, resource_type):
        return resource_type in self.id_correlated

    def ops(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture()
def fake_view_cls():
    return FakeIAMView
