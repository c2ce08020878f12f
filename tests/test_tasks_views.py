import pytest

from iamsync.core.errors import IAMCancelled, IAMError, RemoteListError
from iamsync.core.iam_view import HttpIAMView, PlanningIAMView
from iamsync.core.models import DesiredResource, ParentItem, ResourceLayer, Scope, SearchCondition
from iamsync.core.normalizer import DryRunNormalizer
from iamsync.core.reconciler import Ok
from iamsync.core.tasks import TaskEntry


def _host(iid):
    return DesiredResource(type="host", instance_id=str(iid), business_id=1, layers=(ParentItem("business", "1"),))


REMOTE = [
    (ResourceLayer("biz", "1"), ResourceLayer("host", "1")),
    (ResourceLayer("biz", "1"), ResourceLayer("host", "2")),
]


def test_diff_and_sync_lists_by_attribute(fake_view_cls):
    view = fake_view_cls(remote=REMOTE)
    attr = DesiredResource(type="host", business_id=1)
    res = TaskEntry(view).diff_and_sync("hosts", attr, "", [_host(1), _host(3)])

    assert view.calls[0] == ("list_by_attribute", attr)
    assert res == Ok(registered=1, deregistered=1)


def test_diff_and_sync_instances_passes_header(fake_view_cls):
    view = fake_view_cls(remote=REMOTE)
    cond = SearchCondition(Scope("biz", "1"), "host")
    header = {"X-Bk-Uin": "alice"}
    res = TaskEntry(view).diff_and_sync_instances(header, "hosts", cond, "", [_host(1), _host(2)], skip_deregister=True)

    assert view.calls[0] == ("list_by_condition", header, cond)
    assert res == Ok(deregister_skipped="skip_deregister")


def test_diff_and_sync_core_uses_given_remote(fake_view_cls):
    view = fake_view_cls()
    res = TaskEntry(view).diff_and_sync_core("hosts", REMOTE, "", [_host(1)])

    assert not view.ops("list_by_attribute") and not view.ops("list_by_condition")
    assert view.ops("deregister")[0][2] == (REMOTE[1],)
    assert res.ok


def test_list_failure_is_raised(fake_view_cls):
    view = fake_view_cls(list_error=IAMError(status=503, url="/search", message="unavailable"))
    with pytest.raises(RemoteListError):
        TaskEntry(view).diff_and_sync("hosts", DesiredResource(type="host"), "", [_host(1)])
    assert view.ops("register") == [] and view.ops("deregister") == []


def test_cancel_during_list_propagates(fake_view_cls):
    view = fake_view_cls(list_error=IAMCancelled())
    with pytest.raises(IAMCancelled):
        TaskEntry(view).diff_and_sync_instances(None, "hosts", SearchCondition(Scope(), "host"), "", [_host(1)])


def test_planning_view_records_writes_only(fake_view_cls):
    inner = fake_view_cls(remote=REMOTE)
    plan = PlanningIAMView(inner)
    res = TaskEntry(plan).diff_and_sync("hosts", DesiredResource(type="host", business_id=1), "", [_host(1), _host(3)])

    assert res == Ok(registered=1, deregistered=1)
    assert [c.op for c in plan.planned] == ["register", "deregister"]
    assert plan.planned[1].scope == Scope("biz", "1")
    assert inner.ops("register") == [] and inner.ops("deregister") == []


def test_http_view_without_client_raises_on_remote_calls():
    view = HttpIAMView(None, DryRunNormalizer("bk_cmdb"), id_correlated_types=["sys_system_base"])
    assert view.is_related_to_resource_id("sys_system_base")
    assert not view.is_related_to_resource_id("host")
    assert len(view.dry_run(_host(1)).resources) == 1
    with pytest.raises(IAMError):
        view.list_by_attribute(DesiredResource(type="host", business_id=1))
    with pytest.raises(IAMError):
        view.register(_host(1))


def test_http_view_register_skips_unregistrable():
    # No client needed: nothing registrable means no HTTP call
    view = HttpIAMView(None, DryRunNormalizer("bk_cmdb"))
    view.register(DesiredResource(type="switch", instance_id="5"))
