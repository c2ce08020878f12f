import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

import pytest

from iamsync.core.errors import IAMCancelled, IAMError
from iamsync.core.iam_client import IAMClient
from iamsync.core.iam_view import HttpIAMView
from iamsync.core.models import (
    CanonicalResource,
    DesiredResource,
    ParentItem,
    ResourceLayer,
    ResourceTypeAndID,
    Scope,
    SearchCondition,
)
from iamsync.core.normalizer import DryRunNormalizer

BASE = "/bkiam/api/v1/perm/systems/bk_cmdb/resources"


def _layers(i):
    return [
        {"resource_type": "biz", "resource_id": "1", "resource_name": "blueking"},
        {"resource_type": "host", "resource_id": str(i), "resource_name": f"h{i}"},
    ]


class _IAMHandler(BaseHTTPRequestHandler):
    calls = {}
    bodies = {}
    headers_seen = {}
    state = [_layers(1), _layers(2), _layers(3)]

    protocol_version = "HTTP/1.1"

    @classmethod
    def reset(cls):
        cls.calls = {"search": 0, "register": 0, "delete": 0, "flaky": 0, "bad": 0, "refused": 0}
        cls.bodies = {}
        cls.headers_seen = {}

    def _send_json(self, status, obj):
        raw = json.dumps(obj).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def _ok(self, data):
        self._send_json(200, {"result": True, "code": 0, "message": "success", "data": data})

    def _body(self):
        length = int(self.headers.get("Content-Length", "0"))
        return json.loads(self.rfile.read(length).decode("utf-8")) if length else {}

    def do_GET(self):  # noqa: N802
        path = urlparse(self.path).path
        if path == "/bad":
            _IAMHandler.calls["bad"] += 1
            self._send_json(400, {"error": "bad request"})
        elif path == "/refused":
            _IAMHandler.calls["refused"] += 1
            self._send_json(200, {"result": False, "code": 1306000, "message": "permission denied"})
        elif path == "/oddcode":
            self._send_json(200, {"result": True, "code": "not-a-number", "message": "", "data": None})
        else:
            self._send_json(404, {"error": "not found"})

    def do_POST(self):  # noqa: N802
        path = urlparse(self.path).path
        body = self._body()
        if path == BASE + "/search":
            _IAMHandler.calls["search"] += 1
            _IAMHandler.bodies.setdefault("search", []).append(body)
            _IAMHandler.headers_seen = dict(self.headers)
            start, limit = body["page"]["start"], body["page"]["limit"]
            page = _IAMHandler.state[start:start + limit]
            self._ok({"count": len(_IAMHandler.state), "info": [{"resource_id": r} for r in page]})
        elif path == BASE + "/batch-register":
            _IAMHandler.calls["register"] += 1
            _IAMHandler.bodies["register"] = body
            self._ok(None)
        elif path == "/flaky":
            _IAMHandler.calls["flaky"] += 1
            if _IAMHandler.calls["flaky"] < 3:
                self._send_json(500, {"error": "transient"})
            else:
                self._ok({"finally": True})
        else:
            self._send_json(404, {"error": "not found"})

    def do_DELETE(self):  # noqa: N802
        path = urlparse(self.path).path
        if path == BASE + "/batch-delete":
            _IAMHandler.calls["delete"] += 1
            _IAMHandler.bodies["delete"] = self._body()
            self._ok(None)
        else:
            self._send_json(404, {"error": "not found"})

    def log_message(self, fmt, *args):  # silence server logs during tests
        return


@pytest.fixture()
def iam_server():
    _IAMHandler.reset()
    server = ThreadingHTTPServer(("127.0.0.1", 0), _IAMHandler)
    host, port = server.server_address
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://{host}:{port}"
    server.shutdown()
    thread.join(timeout=1.0)


def _client(base_url, **kw):
    opts = {"system_id": "bk_cmdb", "app_code": "cmdb", "app_secret": "S3CR3T", "timeout_sec": 2, "retries": 1}
    opts.update(kw)
    return IAMClient(base_url, **opts)


def test_search_paginates_and_parses_layers(iam_server):
    client = _client(iam_server, page_size=2)
    cond = SearchCondition(Scope("biz", "1"), "host", (ResourceTypeAndID("biz", "1"),))
    out = client.search_resources(cond, header={"X-Bk-Uin": "alice"})

    assert _IAMHandler.calls["search"] == 2
    assert [b[-1].id for b in out] == ["1", "2", "3"]
    assert out[0][0] == ResourceLayer("biz", "1", "blueking")
    first = _IAMHandler.bodies["search"][0]
    assert first["scope_type"] == "biz" and first["resource_type"] == "host"
    assert first["parent_resources"] == [{"resource_type": "biz", "resource_id": "1"}]
    assert _IAMHandler.headers_seen.get("X-Bk-App-Code") == "cmdb"
    assert _IAMHandler.headers_seen.get("X-Bk-Uin") == "alice"


def test_batch_register_and_deregister_bodies(iam_server):
    client = _client(iam_server)
    entity = CanonicalResource(
        Scope("biz", "1"), "host", (ResourceTypeAndID("biz", "1"), ResourceTypeAndID("host", "7")), name="h7"
    )
    client.batch_register([entity])
    reg = _IAMHandler.bodies["register"]
    assert reg["creator_id"] == "admin"
    assert reg["resources"][0]["resource_id"][-1] == {"resource_type": "host", "resource_id": "7"}
    assert reg["resources"][0]["resource_name"] == "h7"

    orphan = (ResourceLayer("biz", "1"), ResourceLayer("host", "8"))
    client.batch_deregister(Scope("biz", "1"), [orphan])
    dereg = _IAMHandler.bodies["delete"]
    assert dereg["scope_id"] == "1"
    assert dereg["resources"] == [{
        "resource_type": "host",
        "resource_id": [{"resource_type": "biz", "resource_id": "1"}, {"resource_type": "host", "resource_id": "8"}],
    }]


def test_retry_on_5xx_then_success(iam_server):
    client = _client(iam_server, retries=3, backoff_base_sec=0.01)
    assert client.post_json("/flaky", {}) == {"finally": True}
    assert _IAMHandler.calls["flaky"] == 3


def test_no_retry_on_4xx(iam_server):
    client = _client(iam_server, retries=3, backoff_base_sec=0.01)
    with pytest.raises(IAMError) as ei:
        client.get_json("/bad")
    assert ei.value.status == 400
    assert _IAMHandler.calls["bad"] == 1


def test_envelope_failure_is_an_error(iam_server):
    client = _client(iam_server)
    with pytest.raises(IAMError) as ei:
        client.get_json("/refused")
    assert "1306000" in ei.value.message


def test_cancel_event_stops_calls(iam_server):
    cancel = threading.Event()
    client = _client(iam_server, cancel_event=cancel)
    cancel.set()
    with pytest.raises(IAMCancelled):
        client.search_resources(SearchCondition(Scope("biz", "1"), "host"))
    assert _IAMHandler.calls["search"] == 0


def test_unreachable_host_is_status_zero():
    client = _client("http://127.0.0.1:9", retries=0, timeout_sec=0.5)
    with pytest.raises(IAMError) as ei:
        client.get_json("/anything")
    assert ei.value.status == 0


def test_non_numeric_envelope_code_is_an_iam_error(iam_server):
    client = _client(iam_server)
    with pytest.raises(IAMError) as ei:
        client.get_json("/oddcode")
    assert "not-a-number" in ei.value.message


def test_list_by_attribute_sends_supplier_account(iam_server):
    view = HttpIAMView(_client(iam_server), DryRunNormalizer("bk_cmdb"))
    attr = DesiredResource(type="host", business_id=1, supplier_account="tenant-7",
                           layers=(ParentItem("business", "1"),))
    out = view.list_by_attribute(attr)

    assert len(out) == 3
    assert _IAMHandler.headers_seen.get("X-Bk-Supplier-Account") == "tenant-7"
    assert _IAMHandler.bodies["search"][0]["resource_type"] == "host"
