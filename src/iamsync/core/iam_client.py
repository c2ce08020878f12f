"""
IAM HTTP client.

- requests.Session with app-code/app-secret headers.
- JSON helpers: get_json, post_json, delete_json.
- Retries with exponential backoff on network errors and 5xx; no retry on 4xx.
- Response envelope check: {"result": bool, "code": int, "message": str, "data": ...}.
- Offset/limit pagination for resource search.
- Optional cancellation event: once set, the next call (or backoff) raises IAMCancelled.

Usage:
    client = IAMClient(base_url, system_id="bk_cmdb", app_code="cmdb", app_secret="...")
    layers = client.search_resources(condition)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from .errors import IAMCancelled, IAMError
from .models import BackendResource, CanonicalResource, Scope, SearchCondition, backend_resource

_RESOURCES_PATH = "/bkiam/api/v1/perm/systems/{system_id}/resources"


class IAMClient:
    """Minimal JSON client for the IAM resource registry."""

    def __init__(
        self,
        base_url: str,
        *,
        system_id: str,
        app_code: str,
        app_secret: str,
        user: str = "admin",
        supplier_account: str = "0",
        verify_tls: bool = True,
        timeout_sec: float = 30,
        retries: int = 3,
        backoff_base_sec: float = 0.05,
        page_size: int = 500,
        cancel_event: Optional[threading.Event] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.system_id = system_id
        self.user = user
        self.verify_tls = verify_tls
        self.timeout = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff = float(backoff_base_sec)
        self.page_size = max(1, int(page_size))
        self.cancel_event = cancel_event or threading.Event()
        self.log = logger or logging.getLogger("iamsync.http")

        self.session = requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
            "X-Bk-App-Code": app_code,
            "X-Bk-App-Secret": app_secret,
            "X-Bk-Uin": user,
            "X-Bk-Supplier-Account": supplier_account,
            "User-Agent": "iamsync/HTTPClient",
        })

    # ------------- Resource API -------------

    def _resources_path(self, suffix: str) -> str:
        return _RESOURCES_PATH.format(system_id=self.system_id) + suffix

    def search_resources(
        self,
        condition: SearchCondition,
        header: Optional[Mapping[str, str]] = None,
    ) -> List[BackendResource]:
        """Return every resource matching `condition` as layer sequences (all pages)."""
        path = self._resources_path("/search")
        out: List[BackendResource] = []
        start = 0
        while True:
            body = {**condition.to_dict(), "page": {"start": start, "limit": self.page_size}}
            data = self.post_json(path, body, headers=header)
            info = (data or {}).get("info") or []
            for item in info:
                out.append(backend_resource(item.get("resource_id") or []))
            count = (data or {}).get("count")
            start += len(info)
            if count is not None:
                if start >= int(count) or not info:
                    break
            elif len(info) < self.page_size:
                break
        self.log.debug("Searched %s resources: type=%s count=%d", self.system_id, condition.resource_type, len(out))
        return out

    def batch_register(self, entities: Sequence[CanonicalResource]) -> Any:
        body = {
            "creator_type": "user",
            "creator_id": self.user,
            "resources": [e.to_dict() for e in entities],
        }
        return self.post_json(self._resources_path("/batch-register"), body)

    def batch_deregister(self, scope: Scope, resources: Sequence[BackendResource]) -> Any:
        body = {
            **scope.to_dict(),
            "resources": [
                {
                    "resource_type": r[-1].type,
                    "resource_id": [{"resource_type": l.type, "resource_id": l.id} for l in r],
                }
                for r in resources
                if r
            ],
        }
        return self.delete_json(self._resources_path("/batch-delete"), body)

    # ------------- JSON helpers -------------

    def get_json(self, path: str, *, headers: Optional[Mapping[str, str]] = None) -> Any:
        return self._request_json("GET", path, headers=headers)

    def post_json(self, path: str, payload: Dict[str, Any], *, headers: Optional[Mapping[str, str]] = None) -> Any:
        return self._request_json("POST", path, payload, headers=headers)

    def delete_json(self, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        return self._request_json("DELETE", path, payload)

    # ------------- Internal -------------

    def _full_url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _check_cancel(self, url: str) -> None:
        if self.cancel_event.is_set():
            raise IAMCancelled(url=url)

    def _request_json(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        url = self._full_url(path)
        attempts = self.retries + 1
        for attempt in range(attempts):
            self._check_cancel(url)
            start = time.time()
            try:
                resp = self.session.request(
                    method,
                    url,
                    json=payload,
                    headers=dict(headers) if headers else None,
                    timeout=self.timeout,
                    verify=self.verify_tls,
                )
            except requests.RequestException as e:
                # Network/timeout. Retryable while attempts remain.
                err = IAMError(status=0, url=url, message=str(e))
                self._log_err(method, path, 0, err)
                if attempt < attempts - 1:
                    self._sleep_backoff(attempt, url)
                    continue
                raise err from e

            status = resp.status_code
            if status >= 400:
                err = IAMError(status=status, url=url, body=resp.text[:500], message=resp.reason or "")
                self._log_err(method, path, status, err)
                if 500 <= status < 600 and attempt < attempts - 1:
                    self._sleep_backoff(attempt, url)
                    continue
                raise err

            self.log.debug("%s %s -> %s in %.1fms", method, path, status, (time.time() - start) * 1000)
            return self._unwrap(resp, url)

        raise IAMError(status=0, url=url, message="retries exhausted")  # pragma: no cover

    @staticmethod
    def _unwrap(resp: requests.Response, url: str) -> Any:
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as e:
            raise IAMError(status=resp.status_code, url=url, body=resp.text[:500], message=f"invalid JSON: {e}")
        if not isinstance(body, dict) or "result" not in body:
            return body
        try:
            code = int(body.get("code") or 0)
        except (TypeError, ValueError):
            raise IAMError(
                status=resp.status_code, url=url, body=resp.text[:500], message=f"invalid code: {body.get('code')!r}"
            )
        if not body.get("result") or code != 0:
            raise IAMError(
                status=resp.status_code,
                url=url,
                body=resp.text[:500],
                message=f"code={body.get('code')} {body.get('message', '')}".strip(),
            )
        return body.get("data")

    def _sleep_backoff(self, attempt: int, url: str) -> None:
        # Event.wait returns True as soon as the event is set
        if self.cancel_event.wait(self.backoff * (2 ** attempt)):
            raise IAMCancelled(url=url)

    def _log_err(self, method: str, path: str, status: int, err: IAMError) -> None:
        self.log.warning("%s %s failed (status=%s): %s", method, path, status, err)
