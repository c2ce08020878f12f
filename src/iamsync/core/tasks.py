"""
Task entry points invoked by the task runner.

The three variants differ only in how the remote set is obtained:
  - diff_and_sync:           list by attribute
  - diff_and_sync_instances: list by raw search condition (caller headers)
  - diff_and_sync_core:      remote list already computed by the caller
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Sequence

from .errors import IAMCancelled, IAMSyncError, RemoteListError
from .iam_view import IAMView
from .models import BackendResource, DesiredResource, SearchCondition
from .reconciler import Reconciler, SyncResult


class TaskEntry:
    def __init__(self, view: IAMView, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.view = view
        self.log = logger or logging.getLogger("iamsync.tasks")
        self.reconciler = Reconciler(view, logger=self.log)

    def diff_and_sync(
        self,
        task_name: str,
        attribute: DesiredResource,
        iam_id_prefix: str,
        desired: Sequence[DesiredResource],
        skip_deregister: bool = False,
    ) -> SyncResult:
        try:
            remote = self.view.list_by_attribute(attribute)
        except IAMCancelled:
            raise
        except IAMSyncError as e:
            self.log.error("task: %s, list resources from iam failed: %s", task_name, e)
            raise RemoteListError(f"get iam resources failed: {e}") from e
        return self.diff_and_sync_core(task_name, remote, iam_id_prefix, desired, skip_deregister)

    def diff_and_sync_instances(
        self,
        header: Optional[Mapping[str, str]],
        task_name: str,
        search_condition: SearchCondition,
        iam_id_prefix: str,
        desired: Sequence[DesiredResource],
        skip_deregister: bool = False,
    ) -> SyncResult:
        try:
            remote = self.view.list_by_condition(header, search_condition)
        except IAMCancelled:
            raise
        except IAMSyncError as e:
            self.log.error("task: %s, list resources from iam failed: %s", task_name, e)
            raise RemoteListError(f"get iam resources failed: {e}") from e
        return self.diff_and_sync_core(task_name, remote, iam_id_prefix, desired, skip_deregister)

    def diff_and_sync_core(
        self,
        task_name: str,
        remote: Iterable[BackendResource],
        iam_id_prefix: str,
        desired: Sequence[DesiredResource],
        skip_deregister: bool = False,
    ) -> SyncResult:
        result = self.reconciler.reconcile(task_name, remote, iam_id_prefix, desired, skip_deregister)
        self.log.info("task: %s, result: %s", task_name, result)
        return result
