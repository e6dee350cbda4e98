"""Task identity resolution over pre-PR (branch) and PR aliases.

A pre-PR alias, when present, is always the canonical task: linking a PR
attaches the PR alias to it, never the reverse.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from datetime import datetime

from ttt.models import (
    ALIAS_TYPE_PR,
    ALIAS_TYPE_PREPR,
    Task,
    TaskAlias,
    normalize_branch,
    normalize_repo,
    pr_alias_value,
    prepr_alias_value,
    utcnow,
)
from ttt.store import Store

log = logging.getLogger(__name__)

LINK_STATUS_ALREADY_LINKED = "already_linked"
LINK_STATUS_LINKED_EXISTING_PREPR = "linked_existing_prepr"
LINK_STATUS_CREATED_FROM_PR = "created_from_pr"


def _unix_nanos(ts: datetime) -> int:
    whole = int(ts.timestamp())
    return whole * 1_000_000_000 + ts.microsecond * 1_000


class TaskService:
    """Creates and links task identities against a :class:`~ttt.store.Store`.

    Task ids are ``task_<unix-nanos>_<seq>``: the per-instance sequence keeps
    ids unique within a process even when the clock does not move, and the
    clock component keeps restarts from colliding in practice. The store's
    primary key remains the final arbiter.
    """

    def __init__(self, store: Store, *, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock
        self._sequence = itertools.count(1)
        self._sequence_lock = threading.Lock()

    def _next_task_id(self, now: datetime) -> str:
        with self._sequence_lock:
            seq = next(self._sequence)
        return f"task_{_unix_nanos(now)}_{seq}"

    def _new_task(self, now: datetime) -> Task:
        return Task(task_id=self._next_task_id(now), created_at=now, updated_at=now)

    def get_or_create_prepr_task(self, repo: str, branch: str) -> tuple[Task, bool]:
        """Return ``(task, created)`` for the pre-PR alias of ``repo``/``branch``."""
        repo = normalize_repo(repo)
        branch = normalize_branch(branch)
        alias_value = prepr_alias_value(repo, branch)

        task, found = self.store.get_task_by_alias(alias_value)
        if found and task is not None:
            return task, False

        now = self._clock()
        task = self._new_task(now)
        alias = TaskAlias(
            value=alias_value,
            task_id=task.task_id,
            alias_type=ALIAS_TYPE_PREPR,
            repo=repo,
            branch=branch,
            created_at=now,
            updated_at=now,
        )
        self.store.create_task_with_alias(task, alias)
        log.debug("Created task %s for %s", task.task_id, alias_value)
        return task, True

    def link_pr_to_prepr(self, repo: str, branch: str, pr_number: int) -> tuple[Task, str]:
        """Bind the PR alias and return ``(task, link_status)``.

        - PR alias already resolves: ``already_linked``, nothing is written.
        - Pre-PR alias resolves: the PR alias joins that task,
          ``linked_existing_prepr``.
        - Neither: a new task owns only the PR alias, ``created_from_pr``.
        """
        repo = normalize_repo(repo)
        branch = normalize_branch(branch)

        pr_value = pr_alias_value(repo, pr_number)
        pr_task, pr_found = self.store.get_task_by_alias(pr_value)
        if pr_found and pr_task is not None:
            return pr_task, LINK_STATUS_ALREADY_LINKED

        pre_task, pre_found = self.store.get_task_by_alias(prepr_alias_value(repo, branch))

        now = self._clock()
        if pre_found and pre_task is not None:
            target = pre_task
            status = LINK_STATUS_LINKED_EXISTING_PREPR
        else:
            target = self._new_task(now)
            status = LINK_STATUS_CREATED_FROM_PR

        pr_alias = TaskAlias(
            value=pr_value,
            task_id=target.task_id,
            alias_type=ALIAS_TYPE_PR,
            repo=repo,
            pr_number=pr_number,
            created_at=now,
            updated_at=now,
        )
        if status == LINK_STATUS_CREATED_FROM_PR:
            self.store.create_task_with_alias(target, pr_alias)
        else:
            self.store.upsert_alias(pr_alias)
        log.debug("Linked %s to %s (%s)", pr_value, target.task_id, status)
        return target, status

    def get_task_by_prepr(self, repo: str, branch: str) -> tuple[Task | None, bool]:
        return self.store.get_task_by_alias(prepr_alias_value(repo, branch))

    def get_task_by_pr(self, repo: str, pr_number: int) -> tuple[Task | None, bool]:
        return self.store.get_task_by_alias(pr_alias_value(repo, pr_number))
