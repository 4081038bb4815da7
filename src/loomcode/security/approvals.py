"""
Interactive approval channels.

The engine only needs an *approver*: an async callable that receives a
:class:`~loomcode.security.models.PermissionRequest` and returns an
:class:`~loomcode.security.models.ApprovalOutcome`.  Two are provided:

* :class:`ConsoleApprover` asks on the terminal (CLI mode).
* :class:`ApprovalBroker` parks the request until someone answers it through the HTTP API.
"""

from __future__ import annotations

import asyncio
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    List,
    Tuple,
)

from loomcode.common import (
    AnsiColors,
    colored_print,
)
from loomcode.security.models import (
    ApprovalOutcome,
    PermissionRequest,
)

logger = logging.getLogger(__name__)

Approver = Callable[[PermissionRequest], Awaitable[ApprovalOutcome]]
"""Async callable deciding a prompt."""


def fixed_approver(outcome: ApprovalOutcome) -> Approver:
    """An approver that always answers *outcome* (headless runs, tests)."""

    async def _approve(request: PermissionRequest) -> ApprovalOutcome:
        logger.info("Auto-answering '%s' with %s", request.describe(), outcome.value)
        return outcome

    return _approve


class ConsoleApprover:
    """Ask the user on stdin; blocking input runs in a worker thread."""

    _ANSWERS = {
        "o": ApprovalOutcome.ALLOW_ONCE,
        "once": ApprovalOutcome.ALLOW_ONCE,
        "a": ApprovalOutcome.ALLOW_ALWAYS,
        "always": ApprovalOutcome.ALLOW_ALWAYS,
        "d": ApprovalOutcome.DENY,
        "deny": ApprovalOutcome.DENY,
    }

    async def __call__(self, request: PermissionRequest) -> ApprovalOutcome:
        return await asyncio.to_thread(self._ask, request)

    def _ask(self, request: PermissionRequest) -> ApprovalOutcome:
        colored_print(f"\n🔐 {request.describe()}", AnsiColors.YELLOW)
        colored_print("Allow [o]nce, allow [a]lways, or [d]eny? ", AnsiColors.YELLOW, end="")
        try:
            answer = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            return ApprovalOutcome.DISMISSED
        return self._ANSWERS.get(answer, ApprovalOutcome.DISMISSED)


class ApprovalBroker:
    """Holds pending approval requests until :meth:`resolve` answers them."""

    def __init__(self) -> None:
        self._pending: Dict[str, Tuple[PermissionRequest, asyncio.Future[ApprovalOutcome]]] = {}

    async def __call__(self, request: PermissionRequest) -> ApprovalOutcome:
        future: asyncio.Future[ApprovalOutcome] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = (request, future)
        logger.info("Approval requested [%s]: %s", request.id, request.describe())
        try:
            return await future
        finally:
            self._pending.pop(request.id, None)

    def list_pending(self) -> List[PermissionRequest]:
        return [request for request, _ in self._pending.values()]

    def resolve(self, request_id: str, outcome: ApprovalOutcome) -> bool:
        """Answer a pending request.  Returns ``False`` if no such request is waiting."""
        entry = self._pending.get(request_id)
        if entry is None:
            return False
        _, future = entry
        if future.done():
            return False
        future.get_loop().call_soon_threadsafe(_set_if_pending, future, outcome)
        return True

    def dismiss_all(self) -> None:
        for request_id in list(self._pending):
            self.resolve(request_id, ApprovalOutcome.DISMISSED)


def _set_if_pending(future: asyncio.Future[ApprovalOutcome], outcome: ApprovalOutcome) -> None:
    if not future.done():
        future.set_result(outcome)
