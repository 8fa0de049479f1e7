"""Request/response flow for human confirmation of ``Ask`` decisions.

The engine never blocks waiting for a person. When a check returns ``Ask``,
``ApprovalBroker.authorize`` publishes a ``PermissionRequest`` to a listener
(usually the UI layer) and suspends only the awaiting tool call on a future
keyed by the request id. Other tool calls keep running. The listener answers
later via ``resolve`` with a ``PermissionResponse``, or aborts via ``cancel``.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from tollgate.core.config import ConfigScope
from tollgate.core.errors import (
    InvalidPermissionRule,
    PermissionRequestCancelled,
    TrustStoreError,
)
from tollgate.core.permissions import (
    PermissionBehavior,
    PermissionDecision,
    ToolPermissionContext,
)
from tollgate.utils.log import get_logger
from tollgate.utils.permissions.rule_syntax import PermissionRule

if TYPE_CHECKING:
    from tollgate.core.permission_engine import PermissionManager

logger = get_logger()


class ApprovalChoice(str, Enum):
    APPROVE_ONCE = "approve_once"
    APPROVE_AND_REMEMBER = "approve_and_remember"
    DENY = "deny"
    CANCEL = "cancel"


@dataclass(frozen=True)
class PermissionRequest:
    """An ``Ask`` decision waiting for a human."""

    context: ToolPermissionContext
    reason: str
    suggested_rules: Tuple[PermissionRule, ...] = ()
    allow_remember: bool = True
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True)
class PermissionResponse:
    """The human's answer. ``rules`` may carry an edited version of the suggestion."""

    request_id: str
    choice: ApprovalChoice
    rules: Tuple[Union[PermissionRule, str], ...] = ()
    scope: Optional[ConfigScope] = None


RequestListener = Callable[[PermissionRequest], Union[None, Awaitable[None]]]


class ApprovalBroker:
    """Pairs permission requests with the responses that resolve them."""

    def __init__(
        self,
        manager: "PermissionManager",
        listener: Optional[RequestListener] = None,
        *,
        default_scope: ConfigScope = ConfigScope.LOCAL,
    ) -> None:
        self._manager = manager
        self._listener = listener
        self._default_scope = default_scope
        self._pending_requests: Dict[str, "asyncio.Future[PermissionResponse]"] = {}
        self._requests: Dict[str, PermissionRequest] = {}

    @property
    def pending_requests(self) -> List[PermissionRequest]:
        return list(self._requests.values())

    async def authorize(self, context: ToolPermissionContext) -> PermissionDecision:
        """Check ``context`` and, on ``Ask``, wait for a human decision."""
        decision = self._manager.check_permission(context)
        if decision.behavior is not PermissionBehavior.ASK:
            return decision
        request = self._manager.build_request(context, decision)
        response = await self.request_approval(request)
        return self._apply_response(request, response)

    async def request_approval(self, request: PermissionRequest) -> PermissionResponse:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[PermissionResponse] = loop.create_future()
        self._pending_requests[request.request_id] = future
        self._requests[request.request_id] = request
        try:
            if self._listener is not None:
                published = self._listener(request)
                if inspect.isawaitable(published):
                    await published
            return await future
        finally:
            self._pending_requests.pop(request.request_id, None)
            self._requests.pop(request.request_id, None)

    def resolve(self, response: PermissionResponse) -> bool:
        """Deliver a response. Returns False for unknown or already settled requests."""
        future = self._pending_requests.get(response.request_id)
        if future is None or future.done():
            logger.debug(
                "[approval] No pending request for response %s", response.request_id
            )
            return False
        future.set_result(response)
        return True

    def cancel(self, request_id: str, reason: str = "Permission request cancelled") -> bool:
        future = self._pending_requests.get(request_id)
        if future is None or future.done():
            return False
        future.set_exception(PermissionRequestCancelled(reason, request_id))
        return True

    def cancel_all(self, reason: str = "Permission request cancelled") -> int:
        request_ids = list(self._pending_requests)
        return sum(1 for request_id in request_ids if self.cancel(request_id, reason))

    def _remember(
        self, request: PermissionRequest, response: PermissionResponse
    ) -> PermissionDecision:
        if not request.allow_remember:
            logger.warning(
                "[approval] Refusing to remember a rule for this request; approving once",
                extra={"request_id": request.request_id, "tool": request.context.tool_name},
            )
            return PermissionDecision.allow(
                "Approved once by user; this action cannot be remembered"
            )

        rules = response.rules or request.suggested_rules
        scope = response.scope or self._default_scope
        failures: List[str] = []
        for rule in rules:
            try:
                self._manager.add_rule(rule, scope)
            except (TrustStoreError, InvalidPermissionRule) as exc:
                logger.warning(
                    "[approval] Failed to remember rule: %s: %s",
                    type(exc).__name__,
                    exc,
                    extra={"rule": str(rule), "scope": scope.value},
                )
                failures.append(str(exc))
        if failures:
            return PermissionDecision.allow(f"Approved by user; rule not saved: {failures[0]}")
        return PermissionDecision.allow(
            f"Approved by user and remembered in {scope.value} settings"
        )

    def _apply_response(
        self, request: PermissionRequest, response: PermissionResponse
    ) -> PermissionDecision:
        if response.choice is ApprovalChoice.APPROVE_ONCE:
            return PermissionDecision.allow("Approved once by user")
        if response.choice is ApprovalChoice.APPROVE_AND_REMEMBER:
            return self._remember(request, response)
        if response.choice is ApprovalChoice.DENY:
            return PermissionDecision.deny("Denied by user")
        raise PermissionRequestCancelled("Permission request cancelled by user", request.request_id)


__all__ = [
    "ApprovalBroker",
    "ApprovalChoice",
    "PermissionRequest",
    "PermissionResponse",
    "RequestListener",
]
