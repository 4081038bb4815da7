"""
Layered permission engine.

Every side-effecting tool asks :meth:`SecurityEngine.check_permission` before acting.  A request
goes through three stages and the first one to reach a verdict wins:

1. **Sandbox** - policy-independent path, command and network rules.
2. **Policies** - enabled policies in descending priority; the first whose conditions match
   decides ``deny``, ``allow`` or ``prompt`` (ask the user, honouring cached answers).
3. **Default** - paths are allowed inside the workspace root and denied outside it; commands are
   allowed; network follows the sandbox network switch; anything else is denied.

Each verdict writes exactly one audit entry, except silent sandbox passes and ``allow`` policies
whose audit level is ``none``.  The engine is shared by every session: the audit log, the decision
cache and the policy set are guarded by a lock, and concurrent prompts for the same key are
collapsed into one question to the user.

Audit entries are written to the state file behind the caller (see :meth:`SecurityEngine.flush`);
policy changes and remembered decisions are written before the call that made them returns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import threading
import time
from collections import deque
from pathlib import Path
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    List,
    Optional,
)

from pydantic import ValidationError

from loomcode.memory.state_file import StateFile
from loomcode.security.approvals import Approver
from loomcode.security.models import (
    BUILTIN_POLICY_IDS,
    COMMAND_RESOURCES,
    DEFAULT_POLICIES,
    PATH_RESOURCES,
    ApprovalOutcome,
    AuditCategory,
    AuditEntry,
    AuditLevel,
    AuditResult,
    OperationType,
    PermissionCheck,
    PermissionDecision,
    PermissionLevel,
    PermissionRequest,
    ResourceType,
    RiskLevel,
    SandboxConfig,
    SecurityContext,
    SecurityPolicy,
    default_sandbox,
)
from loomcode.security.patterns import (
    any_command_match,
    any_path_match,
)

logger = logging.getLogger(__name__)

OUTSIDE_WORKSPACE_REASON = "Path outside workspace requires explicit permission"
WITHIN_WORKSPACE_REASON = "Within workspace"
COMMAND_DEFAULT_REASON = "Command not restricted by sandbox or policy"
NETWORK_ALLOWED_REASON = "Network access enabled in sandbox"
NETWORK_DISABLED_REASON = "Network access disabled in sandbox"
_PERSISTED_AUDIT_ENTRIES = 500


class PermissionDeniedError(PermissionError):
    """Raised by :meth:`SecurityEngine.require` so tools can bail out with the engine's reason."""


class SecurityEngine:
    """Evaluates, caches and audits permission requests for one workspace."""

    def __init__(
        self,
        workspace_root: str | Path,
        sandbox: Optional[SandboxConfig] = None,
        approver: Optional[Approver] = None,
        *,
        state_file: Optional[StateFile] = None,
        cache_ttl: float = 3600.0,
        max_audit_entries: int = 1000,
        approval_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.workspace_root = Path(workspace_root).expanduser().resolve()
        self.sandbox = sandbox or default_sandbox()
        self.approver = approver
        self.cache_ttl = cache_ttl
        self.approval_timeout = approval_timeout
        self._clock = clock
        self._store = state_file

        self._lock = threading.RLock()
        self._policies: Dict[str, SecurityPolicy] = {p.id: p for p in DEFAULT_POLICIES}
        self._audit: Deque[AuditEntry] = deque(maxlen=max_audit_entries)
        self._decisions: Dict[str, PermissionDecision] = {}
        self._session_denials: Dict[str, PermissionDecision] = {}
        self._pending: Dict[str, PermissionRequest] = {}
        self._inflight_prompts: Dict[str, asyncio.Future[PermissionCheck]] = {}
        self._write_lock = threading.Lock()
        self._writer: Optional[asyncio.Task[None]] = None
        self._dirty = False

        self._load_state()

    # ------------------------------------------------------------------ #
    # Permission checking
    # ------------------------------------------------------------------ #
    async def check_permission(
        self,
        resource: ResourceType | str,
        operation: OperationType | str,
        target: str,
        requested_by: str = "unknown",
    ) -> PermissionCheck:
        """Decide whether *requested_by* may perform *operation* on *target*."""
        resource = ResourceType(resource)
        operation = OperationType(operation)
        is_path = resource in PATH_RESOURCES
        subject = self.resolve_target(target) if is_path else target

        # 1. Sandbox
        if self.sandbox.enabled:
            violation = self._check_sandbox(resource, operation, subject)
            if violation is not None:
                self.audit(
                    AuditCategory.SECURITY_VIOLATION,
                    f"Sandbox blocked: {operation.value} on {target}",
                    subject,
                    AuditResult.DENIED,
                    RiskLevel.HIGH,
                    details={"requested_by": requested_by, "reason": violation},
                )
                return PermissionCheck(allowed=False, reason=violation)

        # 2. Policies
        for policy in self._active_policies():
            if not self._policy_matches(policy, resource, operation, subject):
                continue

            if policy.action == PermissionLevel.DENY:
                self.audit(
                    AuditCategory.PERMISSION,
                    f"Policy denied: {policy.name}",
                    subject,
                    AuditResult.DENIED,
                    RiskLevel.MEDIUM,
                    details=self._policy_details(policy, resource, operation, requested_by),
                )
                return PermissionCheck(
                    allowed=False, reason=f"{policy.name}: {policy.description}", policy_id=policy.id
                )

            if policy.action == PermissionLevel.ALLOW:
                if policy.audit_level != AuditLevel.NONE:
                    self.audit(
                        AuditCategory.ACCESS,
                        f"Policy allowed: {policy.name}",
                        subject,
                        AuditResult.ALLOWED,
                        RiskLevel.LOW,
                        details=self._policy_details(policy, resource, operation, requested_by),
                    )
                return PermissionCheck(allowed=True, reason=policy.description, policy_id=policy.id)

            return await self._prompt(resource, operation, subject, requested_by, policy)

        # 3. Default
        allowed, reason = self._default_verdict(resource, subject)
        if allowed:
            self.audit(
                AuditCategory.ACCESS,
                f"Default allow: {reason}",
                subject,
                AuditResult.ALLOWED,
                RiskLevel.LOW,
            )
        else:
            self.audit(
                AuditCategory.PERMISSION,
                f"Default deny: {reason}",
                subject,
                AuditResult.DENIED,
                RiskLevel.MEDIUM,
                details={"requested_by": requested_by},
            )
        return PermissionCheck(allowed=allowed, reason=reason)

    async def require(
        self,
        resource: ResourceType | str,
        operation: OperationType | str,
        target: str,
        requested_by: str = "unknown",
    ) -> None:
        """Like :meth:`check_permission` but raises :class:`PermissionDeniedError` on denial."""
        check = await self.check_permission(resource, operation, target, requested_by)
        if not check.allowed:
            raise PermissionDeniedError(f"Access denied for {target}: {check.reason}")

    def resolve_target(self, target: str) -> str:
        """Resolve *target* against the workspace root (relative paths are workspace-relative)."""
        path = Path(target).expanduser()
        if not path.is_absolute():
            path = self.workspace_root / path
        return str(path.resolve())

    def is_inside_workspace(self, resolved: str) -> bool:
        return Path(resolved).is_relative_to(self.workspace_root)

    def _default_verdict(self, resource: ResourceType, subject: str) -> tuple[bool, str]:
        """Verdict for a request no policy matched, as ``(allowed, reason)``."""
        if resource in PATH_RESOURCES:
            if self.is_inside_workspace(subject):
                return True, WITHIN_WORKSPACE_REASON
            return False, OUTSIDE_WORKSPACE_REASON
        if resource in COMMAND_RESOURCES:
            return True, COMMAND_DEFAULT_REASON
        if resource == ResourceType.NETWORK:
            if self.sandbox.network_access:
                return True, NETWORK_ALLOWED_REASON
            return False, NETWORK_DISABLED_REASON
        return False, f"No policy grants access to {resource.value} resources"

    def _check_sandbox(
        self, resource: ResourceType, operation: OperationType, subject: str
    ) -> Optional[str]:
        """Return the denial reason, or ``None`` when the sandbox lets the request through."""
        sandbox = self.sandbox

        if resource in PATH_RESOURCES:
            denied = any_path_match(subject, sandbox.denied_paths)
            if denied is not None:
                return f"Sandbox: path matches denied pattern {denied}"
            if sandbox.allowed_paths and any_path_match(subject, sandbox.allowed_paths) is None:
                return "Sandbox: path not in allowed list"

        if resource in COMMAND_RESOURCES and operation == OperationType.EXECUTE:
            denied = any_command_match(subject, sandbox.denied_commands)
            if denied is not None:
                return f"Sandbox: command matches denied pattern {denied}"
            if sandbox.allowed_commands:
                program = _program_name(subject)
                if program not in sandbox.allowed_commands:
                    return f"Sandbox: command '{program}' not in allowed list"

        if resource == ResourceType.NETWORK and not sandbox.network_access:
            return "Sandbox: network access disabled"

        return None

    def _policy_matches(
        self,
        policy: SecurityPolicy,
        resource: ResourceType,
        operation: OperationType,
        subject: str,
    ) -> bool:
        conditions = policy.conditions
        is_path = resource in PATH_RESOURCES

        if conditions.resources is not None and resource not in conditions.resources:
            return False
        if conditions.operations is not None and operation not in conditions.operations:
            return False
        if conditions.path_patterns is not None:
            if any_path_match(subject, conditions.path_patterns) is None:
                return False
        if conditions.command_patterns is not None:
            if any_command_match(subject, conditions.command_patterns) is None:
                return False
        if conditions.outside_workspace is not None:
            if not is_path:
                return False
            if self.is_inside_workspace(subject) == conditions.outside_workspace:
                return False
        return True

    @staticmethod
    def _policy_details(
        policy: SecurityPolicy,
        resource: ResourceType,
        operation: OperationType,
        requested_by: str,
    ) -> Optional[Dict[str, Any]]:
        if policy.audit_level == AuditLevel.DETAILED:
            return {
                "policy_id": policy.id,
                "requested_by": requested_by,
                "resource": resource.value,
                "operation": operation.value,
            }
        if policy.audit_level == AuditLevel.BASIC:
            return {"policy_id": policy.id}
        return None

    # ------------------------------------------------------------------ #
    # Prompting & decision cache
    # ------------------------------------------------------------------ #
    @staticmethod
    def decision_key(resource: ResourceType, operation: OperationType, subject: str) -> str:
        return f"{resource.value}:{operation.value}:{subject}"

    async def _prompt(
        self,
        resource: ResourceType,
        operation: OperationType,
        subject: str,
        requested_by: str,
        policy: SecurityPolicy,
    ) -> PermissionCheck:
        key = self.decision_key(resource, operation, subject)

        cached = self._cached_decision(key)
        if cached is not None:
            self.audit(
                AuditCategory.PERMISSION,
                f"Cached decision: {cached.outcome.value}",
                subject,
                AuditResult.ALLOWED if cached.allowed else AuditResult.DENIED,
                RiskLevel.LOW,
                details={"policy_id": policy.id, "requested_by": requested_by},
            )
            return PermissionCheck(allowed=cached.allowed, reason=cached.reason, policy_id=policy.id)

        inflight = self._inflight_prompts.get(key)
        if inflight is not None:
            logger.debug("Joining pending approval prompt for %s", key)
            result = await asyncio.shield(inflight)
            self.audit(
                AuditCategory.PERMISSION,
                "Shared pending decision",
                subject,
                AuditResult.ALLOWED if result.allowed else AuditResult.DENIED,
                RiskLevel.LOW,
                details={"policy_id": policy.id, "requested_by": requested_by},
            )
            return result

        future: asyncio.Future[PermissionCheck] = asyncio.get_running_loop().create_future()
        self._inflight_prompts[key] = future
        try:
            result = await self._ask_user(key, resource, operation, subject, requested_by, policy)
        except BaseException:
            future.set_result(
                PermissionCheck(
                    allowed=False, reason="Approval prompt was interrupted", policy_id=policy.id
                )
            )
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight_prompts.pop(key, None)

    async def _ask_user(
        self,
        key: str,
        resource: ResourceType,
        operation: OperationType,
        subject: str,
        requested_by: str,
        policy: SecurityPolicy,
    ) -> PermissionCheck:
        request = PermissionRequest(
            resource=resource,
            operation=operation,
            target=subject,
            requested_by=requested_by,
            policy_id=policy.id,
            context=policy.description,
        )
        with self._lock:
            self._pending[request.id] = request

        try:
            outcome, reason = await self._await_approver(request)
        finally:
            with self._lock:
                self._pending.pop(request.id, None)

        decision = PermissionDecision(
            request_id=request.id,
            allowed=outcome.allowed,
            decided_by="user",
            reason=reason,
            outcome=outcome,
            timestamp=self._clock(),
        )
        with self._lock:
            if outcome == ApprovalOutcome.ALLOW_ALWAYS:
                self._decisions[key] = decision
            elif outcome == ApprovalOutcome.DENY:
                self._session_denials[key] = decision

        self.audit(
            AuditCategory.PERMISSION,
            f"User decision: {outcome.value}",
            subject,
            AuditResult.ALLOWED if decision.allowed else AuditResult.DENIED,
            RiskLevel.MEDIUM,
            details={"policy_id": policy.id, "requested_by": requested_by},
        )
        if outcome == ApprovalOutcome.ALLOW_ALWAYS and self._store is not None:
            await asyncio.to_thread(self._save_state)
        return PermissionCheck(allowed=decision.allowed, reason=reason, policy_id=policy.id)

    async def _await_approver(self, request: PermissionRequest) -> tuple[ApprovalOutcome, str]:
        if self.approver is None:
            logger.warning("No approval channel configured; denying '%s'", request.describe())
            return ApprovalOutcome.DISMISSED, "No approval channel available"

        try:
            outcome = await asyncio.wait_for(self.approver(request), timeout=self.approval_timeout)
        except asyncio.TimeoutError:
            logger.warning("Approval for '%s' timed out", request.describe())
            return ApprovalOutcome.DISMISSED, "Approval request timed out"
        except Exception:  # pylint: disable=broad-except
            logger.exception("Approver failed for '%s'", request.describe())
            return ApprovalOutcome.DISMISSED, "Approval request failed"

        outcome = ApprovalOutcome(outcome)
        reasons = {
            ApprovalOutcome.ALLOW_ONCE: "Allowed once by user",
            ApprovalOutcome.ALLOW_ALWAYS: "Allowed always by user",
            ApprovalOutcome.DENY: "Denied by user",
            ApprovalOutcome.DISMISSED: "User dismissed the approval request",
        }
        return outcome, reasons[outcome]

    def _cached_decision(self, key: str) -> Optional[PermissionDecision]:
        with self._lock:
            denial = self._session_denials.get(key)
            if denial is not None:
                return denial
            decision = self._decisions.get(key)
            if decision is None:
                return None
            if self._clock() - decision.timestamp < self.cache_ttl:
                return decision
            del self._decisions[key]
            return None

    def forget_decision(
        self, resource: ResourceType | str, operation: OperationType | str, target: str
    ) -> bool:
        """Drop any remembered answer so the next identical request prompts again."""
        resource = ResourceType(resource)
        subject = self.resolve_target(target) if resource in PATH_RESOURCES else target
        key = self.decision_key(resource, OperationType(operation), subject)
        with self._lock:
            removed = self._decisions.pop(key, None) is not None
            removed = self._session_denials.pop(key, None) is not None or removed
        if removed:
            self._save_state()
        return removed

    # ------------------------------------------------------------------ #
    # Audit log
    # ------------------------------------------------------------------ #
    def audit(
        self,
        category: AuditCategory,
        action: str,
        target: str,
        result: AuditResult,
        risk: RiskLevel,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            category=category,
            action=action,
            target=target,
            result=result,
            risk=risk,
            details=details,
        )
        with self._lock:
            self._audit.append(entry)

        if risk == RiskLevel.HIGH:
            logger.warning("[SECURITY] %s: %s - %s", action, target, result.value)
        else:
            logger.debug("[audit] %s: %s - %s", action, target, result.value)

        self._schedule_save()
        return entry

    def get_audit_log(
        self,
        category: Optional[AuditCategory | str] = None,
        risk: Optional[RiskLevel | str] = None,
    ) -> List[AuditEntry]:
        """Audit entries, newest first, optionally filtered."""
        with self._lock:
            entries = list(self._audit)
        if category is not None:
            entries = [e for e in entries if e.category == AuditCategory(category)]
        if risk is not None:
            entries = [e for e in entries if e.risk == RiskLevel(risk)]
        return list(reversed(entries))

    def get_security_violations(self) -> List[AuditEntry]:
        return self.get_audit_log(category=AuditCategory.SECURITY_VIOLATION)

    # ------------------------------------------------------------------ #
    # Policy management
    # ------------------------------------------------------------------ #
    def _active_policies(self) -> List[SecurityPolicy]:
        with self._lock:
            enabled = [p for p in self._policies.values() if p.enabled]
        return sorted(enabled, key=lambda p: p.priority, reverse=True)

    def get_policies(self) -> List[SecurityPolicy]:
        with self._lock:
            policies = list(self._policies.values())
        return sorted(policies, key=lambda p: p.priority, reverse=True)

    def get_policy(self, policy_id: str) -> Optional[SecurityPolicy]:
        with self._lock:
            return self._policies.get(policy_id)

    def add_policy(self, policy: SecurityPolicy | Dict[str, Any]) -> SecurityPolicy:
        """Add or replace a policy; takes effect on the next evaluation."""
        if not isinstance(policy, SecurityPolicy):
            policy = SecurityPolicy.model_validate(policy)
        with self._lock:
            self._policies[policy.id] = policy
        logger.info("Policy '%s' added (priority %d, %s)", policy.id, policy.priority, policy.action.value)
        self._save_state()
        return policy

    def remove_policy(self, policy_id: str) -> bool:
        with self._lock:
            removed = self._policies.pop(policy_id, None) is not None
        if removed:
            logger.info("Policy '%s' removed", policy_id)
            self._save_state()
        return removed

    def enable_policy(self, policy_id: str, enabled: bool) -> bool:
        with self._lock:
            policy = self._policies.get(policy_id)
            if policy is None:
                return False
            self._policies[policy_id] = policy.model_copy(update={"enabled": enabled})
        self._save_state()
        return True

    def get_context(self) -> SecurityContext:
        with self._lock:
            recent = list(self._audit)[-50:]
            pending = list(self._pending.values())
        return SecurityContext(
            policies=self.get_policies(),
            sandbox=self.sandbox,
            recent_audit=recent,
            pending_requests=pending,
        )

    def clear_all_data(self) -> None:
        """Forget the audit log and every remembered decision (policies are kept)."""
        with self._lock:
            self._audit.clear()
            self._decisions.clear()
            self._session_denials.clear()
        self._save_state()

    # ------------------------------------------------------------------ #
    # Persistence
    # ------------------------------------------------------------------ #
    def _save_state(self) -> None:
        """Write the persisted view now.  Used for policy and decision changes."""
        if self._store is None:
            return
        with self._write_lock:
            with self._lock:
                policies = [p for p in self._policies.values() if p.id not in BUILTIN_POLICY_IDS]
                audit = list(self._audit)[-_PERSISTED_AUDIT_ENTRIES:]
                decisions = dict(self._decisions)
            data = {
                "policies": [p.model_dump(mode="json") for p in policies],
                "audit_log": [e.model_dump(mode="json") for e in audit],
                "decisions": {k: d.model_dump(mode="json") for k, d in decisions.items()},
            }
            self._store.save(data)

    def _schedule_save(self) -> None:
        """
        Persist the audit log without blocking the caller.

        Inside an event loop the write runs on a worker thread, and bursts of audit entries
        coalesce into as few writes as possible.  Without a running loop it writes inline.
        """
        if self._store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save_state()
            return
        with self._lock:
            self._dirty = True
            if self._writer is not None and not self._writer.done():
                return
            self._writer = loop.create_task(self._write_behind())

    async def _write_behind(self) -> None:
        while True:
            with self._lock:
                if not self._dirty:
                    return
                self._dirty = False
            await asyncio.to_thread(self._save_state)

    async def flush(self) -> None:
        """Wait until every scheduled write has reached the state file."""
        writer = self._writer
        if writer is not None and not writer.done():
            await writer

    def _load_state(self) -> None:
        if self._store is None:
            return
        data = self._store.load()
        if not data:
            return

        # Merge with defaults; never let persisted state replace a built-in policy
        for raw in data.get("policies") or []:
            try:
                policy = SecurityPolicy.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping invalid persisted policy: %s", exc)
                continue
            if policy.id not in self._policies:
                self._policies[policy.id] = policy

        for raw in data.get("audit_log") or []:
            try:
                self._audit.append(AuditEntry.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping invalid persisted audit entry: %s", exc)

        for key, raw in (data.get("decisions") or {}).items():
            try:
                self._decisions[key] = PermissionDecision.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Skipping invalid persisted decision %s: %s", key, exc)

        logger.info(
            "Loaded security state: %d policies, %d audit entries, %d decisions",
            len(self._policies),
            len(self._audit),
            len(self._decisions),
        )


def _program_name(command: str) -> str:
    try:
        words = shlex.split(command)
    except ValueError:
        words = command.split()
    return os.path.basename(words[0]) if words else ""
