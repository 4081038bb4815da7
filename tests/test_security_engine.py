"""
Tests for the layered permission engine: sandbox, policies, decision cache and audit log.

Run with:
$ pytest -q
"""

import asyncio
import json
import time
from pathlib import Path
from typing import List

from loomcode.memory.state_file import StateFile
from loomcode.security.engine import (
    NETWORK_ALLOWED_REASON,
    NETWORK_DISABLED_REASON,
    OUTSIDE_WORKSPACE_REASON,
    SecurityEngine,
)
from loomcode.security.models import (
    GIT_PROTECTION_POLICY_ID,
    ApprovalOutcome,
    AuditCategory,
    PermissionLevel,
    PermissionRequest,
    PolicyConditions,
    ResourceType,
    RiskLevel,
    SandboxConfig,
    SecurityPolicy,
    default_sandbox,
)


class RecordingApprover:
    """Answers every prompt with a fixed outcome and remembers what it was asked."""

    def __init__(self, outcome: ApprovalOutcome, delay: float = 0.0):
        self.outcome = outcome
        self.delay = delay
        self.requests: List[PermissionRequest] = []

    async def __call__(self, request: PermissionRequest) -> ApprovalOutcome:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.outcome


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


def test_git_write_denied_by_version_control_policy(tmp_path: Path) -> None:
    """Writing inside .git is denied and the denial cites the git protection policy."""

    ws = _workspace(tmp_path)
    for sandbox in (default_sandbox(), SandboxConfig(enabled=False)):
        engine = SecurityEngine(ws, sandbox)
        check = asyncio.run(engine.check_permission("file", "write", str(ws / ".git" / "HEAD")))
        assert not check.allowed
        assert check.policy_id == GIT_PROTECTION_POLICY_ID
        assert "Protect Git Directory" in check.reason


def test_higher_priority_policy_wins(tmp_path: Path) -> None:
    """The first matching policy in descending priority decides."""

    ws = _workspace(tmp_path)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False))
    conditions = PolicyConditions(path_patterns=["**/notes.txt"])
    engine.add_policy(
        SecurityPolicy(id="deny-notes", name="Deny notes", priority=200, conditions=conditions, action=PermissionLevel.DENY)
    )
    engine.add_policy(
        SecurityPolicy(id="allow-notes", name="Allow notes", priority=150, conditions=conditions, action=PermissionLevel.ALLOW)
    )

    check = asyncio.run(engine.check_permission("file", "write", "notes.txt"))
    assert not check.allowed
    assert check.policy_id == "deny-notes"

    engine.enable_policy("deny-notes", False)
    check = asyncio.run(engine.check_permission("file", "write", "notes.txt"))
    assert check.allowed
    assert check.policy_id == "allow-notes"


def test_sandbox_is_checked_before_policies(tmp_path: Path) -> None:
    """A sandbox denial cannot be overridden by an allow policy and is audited as a violation."""

    ws = _workspace(tmp_path)
    sandbox = SandboxConfig(enabled=True, denied_paths=["**/vault/**"])
    engine = SecurityEngine(ws, sandbox)
    engine.add_policy(
        {
            "id": "allow-everything",
            "name": "Allow everything",
            "priority": 1000,
            "action": "allow",
        }
    )

    check = asyncio.run(engine.check_permission("file", "read", "vault/key.pem"))
    assert not check.allowed
    assert check.reason.startswith("Sandbox")

    violations = engine.get_security_violations()
    assert len(violations) == 1
    assert violations[0].risk == RiskLevel.HIGH


def test_allow_always_is_reused_without_prompting(tmp_path: Path) -> None:
    """A second identical request within the TTL is answered from the cache."""

    ws = _workspace(tmp_path)
    approver = RecordingApprover(ApprovalOutcome.ALLOW_ALWAYS)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), approver)
    target = str(tmp_path / "outside" / "a.txt")

    async def scenario():
        first = await engine.check_permission("file", "write", target)
        second = await engine.check_permission("file", "write", target)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.allowed and second.allowed
    assert len(approver.requests) == 1
    assert approver.requests[0].policy_id == "prompt-external-files"


def test_allow_always_expires_after_ttl(tmp_path: Path) -> None:
    """Once the TTL has passed the user is asked again."""

    ws = _workspace(tmp_path)
    clock = FakeClock()
    approver = RecordingApprover(ApprovalOutcome.ALLOW_ALWAYS)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), approver, cache_ttl=60, clock=clock)
    target = str(tmp_path / "outside.txt")

    asyncio.run(engine.check_permission("file", "read", target))
    clock.now += 61
    asyncio.run(engine.check_permission("file", "read", target))
    assert len(approver.requests) == 2


def test_allow_once_is_not_cached(tmp_path: Path) -> None:
    """allow-once applies to a single request only."""

    ws = _workspace(tmp_path)
    approver = RecordingApprover(ApprovalOutcome.ALLOW_ONCE)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), approver)
    target = str(tmp_path / "outside.txt")

    for _ in range(2):
        assert asyncio.run(engine.check_permission("file", "read", target)).allowed
    assert len(approver.requests) == 2


def test_deny_is_remembered_until_forgotten(tmp_path: Path) -> None:
    """A denial is not asked again in the session; forget_decision re-enables the prompt."""

    ws = _workspace(tmp_path)
    approver = RecordingApprover(ApprovalOutcome.DENY)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), approver)
    target = str(tmp_path / "outside.txt")

    assert not asyncio.run(engine.check_permission("file", "read", target)).allowed
    assert not asyncio.run(engine.check_permission("file", "read", target)).allowed
    assert len(approver.requests) == 1

    assert engine.forget_decision("file", "read", target)
    asyncio.run(engine.check_permission("file", "read", target))
    assert len(approver.requests) == 2


def test_concurrent_prompts_for_same_key_are_collapsed(tmp_path: Path) -> None:
    """Two simultaneous identical requests produce a single question to the user."""

    ws = _workspace(tmp_path)
    approver = RecordingApprover(ApprovalOutcome.ALLOW_ONCE, delay=0.05)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), approver)
    target = str(tmp_path / "outside.txt")

    async def scenario():
        return await asyncio.gather(
            engine.check_permission("file", "read", target, requested_by="a"),
            engine.check_permission("file", "read", target, requested_by="b"),
        )

    results = asyncio.run(scenario())
    assert all(r.allowed for r in results)
    assert len(approver.requests) == 1


def test_dismissed_and_timed_out_prompts_deny(tmp_path: Path) -> None:
    """Dismissal, a missing approver and an approval timeout all deny."""

    ws = _workspace(tmp_path)
    target = str(tmp_path / "outside.txt")

    dismissed = SecurityEngine(ws, SandboxConfig(enabled=False), RecordingApprover(ApprovalOutcome.DISMISSED))
    assert not asyncio.run(dismissed.check_permission("file", "read", target)).allowed

    no_channel = SecurityEngine(ws, SandboxConfig(enabled=False))
    assert not asyncio.run(no_channel.check_permission("file", "read", target)).allowed

    slow = RecordingApprover(ApprovalOutcome.ALLOW_ALWAYS, delay=1.0)
    timed_out = SecurityEngine(ws, SandboxConfig(enabled=False), slow, approval_timeout=0.01)
    check = asyncio.run(timed_out.check_permission("file", "read", target))
    assert not check.allowed
    assert "timed out" in check.reason


def test_malformed_pattern_matches_nothing(tmp_path: Path) -> None:
    """A regex pattern that does not compile never raises; the policy just does not apply."""

    ws = _workspace(tmp_path)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False))
    engine.add_policy(
        SecurityPolicy(
            id="broken",
            name="Broken",
            priority=500,
            conditions=PolicyConditions(path_patterns=["re:([unclosed"]),
            action=PermissionLevel.DENY,
        )
    )

    check = asyncio.run(engine.check_permission("file", "write", "src/app.py"))
    assert check.allowed


def test_default_stage_denies_outside_workspace(tmp_path: Path) -> None:
    """Without a matching policy, paths outside the workspace are denied."""

    ws = _workspace(tmp_path)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False))
    engine.remove_policy("prompt-external-files")

    outside = asyncio.run(engine.check_permission("file", "write", str(tmp_path / "x.txt")))
    assert not outside.allowed
    assert outside.reason == OUTSIDE_WORKSPACE_REASON

    inside = asyncio.run(engine.check_permission("file", "write", "x.txt"))
    assert inside.allowed


def test_one_audit_entry_per_decision(tmp_path: Path) -> None:
    """Audited branches write exactly one entry; allow policies with audit level none write none."""

    ws = _workspace(tmp_path)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False))

    asyncio.run(engine.check_permission("file", "read", "README.md"))
    assert engine.get_audit_log() == []

    asyncio.run(engine.check_permission("file", "write", "README.md"))
    asyncio.run(engine.check_permission("file", "write", ".git/config"))
    log = engine.get_audit_log()
    assert len(log) == 2
    assert log[0].category == AuditCategory.PERMISSION  # newest first: the git denial
    assert log[1].category == AuditCategory.ACCESS


def test_audit_log_is_capped(tmp_path: Path) -> None:
    """The oldest entries are evicted once the cap is reached."""

    ws = _workspace(tmp_path)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), max_audit_entries=3)
    for i in range(5):
        asyncio.run(engine.check_permission("file", "write", f"file{i}.txt"))

    targets = [Path(e.target).name for e in engine.get_audit_log()]
    assert targets == ["file4.txt", "file3.txt", "file2.txt"]


def test_dangerous_commands_and_network_are_blocked(tmp_path: Path) -> None:
    """Destructive commands hit the deny policy; network requests hit the sandbox."""

    ws = _workspace(tmp_path)
    engine = SecurityEngine(ws, SandboxConfig(enabled=True))

    check = asyncio.run(engine.check_permission("terminal", "execute", "cd / && rm -rf *"))
    assert not check.allowed
    assert check.policy_id == "block-dangerous-commands"

    assert asyncio.run(engine.check_permission("terminal", "execute", "pytest -q")).allowed
    assert not asyncio.run(engine.check_permission(ResourceType.NETWORK, "network", "example.com")).allowed


def test_network_default_follows_the_sandbox_network_switch(tmp_path: Path) -> None:
    """Unmatched network requests are allowed only when the sandbox enables network access."""

    ws = _workspace(tmp_path)

    enabled = SecurityEngine(ws, SandboxConfig(enabled=True, network_access=True))
    check = asyncio.run(enabled.check_permission("network", "network", "localhost:11434"))
    assert check.allowed
    assert check.reason == NETWORK_ALLOWED_REASON
    assert enabled.get_audit_log()[0].target == "localhost:11434"

    # Without the sandbox stage, the switch still decides the default
    disabled = SecurityEngine(ws, SandboxConfig(enabled=False, network_access=False))
    check = asyncio.run(disabled.check_permission("network", "network", "localhost:11434"))
    assert not check.allowed
    assert check.reason == NETWORK_DISABLED_REASON
    assert check.reason != OUTSIDE_WORKSPACE_REASON


def test_persisted_state_never_overrides_builtin_policies(tmp_path: Path) -> None:
    """Loaded policies are merged; a persisted copy of a built-in id is ignored."""

    ws = _workspace(tmp_path)
    state_path = tmp_path / "security.json"
    state_path.write_text(
        json.dumps(
            {
                "policies": [
                    {"id": GIT_PROTECTION_POLICY_ID, "name": "Hijacked", "action": "allow"},
                    {"id": "custom", "name": "Custom", "priority": 10, "action": "deny"},
                    {"id": "invalid"},
                ]
            }
        ),
        encoding="utf-8",
    )

    engine = SecurityEngine(ws, SandboxConfig(enabled=False), state_file=StateFile(state_path))
    assert engine.get_policy(GIT_PROTECTION_POLICY_ID).action == PermissionLevel.DENY
    assert engine.get_policy("custom") is not None
    assert engine.get_policy("invalid") is None


def test_allow_always_decision_survives_restart(tmp_path: Path) -> None:
    """Cached decisions and custom policies are written to the state file."""

    ws = _workspace(tmp_path)
    state = StateFile(tmp_path / "security.json")
    approver = RecordingApprover(ApprovalOutcome.ALLOW_ALWAYS)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), approver, state_file=state)
    target = str(tmp_path / "outside.txt")
    asyncio.run(engine.check_permission("file", "read", target))

    restarted = SecurityEngine(ws, SandboxConfig(enabled=False), approver, state_file=state)
    assert asyncio.run(restarted.check_permission("file", "read", target)).allowed
    assert len(approver.requests) == 1


class SlowStateFile(StateFile):
    """A state file on a slow disk."""

    def __init__(self, path: Path, delay: float):
        super().__init__(path)
        self.delay = delay
        self.saves = 0

    def save(self, data):
        time.sleep(self.delay)
        self.saves += 1
        return super().save(data)


def test_audit_writes_do_not_stall_the_event_loop(tmp_path: Path) -> None:
    """Permission checks on a slow state file leave other tasks running on time."""

    ws = _workspace(tmp_path)
    state = SlowStateFile(tmp_path / "security.json", delay=0.2)
    engine = SecurityEngine(ws, SandboxConfig(enabled=False), state_file=state)

    async def scenario() -> float:
        worst_gap = 0.0
        done = asyncio.Event()

        async def ticker() -> None:
            nonlocal worst_gap
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.01)
                now = time.monotonic()
                worst_gap = max(worst_gap, now - last)
                last = now

        ticking = asyncio.create_task(ticker())
        await asyncio.sleep(0.02)
        checks = await asyncio.gather(
            *(engine.check_permission("file", "write", f"a{i}.txt") for i in range(3))
        )
        assert all(c.allowed for c in checks)
        await engine.flush()
        done.set()
        await ticking
        return worst_gap

    worst_gap = asyncio.run(scenario())
    assert worst_gap < 0.15
    assert 1 <= state.saves <= 3

    # Everything scheduled before the flush reached the file
    persisted = StateFile(tmp_path / "security.json").load()
    assert sorted(e["target"] for e in persisted["audit_log"]) == [
        str((ws / f"a{i}.txt").resolve()) for i in range(3)
    ]
