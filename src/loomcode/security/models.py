"""
Data models for the permission engine: policies, sandbox rules, decisions and audit entries.

Policies are frozen pydantic models.  The policy *set* held by the engine is mutable, but an
individual policy never changes once an evaluation has matched it; toggling ``enabled`` swaps in a
copy.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from loomcode.common import (
    new_id,
    now_ms,
)


class ResourceType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    TERMINAL = "terminal"
    NETWORK = "network"
    PROCESS = "process"
    EXTENSION = "extension"


class OperationType(str, Enum):
    READ = "read"
    WRITE = "write"
    EXECUTE = "execute"
    DELETE = "delete"
    NETWORK = "network"


class PermissionLevel(str, Enum):
    DENY = "deny"
    PROMPT = "prompt"
    ALLOW = "allow"


class AuditLevel(str, Enum):
    NONE = "none"
    BASIC = "basic"
    DETAILED = "detailed"


class AuditCategory(str, Enum):
    PERMISSION = "permission"
    ACCESS = "access"
    EXECUTION = "execution"
    SECURITY_VIOLATION = "security_violation"


class AuditResult(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    ERROR = "error"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ApprovalOutcome(str, Enum):
    """Answers an approval prompt can produce."""

    ALLOW_ONCE = "allow-once"
    ALLOW_ALWAYS = "allow-always"
    DENY = "deny"
    DISMISSED = "dismissed"

    @property
    def allowed(self) -> bool:
        return self in (ApprovalOutcome.ALLOW_ONCE, ApprovalOutcome.ALLOW_ALWAYS)


PATH_RESOURCES = frozenset({ResourceType.FILE, ResourceType.DIRECTORY})
COMMAND_RESOURCES = frozenset({ResourceType.TERMINAL, ResourceType.PROCESS})


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------
class PolicyConditions(BaseModel):
    """
    Conditions a request must satisfy for a policy to apply.

    Every specified condition must match; ``None`` means "any".  ``outside_workspace`` restricts a
    policy to targets that resolve inside (``False``) or outside (``True``) the workspace root.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    resources: Optional[List[ResourceType]] = None
    operations: Optional[List[OperationType]] = None
    path_patterns: Optional[List[str]] = Field(None, alias="pathPatterns")
    command_patterns: Optional[List[str]] = Field(None, alias="commandPatterns")
    outside_workspace: Optional[bool] = Field(None, alias="outsideWorkspace")


class SecurityPolicy(BaseModel):
    """A prioritized rule yielding deny / prompt / allow."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    description: str = ""
    enabled: bool = True
    priority: int = 0  # Higher = checked first
    conditions: PolicyConditions = Field(default_factory=PolicyConditions)
    action: PermissionLevel
    requires_reason: bool = Field(False, alias="requiresReason")
    audit_level: AuditLevel = Field(AuditLevel.BASIC, alias="auditLevel")


class SandboxConfig(BaseModel):
    """Policy-independent rules enforced before any policy is consulted."""

    enabled: bool = True
    allowed_paths: List[str] = Field(default_factory=list)
    denied_paths: List[str] = Field(default_factory=list)
    allowed_commands: List[str] = Field(default_factory=list)
    denied_commands: List[str] = Field(default_factory=list)
    max_file_size: int = 10 * 1024 * 1024  # bytes
    max_execution_time: float = 60.0  # seconds
    network_access: bool = False


# ---------------------------------------------------------------------------
# Requests, decisions, audit
# ---------------------------------------------------------------------------
class PermissionRequest(BaseModel):
    """An operation awaiting a decision, shown to the user when a policy says ``prompt``."""

    id: str = Field(default_factory=new_id)
    timestamp: int = Field(default_factory=now_ms)
    resource: ResourceType
    operation: OperationType
    target: str
    requested_by: str = "unknown"
    policy_id: Optional[str] = None
    context: Optional[str] = None

    def describe(self) -> str:
        return (
            f"{self.requested_by} wants to {self.operation.value} "
            f"{self.resource.value}: {self.target}"
        )


class PermissionDecision(BaseModel):
    """A remembered answer to a prompt, keyed by (resource, operation, target)."""

    request_id: str
    allowed: bool
    decided_by: str = "user"  # policy | user | auto
    reason: str
    outcome: ApprovalOutcome
    timestamp: float  # seconds, compared against the cache TTL


class PermissionCheck(BaseModel):
    """Result of :meth:`SecurityEngine.check_permission`."""

    allowed: bool
    reason: str
    policy_id: Optional[str] = None


class AuditEntry(BaseModel):
    """One append-only audit record."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    timestamp: int = Field(default_factory=now_ms)
    category: AuditCategory
    action: str
    target: str
    result: AuditResult
    risk: RiskLevel
    details: Optional[Dict[str, Any]] = None


class SecurityContext(BaseModel):
    """Read-only snapshot of the engine state, for settings and status views."""

    policies: List[SecurityPolicy]
    sandbox: SandboxConfig
    recent_audit: List[AuditEntry]
    pending_requests: List[PermissionRequest]


# ---------------------------------------------------------------------------
# Built-ins
# ---------------------------------------------------------------------------
GIT_PROTECTION_POLICY_ID = "block-git-writes"
DANGEROUS_COMMANDS_POLICY_ID = "block-dangerous-commands"

DEFAULT_POLICIES: List[SecurityPolicy] = [
    SecurityPolicy(
        id=GIT_PROTECTION_POLICY_ID,
        name="Protect Git Directory",
        description="Prevent modifications to the version-control (.git) directory",
        priority=100,
        conditions=PolicyConditions(
            resources=[ResourceType.FILE, ResourceType.DIRECTORY],
            operations=[OperationType.WRITE, OperationType.DELETE],
            path_patterns=["**/.git/**"],
        ),
        action=PermissionLevel.DENY,
        audit_level=AuditLevel.DETAILED,
    ),
    SecurityPolicy(
        id=DANGEROUS_COMMANDS_POLICY_ID,
        name="Block Dangerous Commands",
        description="Prevent execution of destructive system commands",
        priority=100,
        conditions=PolicyConditions(
            resources=[ResourceType.TERMINAL, ResourceType.PROCESS],
            operations=[OperationType.EXECUTE],
            command_patterns=[
                "rm -rf *",
                "rm -rf /",
                "mkfs*",
                "dd if=*",
                "shutdown*",
                "reboot*",
                ":(){:|:&};:",  # Fork bomb
                "chmod 777 *",
            ],
        ),
        action=PermissionLevel.DENY,
        audit_level=AuditLevel.DETAILED,
    ),
    SecurityPolicy(
        id="prompt-external-files",
        name="Prompt for External Files",
        description="Require approval for files outside workspace",
        priority=90,
        conditions=PolicyConditions(
            resources=[ResourceType.FILE, ResourceType.DIRECTORY],
            operations=[OperationType.READ, OperationType.WRITE],
            outside_workspace=True,
        ),
        action=PermissionLevel.PROMPT,
        requires_reason=True,
        audit_level=AuditLevel.BASIC,
    ),
    SecurityPolicy(
        id="allow-workspace-read",
        name="Allow Workspace Read",
        description="Allow reading files within workspace",
        priority=50,
        conditions=PolicyConditions(
            resources=[ResourceType.FILE, ResourceType.DIRECTORY],
            operations=[OperationType.READ],
            outside_workspace=False,
        ),
        action=PermissionLevel.ALLOW,
        audit_level=AuditLevel.NONE,
    ),
]

BUILTIN_POLICY_IDS = frozenset(p.id for p in DEFAULT_POLICIES)


def default_sandbox() -> SandboxConfig:
    """Sandbox used when none is configured."""
    return SandboxConfig(
        enabled=True,
        denied_paths=["**/.ssh/**", "**/.gnupg/**", "**/.aws/credentials"],
        denied_commands=["rm -rf /", "mkfs", "dd if=", "shutdown", "reboot"],
        network_access=False,
    )
