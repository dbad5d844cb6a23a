"""Pydantic v2 models for node pools, nodes, upgrade operations and tool outputs."""

from __future__ import annotations

import re
import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from nodepool_upgrader.errors import InvalidTransitionError

UpgradeStrategy = Literal["Surge", "BlueGreen"]
NodeHealth = Literal["Pending", "Ready", "Draining", "Terminated", "Unhealthy"]
NodeColor = Literal["Blue", "Green"]
OperationPhase = Literal[
    "Planning",
    "BatchInProgress",
    "Soaking",
    "BatchComplete",
    "Completed",
    "Aborting",
    "Aborted",
    "Failed",
]
OperationResult = Literal["Succeeded", "Failed", "Aborted"]
BatchStatus = Literal["InProgress", "Soaking", "Complete", "Unhealthy", "RolledBack"]

TERMINAL_PHASES: frozenset[str] = frozenset({"Completed", "Aborted", "Failed"})

# Failed and Aborting are reachable from every non-terminal phase and are added below.
_TRANSITIONS: dict[str, set[str]] = {
    "Planning": {"BatchInProgress", "Completed"},
    "BatchInProgress": {"Soaking", "BatchComplete"},
    "Soaking": {"BatchComplete"},
    "BatchComplete": {"BatchInProgress", "Completed"},
    "Aborting": {"Aborted"},
}
for _phase, _targets in _TRANSITIONS.items():
    _targets.add("Failed")
    if _phase != "Aborting":
        _targets.add("Aborting")

_RESULT_FOR_PHASE: dict[str, OperationResult] = {
    "Completed": "Succeeded",
    "Aborted": "Aborted",
    "Failed": "Failed",
}


# --- Shared error model ---


class ToolError(BaseModel):
    """Structured error returned by all tools."""

    error: str
    source: str
    cluster: str
    partial_data: bool = False


# --- Output scrubbing ---

_IP_PATTERN = re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b")
_SUBSCRIPTION_PATTERN = re.compile(r"/subscriptions/[a-f0-9-]+", re.IGNORECASE)
_RESOURCE_GROUP_PATTERN = re.compile(r"/resourceGroups/[^/]+", re.IGNORECASE)
_FQDN_PATTERN = re.compile(r"\b[\w.-]+\.azmk8s\.io\b", re.IGNORECASE)


def scrub_sensitive_values(text: str) -> str:
    """Remove internal IPs, subscription IDs, resource group names, and AKS FQDNs from text.

    Node names (e.g., aks-userpool-00000001) and version strings are preserved.
    """
    if not text:
        return text
    # Resource groups first: they are nested under the subscription segment.
    result = _IP_PATTERN.sub("[REDACTED_IP]", text)
    result = _RESOURCE_GROUP_PATTERN.sub("/resourceGroups/[REDACTED]", result)
    result = _SUBSCRIPTION_PATTERN.sub("/subscriptions/[REDACTED]", result)
    result = _FQDN_PATTERN.sub("[REDACTED_FQDN]", result)
    return result


# --- Pool and node models ---


class NodePool(BaseModel):
    """A managed, homogeneous set of worker nodes and its rollout policy."""

    model_config = ConfigDict(validate_assignment=True)

    name: str
    cluster_id: str
    desired_count: int = Field(ge=1)
    current_version: str
    target_version: str | None = None
    strategy: UpgradeStrategy = "Surge"
    max_surge: int = Field(default=1, ge=0)
    max_unavailable: int = Field(default=0, ge=0)
    batch_percentage: int = Field(default=100, ge=1, le=100)
    soak_duration_seconds: float = Field(default=0.0, ge=0)

    @model_validator(mode="after")
    def _check_availability_bounds(self) -> NodePool:
        if self.max_unavailable > self.desired_count:
            msg = (
                f"max_unavailable ({self.max_unavailable}) cannot exceed "
                f"desired_count ({self.desired_count}) for pool {self.name!r}"
            )
            raise ValueError(msg)
        return self

    @property
    def pool_id(self) -> str:
        return f"{self.cluster_id}/{self.name}"


class Node(BaseModel):
    """A single worker node as seen by the orchestrator."""

    name: str
    pool: str
    version: str
    health: NodeHealth = "Pending"
    color: NodeColor | None = None


# --- Upgrade operation models ---


class BatchRecord(BaseModel):
    """One bounded group of nodes migrated together."""

    index: int
    size: int
    status: BatchStatus = "InProgress"
    new_nodes: list[str] = Field(default_factory=list)
    replaced_nodes: list[str] = Field(default_factory=list)
    retries: int = 0
    started_at: datetime
    finished_at: datetime | None = None


class OperationError(BaseModel):
    """The error kind that moved an operation to Failed."""

    kind: str
    message: str
    node: str | None = None


class UpgradeOperation(BaseModel):
    """A single rollout of a node pool to a target version."""

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    pool_id: str
    strategy: UpgradeStrategy
    source_version: str
    target_version: str
    phase: OperationPhase = "Planning"
    started_at: datetime
    finished_at: datetime | None = None
    batches: list[BatchRecord] = Field(default_factory=list)
    nodes: dict[str, Node] = Field(default_factory=dict)
    result: OperationResult | None = None
    error: OperationError | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def transition(self, phase: OperationPhase, at: datetime) -> None:
        """Move the operation to ``phase``, recording the result on terminal phases.

        Raises:
            InvalidTransitionError: If the state machine does not allow the move.
        """
        allowed = _TRANSITIONS.get(self.phase, set())
        if phase not in allowed:
            msg = f"Operation {self.operation_id} cannot move from {self.phase} to {phase}"
            raise InvalidTransitionError(msg)
        self.phase = phase
        if phase in TERMINAL_PHASES:
            self.result = _RESULT_FOR_PHASE[phase]
            self.finished_at = at

    def nodes_on_version(self, version: str) -> list[Node]:
        return [n for n in self.nodes.values() if n.version == version and n.health != "Terminated"]

    def live_nodes(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.health != "Terminated"]


# --- Tool output models ---


class NodePoolSummary(BaseModel):
    """A configured node pool and whether it is being upgraded."""

    pool_id: str
    current_version: str
    target_version: str | None = None
    strategy: UpgradeStrategy
    desired_count: int
    upgrade_in_flight: bool = False


class NodePoolListOutput(BaseModel):
    """Output for list_node_pools."""

    pools: list[NodePoolSummary]
    summary: str
    timestamp: str


class UpgradeOperationOutput(BaseModel):
    """Output for the start, abort and status tools."""

    cluster: str
    node_pool: str
    operation: UpgradeOperation | None = None
    nodes_total: int = 0
    nodes_upgraded: int = 0
    summary: str
    timestamp: str
    errors: list[ToolError] = Field(default_factory=list)
