"""Shared types for the workflow graph edit engine."""

from enum import Enum
from typing import Annotated, Dict, List, Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class BlockKind(str, Enum):
    TOOL = "tool"
    LLM = "llm"
    IF_ELSE = "if_else"
    FOR_LOOP = "for_loop"
    INPUT = "input"
    TRIGGER = "trigger"
    CODE = "code"  # deprecated


class BranchLabel(str, Enum):
    TRUE = "true"
    FALSE = "false"
    LOOP = "loop"
    EXIT = "exit"


class BindingMode(str, Enum):
    EVENT = "event"
    LITERAL = "literal"


class AutosaveState(str, Enum):
    IDLE = "IDLE"
    PENDING_SAVE = "PENDING_SAVE"
    SAVING = "SAVING"


class TriggerState(str, Enum):
    DRAFT = "DRAFT"
    SAVING = "SAVING"
    SUBSCRIBED = "SUBSCRIBED"
    DISCARDED = "DISCARDED"
    DELETING = "DELETING"
    DELETED = "DELETED"


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float = 0
    y: float = 0


class EdgeData(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    branch: Optional[BranchLabel] = None


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    source_slot: Optional[str] = None
    target_slot: Optional[str] = None
    data: Optional[EdgeData] = None

    @property
    def branch(self) -> Optional[BranchLabel]:
        return self.data.branch if self.data else None


class BindingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: BindingMode = BindingMode.EVENT
    value: str = ""


BindingState = Dict[str, BindingConfig]


class InputDef(BaseModel):
    type: Literal["string", "integer", "number", "boolean", "object", "array"] = "string"
    required: bool = True
    description: Optional[str] = None
    default: Optional[Any] = None


class TriggerDraft(BaseModel):
    """Trigger not yet persisted; lives only in the editor session"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["draft"] = "draft"
    id: str
    trigger_key: str
    initial_bindings: Dict[str, BindingConfig] = Field(default_factory=dict)
    initial_provider_config: Dict[str, Any] = Field(default_factory=dict)


class TriggerSubscription(BaseModel):
    """Server-confirmed trigger subscription"""
    model_config = ConfigDict(frozen=True)

    kind: Literal["subscription"] = "subscription"
    subscription_id: int
    workflow_id: Optional[str] = None
    trigger_key: str
    bindings: Dict[str, Any] = Field(default_factory=dict)
    provider_config: Dict[str, Any] = Field(default_factory=dict)
    provider_connection_id: Optional[int] = None
    enabled: bool = True
    created_at: Optional[str] = None
    updated_at: str
    webhook_url: Optional[str] = None
    secret_token: Optional[str] = None


TriggerMeta = Annotated[Union[TriggerDraft, TriggerSubscription], Field(discriminator="kind")]


class Node(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    kind: BlockKind
    label: str = ""
    position: Position = Field(default_factory=Position)
    config: Dict[str, Any] = Field(default_factory=dict)
    trigger_meta: Optional[TriggerMeta] = None


class WorkflowGraph(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str = "1"
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def edges_from(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]


class WorkflowRecord(BaseModel):
    """Last-persisted server copy of a workflow"""
    workflow_id: str
    name: str = "Untitled Workflow"
    graph: WorkflowGraph = Field(default_factory=WorkflowGraph)
    inputs: Dict[str, InputDef] = Field(default_factory=dict)
    draft_revision: int
    updated_at: Optional[str] = None


class SaveResult(BaseModel):
    draft_revision: int


class SubscriptionCreateRequest(BaseModel):
    workflow_id: str
    trigger_key: str
    bindings: Dict[str, Any] = Field(default_factory=dict)
    provider_config: Optional[Dict[str, Any]] = None
    provider_connection_id: Optional[int] = None
    enabled: bool = True


class ResourceHandle(BaseModel):
    """Bound external resource (e.g. a Supabase project)"""
    resource_id: str
    label: Optional[str] = None


class IntegrationStatus(BaseModel):
    """Readiness of OAuth-backed integrations, supplied by the host"""
    gmail_ready: bool = False
    gmail_connection_id: Optional[int] = None
