"""Boundary contracts the edit engine consumes.

Rendering, OAuth and API transport live behind these interfaces; the engine
only awaits them.
"""

from typing import Any, Dict, List, Optional, Protocol
from shared.types import (
    InputDef,
    ResourceHandle,
    SaveResult,
    SubscriptionCreateRequest,
    TriggerSubscription,
    WorkflowRecord,
)


class PersistenceCollaborator(Protocol):

    async def save_graph(self, workflow_id: str, graph: Dict[str, Any],
                         base_revision: Optional[int] = None) -> SaveResult:
        """Stores the graph body; raises PersistConflict when base_revision is stale"""
        ...

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        ...


class TriggerCollaborator(Protocol):

    async def create_subscription(self, request: SubscriptionCreateRequest) -> TriggerSubscription:
        ...

    async def update_subscription(self, subscription_id: int, bindings: Dict[str, Any],
                                  provider_config: Optional[Dict[str, Any]] = None) -> TriggerSubscription:
        ...

    async def toggle_subscription(self, subscription_id: int, enabled: bool) -> TriggerSubscription:
        ...

    async def delete_subscription(self, subscription_id: int) -> None:
        ...

    async def list_subscriptions(self, workflow_id: str) -> List[TriggerSubscription]:
        ...


class WorkflowInputsCollaborator(Protocol):

    async def update_workflow_inputs(self, workflow_id: str, inputs: Dict[str, InputDef]) -> Dict[str, InputDef]:
        """Replaces the complete declared-inputs map and returns the stored one"""
        ...


class ResourceBindingCollaborator(Protocol):
    """Supabase project binding, via OAuth or a manually entered service-role key"""

    async def bind_project_oauth(self, project_ref: str) -> ResourceHandle:
        ...

    async def bind_project_manual(self, project_ref: str, service_role_key: str) -> ResourceHandle:
        ...
