"""
Redis store for the editor service.

Implements the persistence, trigger and workflow-inputs collaborators.
"""

import functools
import json
import os
import secrets
from typing import Any, Dict, List, Optional
import redis.asyncio as redis
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError
from shared.exceptions import PersistConflict, PersistFailed, PersistTimeout
from shared.types import (
    InputDef,
    SaveResult,
    SubscriptionCreateRequest,
    TriggerSubscription,
    WorkflowGraph,
    WorkflowRecord,
)
from shared.utils import utc_now_iso
from services.editor.engine.graph_model import graph_from_payload
from services.editor.engine.providers import get_provider

# Compare-and-set on draft_revision: -2 unknown workflow, -1 stale base revision,
# otherwise the new revision
SAVE_GRAPH_SCRIPT = """
local key = KEYS[1]
if redis.call('EXISTS', key) == 0 then
    return -2
end
local current = tonumber(redis.call('HGET', key, 'draft_revision') or '0')
if ARGV[1] ~= '' and tonumber(ARGV[1]) ~= current then
    return -1
end
redis.call('HSET', key, 'graph', ARGV[2], 'updated_at', ARGV[3])
return redis.call('HINCRBY', key, 'draft_revision', 1)
"""


def workflow_key(workflow_id: str) -> str:
    return f"workflow:{workflow_id}"


def workflow_subscriptions_key(workflow_id: str) -> str:
    return f"workflow:{workflow_id}:subscriptions"


def subscription_key(subscription_id: int) -> str:
    return f"trigger:subscription:{subscription_id}"


SUBSCRIPTION_SEQ_KEY = "trigger:subscription_seq"


def handle_redis_errors(func):
    """Maps Redis client errors onto the persistence error taxonomy"""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisTimeoutError as e:
            raise PersistTimeout(f"Redis timed out in {func.__name__}: {e}") from e
        except RedisError as e:
            raise PersistFailed(f"Redis error in {func.__name__}: {e}") from e
    return wrapper


class RedisWorkflowStore:
    """Redis client wrapper for the editor service"""

    def __init__(self, redis_url: Optional[str] = None, webhook_base_url: str = "http://localhost:8000",
                 client=None):
        url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.client = client or redis.Redis.from_url(url, decode_responses=False)
        self.webhook_base_url = webhook_base_url.rstrip("/")

    async def close(self) -> None:
        await self.client.aclose()

    # Workflows

    @handle_redis_errors
    async def create_workflow(self, workflow_id: str, name: str = "Untitled Workflow",
                              graph: Optional[WorkflowGraph] = None,
                              inputs: Optional[Dict[str, InputDef]] = None) -> WorkflowRecord:
        record = WorkflowRecord(
            workflow_id=workflow_id,
            name=name,
            graph=graph or WorkflowGraph(),
            inputs=inputs or {},
            draft_revision=0,
            updated_at=utc_now_iso(),
        )
        await self.client.hset(workflow_key(workflow_id), mapping={
            "name": record.name,
            "graph": record.graph.model_dump_json(),
            "inputs": json.dumps({k: v.model_dump() for k, v in record.inputs.items()}),
            "draft_revision": record.draft_revision,
            "updated_at": record.updated_at,
        })
        return record

    @handle_redis_errors
    async def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        raw = await self.client.hgetall(workflow_key(workflow_id))
        if not raw:
            raise PersistFailed(f"Workflow '{workflow_id}' not found", workflow_id, status_code=404)
        fields = {k.decode('utf-8'): v.decode('utf-8') for k, v in raw.items()}
        return WorkflowRecord(
            workflow_id=workflow_id,
            name=fields.get("name") or "Untitled Workflow",
            graph=graph_from_payload(json.loads(fields.get("graph") or "{}")),
            inputs=json.loads(fields.get("inputs") or "{}"),
            draft_revision=int(fields.get("draft_revision") or 0),
            updated_at=fields.get("updated_at"),
        )

    @handle_redis_errors
    async def save_graph(self, workflow_id: str, graph: Dict[str, Any],
                         base_revision: Optional[int] = None) -> SaveResult:
        result = await self.client.eval(
            SAVE_GRAPH_SCRIPT, 1, workflow_key(workflow_id),
            "" if base_revision is None else str(base_revision),
            json.dumps(graph),
            utc_now_iso(),
        )
        result = int(result)
        if result == -2:
            raise PersistFailed(f"Workflow '{workflow_id}' not found", workflow_id, status_code=404)
        if result == -1:
            current = await self.client.hget(workflow_key(workflow_id), "draft_revision")
            raise PersistConflict(
                f"Draft revision {base_revision} is stale",
                workflow_id,
                current_revision=int(current) if current is not None else None,
            )
        return SaveResult(draft_revision=result)

    @handle_redis_errors
    async def update_workflow_inputs(self, workflow_id: str, inputs: Dict[str, InputDef]) -> Dict[str, InputDef]:
        key = workflow_key(workflow_id)
        if not await self.client.exists(key):
            raise PersistFailed(f"Workflow '{workflow_id}' not found", workflow_id, status_code=404)
        stored = {name: InputDef.model_validate(definition) for name, definition in inputs.items()}
        await self.client.hset(key, mapping={
            "inputs": json.dumps({name: d.model_dump() for name, d in stored.items()}),
            "updated_at": utc_now_iso(),
        })
        return stored

    # Trigger subscriptions

    async def _load_subscription(self, subscription_id: int) -> TriggerSubscription:
        raw = await self.client.get(subscription_key(subscription_id))
        if raw is None:
            raise PersistFailed(f"Subscription {subscription_id} not found", status_code=404)
        return TriggerSubscription.model_validate_json(raw)

    async def _store_subscription(self, subscription: TriggerSubscription) -> None:
        await self.client.set(subscription_key(subscription.subscription_id), subscription.model_dump_json())

    @handle_redis_errors
    async def create_subscription(self, request: SubscriptionCreateRequest) -> TriggerSubscription:
        subscription_id = int(await self.client.incr(SUBSCRIPTION_SEQ_KEY))
        now = utc_now_iso()
        webhook_url = secret_token = None
        if get_provider(request.trigger_key).server_generated_url:
            webhook_url = f"{self.webhook_base_url}/webhooks/{subscription_id}"
            secret_token = secrets.token_urlsafe(24)

        subscription = TriggerSubscription(
            subscription_id=subscription_id,
            workflow_id=request.workflow_id,
            trigger_key=request.trigger_key,
            bindings=request.bindings,
            provider_config=request.provider_config or {},
            provider_connection_id=request.provider_connection_id,
            enabled=request.enabled,
            created_at=now,
            updated_at=now,
            webhook_url=webhook_url,
            secret_token=secret_token,
        )
        pipe = self.client.pipeline()
        pipe.set(subscription_key(subscription_id), subscription.model_dump_json())
        pipe.sadd(workflow_subscriptions_key(request.workflow_id), subscription_id)
        await pipe.execute()
        return subscription

    @handle_redis_errors
    async def update_subscription(self, subscription_id: int, bindings: Dict[str, Any],
                                  provider_config: Optional[Dict[str, Any]] = None) -> TriggerSubscription:
        current = await self._load_subscription(subscription_id)
        changes: Dict[str, Any] = {"bindings": dict(bindings), "updated_at": utc_now_iso()}
        if provider_config is not None:
            changes["provider_config"] = dict(provider_config)
        updated = current.model_copy(update=changes)
        await self._store_subscription(updated)
        return updated

    @handle_redis_errors
    async def toggle_subscription(self, subscription_id: int, enabled: bool) -> TriggerSubscription:
        current = await self._load_subscription(subscription_id)
        updated = current.model_copy(update={"enabled": enabled, "updated_at": utc_now_iso()})
        await self._store_subscription(updated)
        return updated

    @handle_redis_errors
    async def delete_subscription(self, subscription_id: int) -> None:
        current = await self._load_subscription(subscription_id)
        pipe = self.client.pipeline()
        pipe.delete(subscription_key(subscription_id))
        if current.workflow_id:
            pipe.srem(workflow_subscriptions_key(current.workflow_id), subscription_id)
        await pipe.execute()

    @handle_redis_errors
    async def list_subscriptions(self, workflow_id: str) -> List[TriggerSubscription]:
        members = await self.client.smembers(workflow_subscriptions_key(workflow_id))
        subscriptions = []
        for member in sorted(int(m) for m in members):
            raw = await self.client.get(subscription_key(member))
            if raw is not None:
                subscriptions.append(TriggerSubscription.model_validate_json(raw))
        return subscriptions
