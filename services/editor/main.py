"""Editor service wiring: settings, logging and the Redis-backed store."""

import asyncio
import logging
import sys
from typing import Optional
from shared.config import EditorSettings
from shared.logging_config import setup_logging
from services.editor.infra.redis_store import RedisWorkflowStore
from services.editor.session import EditorSession


def create_store(settings: EditorSettings) -> RedisWorkflowStore:
    return RedisWorkflowStore(settings.redis_url, webhook_base_url=settings.webhook_base_url)


def create_session(workflow_id: str, store: RedisWorkflowStore,
                   settings: Optional[EditorSettings] = None) -> EditorSession:
    """Builds an editor session whose collaborators are all served by store"""
    settings = settings or EditorSettings.from_env()
    return EditorSession(
        workflow_id,
        persistence=store,
        triggers=store,
        inputs_api=store,
        settings=settings,
        on_notice=lambda notice: logging.info(notice.title, extra={"notice": notice.to_dict()}),
    )


async def inspect_workflow(workflow_id: str) -> int:
    """Opens a workflow, reports its advisory warnings, and closes without editing"""
    settings = EditorSettings.from_env()
    store = create_store(settings)
    try:
        session = create_session(workflow_id, store, settings)
        await session.open()
        for warning in session.warnings():
            logging.warning(warning, extra={"workflow_id": workflow_id})
        await session.close()
    finally:
        await store.close()
    return 0


if __name__ == "__main__":
    setup_logging("editor", EditorSettings.from_env().log_level)
    if len(sys.argv) != 2:
        logging.error("usage: python -m services.editor.main <workflow_id>")
        sys.exit(2)
    sys.exit(asyncio.run(inspect_workflow(sys.argv[1])))
