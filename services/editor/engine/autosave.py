"""Debounced autosave with at-most-one save in flight."""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from shared.constants import DEFAULT_AUTOSAVE_DEBOUNCE_MS, GRAPH_SAVE_TIMEOUT_SECONDS
from shared.exceptions import (
    Notice,
    PersistConflict,
    PersistError,
    PersistFailed,
    PersistTimeout,
)
from shared.types import AutosaveState, WorkflowGraph, WorkflowRecord
from services.editor.engine.graph_model import to_persisted_payload
from services.editor.infra.collaborators import PersistenceCollaborator

CONFLICT_NOTICE = Notice(
    level="warning",
    title="Draft conflict detected",
    description="Reloaded the latest draft from the server. Please retry your change.",
)
RELOAD_FAILED_NOTICE = Notice(
    level="error",
    title="Reload failed",
    description="Reload failed. Please refresh the page to continue.",
)


class AutosaveCoordinator:
    """Persists the live graph of one editor session.

    Edits are batched behind a debounce delay. A single flag guards the
    in-flight save; it is set before the first await and cleared in the
    completion path, so two saves can never both observe "not in flight".
    Edits landing while a save is outstanding are picked up by one follow-up
    save once it completes.
    """

    def __init__(
        self,
        workflow_id: str,
        persistence: PersistenceCollaborator,
        get_graph: Callable[[], WorkflowGraph],
        draft_revision: Optional[int] = None,
        on_reload: Optional[Callable[[WorkflowRecord], None]] = None,
        on_notice: Optional[Callable[[Notice], None]] = None,
        debounce_seconds: float = DEFAULT_AUTOSAVE_DEBOUNCE_MS / 1000.0,
        timeout_seconds: float = GRAPH_SAVE_TIMEOUT_SECONDS,
    ):
        self.workflow_id = workflow_id
        self.persistence = persistence
        self.get_graph = get_graph
        self.on_reload = on_reload
        self.on_notice = on_notice
        self.debounce_seconds = debounce_seconds
        self.timeout_seconds = timeout_seconds

        self._draft_revision = draft_revision
        self._acknowledged: Optional[Dict[str, Any]] = None
        self._timer: Optional[asyncio.Task] = None
        self._save_in_flight = False
        self._closed = False

    @property
    def draft_revision(self) -> Optional[int]:
        return self._draft_revision

    @property
    def state(self) -> AutosaveState:
        if self._save_in_flight:
            return AutosaveState.SAVING
        if self._timer is not None and not self._timer.done():
            return AutosaveState.PENDING_SAVE
        return AutosaveState.IDLE

    @property
    def closed(self) -> bool:
        return self._closed

    def acknowledge(self, graph: WorkflowGraph, draft_revision: Optional[int] = None) -> None:
        """Marks graph as the state the server already holds"""
        self._acknowledged = to_persisted_payload(graph)
        if draft_revision is not None:
            self._draft_revision = draft_revision

    def reset_acknowledged(self) -> None:
        self._acknowledged = None

    def has_unsaved_changes(self) -> bool:
        return to_persisted_payload(self.get_graph()) != self._acknowledged

    def notify_change(self) -> None:
        """Schedules a debounced save; the latest call wins"""
        if self._closed:
            logging.debug("Ignoring change after close", extra={"workflow_id": self.workflow_id})
            return
        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._debounced_flush())

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _debounced_flush(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # detach before saving so a later cancel never hits the save itself
        self._timer = None
        try:
            await self.flush()
        except PersistError:
            # already logged and surfaced as a notice
            return

    async def flush(self, timeout_seconds: Optional[float] = None) -> Optional[int]:
        """Saves the live graph now if it differs from the acknowledged snapshot.

        Returns the new draft revision, or None when nothing was sent.
        """
        if self._save_in_flight:
            logging.debug("Save already in flight, coalescing", extra={"workflow_id": self.workflow_id})
            return None

        payload = to_persisted_payload(self.get_graph())
        if payload == self._acknowledged:
            logging.debug("No changes to save", extra={"workflow_id": self.workflow_id})
            return None

        timeout = timeout_seconds or self.timeout_seconds
        base_revision = self._draft_revision
        self._save_in_flight = True
        try:
            result = await asyncio.wait_for(
                self.persistence.save_graph(self.workflow_id, payload, base_revision),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logging.warning(
                "Graph save timed out",
                extra={"workflow_id": self.workflow_id, "timeout_seconds": timeout},
            )
            self._notify(Notice(level="error", title="Autosave timed out",
                                description="Your changes are kept locally. Try again."))
            raise PersistTimeout(f"Save timed out after {timeout}s", self.workflow_id) from None
        except PersistConflict as e:
            logging.warning(
                "Draft conflict on save",
                extra={"workflow_id": self.workflow_id, "base_revision": base_revision,
                       "current_revision": e.current_revision},
            )
            self._cancel_timer()
            await self._reload_after_conflict()
            raise
        except PersistError as e:
            logging.warning("Graph save failed", extra={"workflow_id": self.workflow_id, "error": e.message})
            self._notify(Notice(level="error", title="Autosave failed", description=e.message))
            raise
        except Exception as e:
            logging.warning("Graph save failed", extra={"workflow_id": self.workflow_id, "error": str(e)})
            self._notify(Notice(level="error", title="Autosave failed", description=str(e)))
            raise PersistFailed(str(e), self.workflow_id) from e
        finally:
            self._save_in_flight = False

        self._acknowledged = payload
        self._draft_revision = result.draft_revision
        logging.info(
            "Graph saved",
            extra={"workflow_id": self.workflow_id, "draft_revision": result.draft_revision},
        )

        if not self._closed and self.has_unsaved_changes():
            self.notify_change()
        return result.draft_revision

    async def _reload_after_conflict(self) -> None:
        try:
            record = await asyncio.wait_for(
                self.persistence.get_workflow(self.workflow_id), timeout=self.timeout_seconds
            )
        except Exception as e:
            logging.error(
                "Failed to reload workflow after conflict",
                extra={"workflow_id": self.workflow_id, "error": str(e)},
            )
            self._notify(RELOAD_FAILED_NOTICE)
            return

        if self.on_reload:
            self.on_reload(record)
        self._draft_revision = record.draft_revision
        self._acknowledged = to_persisted_payload(record.graph)
        logging.info(
            "Reloaded workflow after conflict",
            extra={"workflow_id": self.workflow_id, "draft_revision": record.draft_revision},
        )
        self._notify(CONFLICT_NOTICE)

    async def close(self) -> Optional[int]:
        """Final flush when the editor closes.

        Skipped when a save is already outstanding, since that save carries
        the final state.
        """
        self._closed = True
        self._cancel_timer()
        if self._save_in_flight:
            logging.info("Save in flight at close, skipping final flush",
                         extra={"workflow_id": self.workflow_id})
            return None
        return await self.flush()

    def _notify(self, notice: Notice) -> None:
        if self.on_notice:
            self.on_notice(notice)
