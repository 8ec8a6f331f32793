"""Shared utilities."""

import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_node_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:8]}"


def generate_edge_id(source: str, target: str, branch: Optional[str] = None) -> str:
    if branch:
        return f"edge-{source}-{target}-{branch}"
    return f"edge-{source}-{target}"


def generate_draft_id() -> str:
    return f"draft-{uuid.uuid4().hex}"


def generate_session_id() -> str:
    return uuid.uuid4().hex


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
