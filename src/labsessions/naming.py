"""Naming conventions for runtime resources owned by a session."""

from __future__ import annotations

SESSION_LABEL = "lab.session"
PROJECT_LABEL = "lab.project"
CONTAINER_LABEL = "lab.container"


def format_network_name(session_id: str) -> str:
    return f"lab-{session_id}"


def format_container_name(session_id: str, container_id: str) -> str:
    return f"lab-{session_id}-{container_id}"


def format_unique_hostname(session_id: str, container_id: str) -> str:
    """Per-container alias on the session network; unique across sessions."""
    return f"s-{session_id[:8]}-{container_id}"


def format_network_alias(session_id: str, port: int) -> str:
    return f"{session_id}--{port}"


def format_container_workspace_path(session_id: str, container_id: str, mount: str) -> str:
    return f"{mount}/{session_id}/{container_id}"


def format_proxy_url(session_id: str, port: int, base_domain: str) -> str:
    return f"http://{session_id}--{port}.{base_domain}"
