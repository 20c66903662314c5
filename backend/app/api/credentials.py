"""Request-scoped Jira credentials and shared service access for blueprints.

Credentials arrive on every request in the X-Jira-* headers and are never
stored by the backend.
"""

from flask import current_app, jsonify, request

from services.jira_client import JiraClient

MISSING_CREDENTIALS = "Missing Jira credentials in headers"
AUTH_FAILED = "Jira authentication failed"


def get_jira_credentials():
    """Extract Jira credentials from request headers."""
    server = request.headers.get("X-Jira-Server", "").rstrip("/")
    email = request.headers.get("X-Jira-Email")
    token = request.headers.get("X-Jira-Token")

    if not all([server, email, token]):
        return None, None, None

    return server, email, token


def get_state():
    """Shared config, caches and per-server repositories built by create_app."""
    return current_app.extensions["flow_metrics"]


def build_jira_client():
    """JiraClient for the current request, or None without credentials."""
    server, email, token = get_jira_credentials()
    if not server:
        return None
    return JiraClient(server, email, token, timeout=get_state().config.request_timeout_seconds)


def missing_credentials_response():
    return jsonify({"error": MISSING_CREDENTIALS}), 401


def auth_failed_response():
    return jsonify({"error": AUTH_FAILED}), 401


def get_bool_arg(name: str) -> bool:
    return request.args.get(name, "").strip().lower() in ("1", "true", "yes")
