"""Jira connectivity health endpoint."""

from flask import Blueprint, jsonify

from app.api.credentials import build_jira_client, missing_credentials_response

bp = Blueprint("health", __name__, url_prefix="/api/health")


@bp.route("/jira", methods=["GET"])
def jira_health():
    """Check the request's Jira credentials by fetching the current user.

    Returns 401 for rejected credentials and 503 when Jira is unreachable.
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    result = client.check_connection()
    if result.success:
        return jsonify({"data": {"healthy": True, "user": result.data}})

    if client.auth_failed:
        return jsonify({"error": "Invalid credentials", "healthy": False}), 401
    return jsonify({"error": f"Failed to connect to Jira: {result.error}", "healthy": False}), 503
