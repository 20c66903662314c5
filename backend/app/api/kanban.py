"""Kanban board analytics API endpoints."""

from flask import Blueprint, current_app, jsonify, request

from app.api.credentials import (
    auth_failed_response,
    build_jira_client,
    get_state,
    missing_credentials_response,
)
from services.errors import ConfigurationError
from services.kanban_analytics import KanbanAnalyticsService, TimePeriodFilter

bp = Blueprint("kanban", __name__, url_prefix="/api/kanban")


def get_issue_types():
    """Get issue type names from the comma-separated issue_types query param."""
    types = request.args.get("issue_types", "")
    if not types:
        return []
    return [t.strip() for t in types.split(",") if t.strip()]


@bp.route("/<int:board_id>/analytics", methods=["GET"])
def get_analytics(board_id):
    """Cycle time percentiles, probability distribution and status times.

    Query params:
        - time_period: last_15_days, last_month, last_3_months or custom
        - start_date / end_date: Required for custom (e.g., "2024-01-01")
        - issue_types: Comma-separated issue type names
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    try:
        time_period = TimePeriodFilter.parse(
            request.args.get("time_period"),
            request.args.get("start_date"),
            request.args.get("end_date"),
        )
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 400

    state = get_state()
    try:
        service = KanbanAnalyticsService(client, state.board_cache, state.config.confidence_threshold)
        data = service.get_analytics(board_id, time_period, get_issue_types())
    except Exception as e:
        current_app.logger.exception(f"Kanban analytics failed for board {board_id}")
        return jsonify({"error": str(e)}), 500

    if client.auth_failed:
        return auth_failed_response()
    return jsonify({"data": data})


@bp.route("/<int:board_id>/issue-types", methods=["GET"])
def get_board_issue_types(board_id):
    """Distinct issue types on a board, for the issue type filter."""
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    state = get_state()
    result = KanbanAnalyticsService(client, state.board_cache).get_issue_types(board_id)
    if client.auth_failed:
        return auth_failed_response()
    if not result.success:
        return jsonify({"error": "Failed to fetch board issues", "issueTypes": []}), 500
    return jsonify({"data": result.data})
