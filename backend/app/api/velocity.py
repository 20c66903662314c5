"""Sprint velocity API endpoints."""

from flask import Blueprint, current_app, jsonify, request

from app.api.credentials import (
    auth_failed_response,
    build_jira_client,
    get_bool_arg,
    get_state,
    missing_credentials_response,
)
from services.errors import ConfigurationError
from services.models import to_iso
from services.staged_loader import StagedLoader
from services.velocity import VelocityCalculator
from services.velocity_cache import VelocityCacheService
from services.velocity_stages import VelocityStageRunner, response_cache_prefix

bp = Blueprint("velocity", __name__, url_prefix="/api/velocity")


def build_runner(client) -> VelocityStageRunner:
    state = get_state()
    velocity_cache = VelocityCacheService(state.repository_for(client.server), state.config)
    return VelocityStageRunner(
        client, state.board_cache, state.config, velocity_cache, state.response_cache
    )


def get_int_arg(name: str, default: int) -> int:
    """Integer query param.

    Raises:
        ConfigurationError: if the value is not an integer.
    """
    value = request.args.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer")


@bp.route("/boards", methods=["GET"])
def list_boards():
    """Boards visible to the user.

    Query params:
        - project: Optional project key to filter by
        - type: Optional board type (scrum or kanban)
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    result = client.get_boards(request.args.get("project") or None, request.args.get("type") or None)
    if client.auth_failed:
        return auth_failed_response()
    if not result.success:
        return jsonify({"error": result.error or "Failed to fetch boards"}), 500

    return jsonify({"data": {"boards": result.data, "total": len(result.data)}})


@bp.route("/<int:board_id>/quick", methods=["GET"])
def get_quick(board_id):
    """Active sprint velocity plus the list of closed sprints.

    Cached for a few minutes; cached responses carry ``fromCache: true``.
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    try:
        data = build_runner(client).quick(board_id)
    except Exception as e:
        current_app.logger.exception(f"Quick velocity failed for board {board_id}")
        return jsonify({"error": str(e), "stage": "quick"}), 500

    if client.auth_failed:
        return auth_failed_response()
    return jsonify({"data": data})


@bp.route("/<int:board_id>/batch", methods=["GET"])
def get_batch(board_id):
    """Validated velocities for a slice of closed sprints.

    Query params:
        - start: First closed-sprint index, newest first (default 0)
        - end: End index, exclusive (default 5)
        - maxIssues: Estimated issue ceiling, 50-200 (default 150)
        - force_refresh: Recompute sprints even if stored
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    try:
        start = get_int_arg("start", 0)
        end = get_int_arg("end", 5)
        max_issues = get_int_arg("maxIssues", get_state().config.max_issues_per_batch)
        data = build_runner(client).batch(
            board_id, start, end, max_issues, force_refresh=get_bool_arg("force_refresh")
        )
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception as e:
        current_app.logger.exception(f"Batch velocity failed for board {board_id}")
        return jsonify({"error": str(e), "stage": "batch"}), 500

    if client.auth_failed:
        return auth_failed_response()
    return jsonify({"data": data})


@bp.route("/<int:board_id>", methods=["GET"])
def get_velocity(board_id):
    """Full staged load: quick stage, every batch slice, combined metrics."""
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    state = get_state()
    try:
        loader = StagedLoader(build_runner(client), state.config, state.repository_for(client.server))
        data = loader.load(board_id, force_refresh=get_bool_arg("force_refresh"))
    except Exception as e:
        current_app.logger.exception(f"Staged velocity load failed for board {board_id}")
        return jsonify({"error": str(e)}), 500

    if client.auth_failed:
        return auth_failed_response()
    return jsonify({"data": data})


@bp.route("/<int:board_id>/cached", methods=["GET"])
def get_cached_velocity(board_id):
    """Closed-sprint velocities, served from the database when fresh.

    Query params:
        - force_refresh: Ignore stored sprints and recompute
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    state = get_state()
    try:
        sprints_result = client.get_board_sprints(board_id)
        if client.auth_failed:
            return auth_failed_response()
        sprints = sprints_result.data if sprints_result.success else []
        cache = VelocityCacheService(state.repository_for(client.server), state.config)
        calculator = VelocityCalculator(client, state.board_cache, default_board_id=board_id)
        result = cache.get_velocity(
            board_id, sprints, calculator, force_refresh=get_bool_arg("force_refresh")
        )
    except Exception as e:
        current_app.logger.exception(f"Cached velocity failed for board {board_id}")
        return jsonify({"error": str(e)}), 500

    if client.auth_failed:
        return auth_failed_response()
    data = result.to_dict()
    data["boardId"] = board_id
    if not sprints_result.success:
        data["error"] = sprints_result.error
    return jsonify({"data": data})


@bp.route("/<int:board_id>/cache", methods=["GET"])
def get_board_cache(board_id):
    """Stored closed-sprint velocities for a board. No sprint data is fetched.

    The board is looked up first so only users who can see it read its cache.
    """
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    state = get_state()
    info = client.get_board_info(board_id)
    if client.auth_failed:
        return auth_failed_response()
    if not info.success:
        return jsonify({"error": info.error}), info.status_code or 500

    try:
        cache = VelocityCacheService(state.repository_for(client.server), state.config)
        data = cache.get_cached_summary(board_id)
    except Exception as e:
        current_app.logger.exception(f"Reading velocity cache failed for board {board_id}")
        return jsonify({"error": "Failed to retrieve cache information", "details": str(e)}), 500

    data["responseCacheEntries"] = state.response_cache.count_prefix(
        response_cache_prefix(client, board_id)
    )
    return jsonify({"data": data})


@bp.route("/<int:board_id>/cache", methods=["POST"])
def refresh_board_cache(board_id):
    """Invalidate a board's cached data and recompute its closed sprints."""
    client = build_jira_client()
    if client is None:
        return missing_credentials_response()

    state = get_state()
    try:
        sprints_result = client.get_board_sprints(board_id)
        if client.auth_failed:
            return auth_failed_response()
        if not sprints_result.success:
            return jsonify({"error": sprints_result.error or "Failed to fetch sprints"}), 500

        state.board_cache.invalidate(board_id, server=client.server)
        cleared = state.response_cache.clear_prefix(response_cache_prefix(client, board_id))
        cache = VelocityCacheService(state.repository_for(client.server), state.config)
        calculator = VelocityCalculator(client, state.board_cache, default_board_id=board_id)
        result = cache.get_velocity(board_id, sprints_result.data, calculator, force_refresh=True)
    except Exception as e:
        current_app.logger.exception(f"Refreshing velocity cache failed for board {board_id}")
        return jsonify({"error": "Failed to refresh cache", "details": str(e)}), 500

    if client.auth_failed:
        return auth_failed_response()
    return jsonify({
        "data": {
            "boardId": board_id,
            "refreshed": True,
            "responseCacheEntriesCleared": cleared,
            "totalSprints": result.total_sprints,
            "velocitiesCount": len(result.velocities),
            "lastUpdated": to_iso(result.last_updated),
            "failedSprints": list(result.failed_sprint_ids),
            "database": result.database,
        }
    })
