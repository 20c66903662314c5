"""Debug API endpoints for troubleshooting caches."""

from flask import Blueprint, current_app, jsonify

from app.api.credentials import get_state

bp = Blueprint("debug", __name__, url_prefix="/api/debug")


@bp.route("/cache", methods=["GET"])
def cache_stats():
    """Board status cache and response cache statistics."""
    state = get_state()
    return jsonify({
        "data": {
            "boardCache": state.board_cache.stats(),
            "responseCache": state.response_cache.stats(),
            "databaseCacheEnabled": state.config.database_cache_enabled,
            "maxCacheAgeHours": state.config.max_cache_age_hours,
        }
    })


@bp.route("/cache/clear", methods=["POST"])
def clear_caches():
    """Drop every in-memory cache entry. Persisted sprints are kept."""
    state = get_state()
    board_entries = state.board_cache.stats()["entriesCount"]
    state.board_cache.invalidate()
    responses = state.response_cache.clear()
    current_app.logger.info(f"Cleared {board_entries} board configs and {responses} cached responses")
    return jsonify({
        "data": {
            "cleared": True,
            "boardCacheEntries": board_entries,
            "responseCacheEntries": responses,
        }
    })
