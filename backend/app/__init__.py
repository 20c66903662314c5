"""Flask application factory."""

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from flask import Flask
from flask_cors import CORS

from services.board_cache import BoardStatusCache
from services.config import MetricsConfig
from services.repository import (
    InMemorySprintRepository,
    JsonFileSprintRepository,
    SprintRepository,
    server_scoped_path,
)
from services.response_cache import ResponseCache


@dataclass
class FlowMetricsState:
    """Process-wide objects shared by every request."""

    config: MetricsConfig
    board_cache: BoardStatusCache
    response_cache: ResponseCache
    repository_factory: Callable[[str], SprintRepository]
    repositories: Dict[str, SprintRepository] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def repository_for(self, server: str) -> SprintRepository:
        """One repository per Jira server; sprint and board ids are only unique within a server."""
        with self._lock:
            if server not in self.repositories:
                self.repositories[server] = self.repository_factory(server)
            return self.repositories[server]


def build_repository(config: MetricsConfig, server: str, app) -> SprintRepository:
    if config.persistence_path:
        path = server_scoped_path(config.persistence_path, server)
        app.logger.info(f"Persisting closed sprints for {server} to {path}")
        return JsonFileSprintRepository(path)
    app.logger.info(f"No persistence path configured, closed sprints for {server} are kept in memory")
    return InMemorySprintRepository()


def create_app(config: Optional[MetricsConfig] = None,
               repository_factory: Optional[Callable[[str], SprintRepository]] = None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Enable CORS for frontend
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:5173", "http://127.0.0.1:5173"],
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": [
                "Content-Type",
                "X-Jira-Token", "X-Jira-Email", "X-Jira-Server"
            ]
        }
    })

    config = config or MetricsConfig.load()
    if repository_factory is None:
        def repository_factory(server):
            return build_repository(config, server, app)

    app.extensions["flow_metrics"] = FlowMetricsState(
        config=config,
        board_cache=BoardStatusCache(config.board_cache_ttl_seconds),
        response_cache=ResponseCache(),
        repository_factory=repository_factory,
    )

    # Register blueprints
    from app.api import debug, health, kanban, velocity
    app.register_blueprint(velocity.bp)
    app.register_blueprint(kanban.bp)
    app.register_blueprint(health.bp)
    app.register_blueprint(debug.bp)

    # Health check endpoint
    @app.route("/health")
    def health_check():
        return {"status": "ok"}

    return app
