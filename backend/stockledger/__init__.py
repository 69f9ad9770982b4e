# backend/stockledger/__init__.py
from __future__ import annotations

from flask import Flask

from .config import Config
from .extensions import db, migrate
from .logging_config import configure_logging


def create_app(config_overrides: dict | None = None, *, usage_collector=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        # Overrides must land before extensions read the config
        app.config.update(config_overrides)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Usage reporting; HTTP routes are registered by the embedding service
    from .services.usage_service import HttpUsageCollector, NullUsageCollector, init_usage_tracking
    if usage_collector is None:
        if app.config["USAGE_TRACKING_ENABLED"]:
            usage_collector = HttpUsageCollector.from_config(app.config)
        else:
            usage_collector = NullUsageCollector()
    init_usage_tracking(app, usage_collector)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
