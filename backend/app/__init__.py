"""Flask application factory."""

import json
import os
from flask import Flask
from flask_cors import CORS

DEFAULT_CONFIG_PATH = os.path.join(
    os.path.dirname(__file__), "..", "config", "dashboard-config.json"
)

DEFAULT_DASHBOARD_CONFIG = {
    "groupPath": None,
    "teamMembers": [],
    "categories": [
        "Requirements Engineering",
        "Entwurf",
        "Implementation & Test",
        "Projektmanagement"
    ],
    "sprintLengthWeeks": 1,
    "timezone": None
}

# Global dashboard config - defaults overlaid with the config file
_dashboard_config = dict(DEFAULT_DASHBOARD_CONFIG)


def load_dashboard_config(app, config_path=None):
    """Load dashboard settings from the config file, falling back to defaults."""
    global _dashboard_config
    config_path = config_path or DEFAULT_CONFIG_PATH
    _dashboard_config = dict(DEFAULT_DASHBOARD_CONFIG)

    if not os.path.exists(config_path):
        app.logger.info("No dashboard-config.json found, using default settings")
        return

    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        app.logger.warning(f"Failed to load dashboard config: {e}")
        return

    if not isinstance(config, dict):
        app.logger.warning("Dashboard config must be a JSON object, using defaults")
        return

    for key in DEFAULT_DASHBOARD_CONFIG:
        if key in config:
            _dashboard_config[key] = config[key]

    app.logger.info(
        f"Loaded dashboard config with {len(_dashboard_config['categories'])} categories "
        f"and {len(_dashboard_config['teamMembers'])} team members"
    )


def get_dashboard_config():
    """Current dashboard settings."""
    return _dashboard_config


def create_app(config_path=None):
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Enable CORS for frontend
    CORS(app, resources={
        r"/api/*": {
            "origins": ["http://localhost:3000", "http://127.0.0.1:3000"],
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": [
                "Content-Type",
                "X-GitLab-Token", "X-GitLab-Server"
            ]
        }
    })

    # Register blueprints
    from app.api import auth, metrics
    app.register_blueprint(auth.bp)
    app.register_blueprint(metrics.bp)

    load_dashboard_config(app, config_path)

    # Health check endpoint
    @app.route("/health")
    def health():
        return {"status": "ok"}

    return app
