# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from timetiles_app.importer import init_importer  # noqa: E402
from timetiles_app.models import db  # noqa: E402
from timetiles_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIG_BY_ENV = {
    "production": ProductionConfig,
    "testing": TestingConfig,
    "development": DevelopmentConfig,
}


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        try:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)

    return _configure_sqlite_connection


def create_app(config_object=None, **overrides) -> Flask:
    """
    Build the Flask app for the current ``FLASK_ENV`` (or ``config_object``).

    Keyword overrides are applied on top of the config class before any
    extension reads the configuration.
    """
    flask_env = os.environ.get("FLASK_ENV", "development")
    if config_object is None:
        config_object = CONFIG_BY_ENV.get(flask_env, DevelopmentConfig)

    flask_app = Flask(__name__)
    flask_app.config.from_object(config_object)
    flask_app.config.update(overrides)

    if not flask_app.config.get("SQLALCHEMY_DATABASE_URI"):
        raise RuntimeError("DATABASE_URL must be set for the configured environment.")

    db.init_app(flask_app)
    setup_logging(flask_app)

    with flask_app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite"):
            if not getattr(engine, "_sqlite_pragmas_configured", False):
                pragma_hook = _configure_sqlite_connection_factory(
                    enable_foreign_keys=not flask_app.config.get("TESTING", False)
                )
                event.listen(engine, "connect", pragma_hook)
                engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]
        # Create the database tables only if not in testing mode
        if not flask_app.config.get("TESTING", False):
            db.create_all()

    init_importer(flask_app)

    @flask_app.errorhandler(404)
    def not_found_error(error):
        return jsonify({"error": "Not found"}), 404

    @flask_app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error"}), 500

    return flask_app


app = create_app()


if __name__ == "__main__":
    # Use production-ready server configuration
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
