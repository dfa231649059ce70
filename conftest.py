# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so config classes and the
# module-level app resolve to TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402
from timetiles_app.models import db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path_factory):
    """Create a Flask application backed by its own temporary SQLite file"""
    import uuid

    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    app_dir = tmp_path_factory.mktemp("app")
    upload_dir = app_dir / "uploads"
    instance_dir = app_dir / "instance"
    instance_dir.mkdir()

    try:
        flask_app = create_app(
            TestingConfig,
            SQLALCHEMY_DATABASE_URI=f"sqlite:///{temp_db}",
            SQLALCHEMY_ECHO=False,
            IMPORTER_ENABLED=True,
            IMPORTER_WORKER_ENABLED=False,
            IMPORTER_UPLOAD_DIR=str(upload_dir),
            CELERY_SQLITE_PATH=str(instance_dir / "celery.sqlite"),
            GEOCODING_PROVIDERS_PATH=None,
            GOOGLE_MAPS_API_KEY=None,
            OPENCAGE_API_KEY=None,
            LOG_LEVEL="DEBUG",
        )

        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
    finally:
        # Always close and remove the temporary database file, even on error
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
