"""Shared fixtures for flashmorse tests."""

from __future__ import annotations

import pytest


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    import app as app_module
    from routes import register_blueprints

    app_module.app.config['TESTING'] = True
    register_blueprints(app_module.app)
    return app_module.app


@pytest.fixture
def client(app):
    return app.test_client()
