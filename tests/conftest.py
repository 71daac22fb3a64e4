# tests/conftest.py
"""
Shared fixtures.

`app` is built with an in-memory audit database and a FakeGraph installed as
the Graph client factory, so routes run end to end without network access.
"""
import pytest

from app import create_app
from excel_bridge.extensions import db
from excel_bridge.services import name_resolver
from fake_graph import FakeGraph


@pytest.fixture
def graph():
    return FakeGraph()


@pytest.fixture
def app(graph):
    app = create_app({
        "TESTING": True,
        "APP_ENV": "test",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "NAME_CACHE_TTL_SECONDS": 0,
        "EMPTY_LIST_RETRY_DELAY_SECONDS": 0,
        "SHAREPOINT_SITE_ID": "site-1",
        "SHAREPOINT_SITE_URL": "",
        "SHAREPOINT_HOSTNAME": "",
        "SHAREPOINT_SITE_NAME": "",
        "RBAC_ENABLED": False,
    })
    app.extensions["graph_client_factory"] = lambda: graph
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _fresh_caches():
    name_resolver.clear_caches()
    yield
    name_resolver.clear_caches()


@pytest.fixture
def docs_drive(graph):
    """One 'Documents' drive holding a single budget workbook."""
    drive_id = graph.add_drive("Documents")
    item_id = graph.add_workbook(
        drive_id,
        "/Finance/Budget.xlsx",
        sheets={
            "Summary": [
                ["Name", "Amount", "Note"],
                ["foo", 10, "foo bar"],
                ["baz", 20, "Foo"],
            ],
        },
    )
    return drive_id, item_id
