"""Shared fixtures: SQLite stores on tmp_path, fake Redis/search/catalog, fixed clock."""

import pytest

from flyer_wizard.database import Database
from flyer_wizard.list_store import SQLiteShoppingListStore
from flyer_wizard.models import WizardConfig
from flyer_wizard.session_store import RedisSessionStore
from flyer_wizard.snapshots import OfferSnapshotRecorder
from flyer_wizard.wizard import WizardSessionManager
from helpers import (
    FakeCatalog,
    FakeRedis,
    FakeSearch,
    FixedClock,
    _run,
    grocery_catalog,
    grocery_list,
)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db(tmp_path):
    database = Database(str(tmp_path / "wizard.db"))
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def list_store(db):
    return SQLiteShoppingListStore(db)


@pytest.fixture
def recorder(db):
    return OfferSnapshotRecorder(db)


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def config():
    return WizardConfig()


@pytest.fixture
def session_store(redis_client, config):
    return RedisSessionStore(redis_client, config)


@pytest.fixture
def catalog():
    return FakeCatalog(version=1)


@pytest.fixture
def search():
    return FakeSearch(grocery_catalog())


@pytest.fixture
def seeded_list(list_store):
    items = grocery_list()
    for item in items:
        _run(list_store.add_item(item))
    return items


@pytest.fixture
def manager(session_store, list_store, search, recorder, catalog, config, clock, seeded_list):
    return WizardSessionManager(
        sessions=session_store,
        lists=list_store,
        search=search,
        snapshots=recorder,
        catalog=catalog,
        config=config,
        clock=clock,
    )
