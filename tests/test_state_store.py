"""
Tests for the JSON-file and database state stores.
"""
import json
import math
import os

import pytest
from sqlalchemy.orm import sessionmaker

from sniperdesk.database import init_db, make_engine
from sniperdesk.models.database import StateSnapshot
from sniperdesk.services.persistence.state_store import DatabaseStateStore, JsonFileStateStore


@pytest.fixture
def json_store(tmp_path):
    return JsonFileStateStore(str(tmp_path / "state"))


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'state.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def test_json_round_trip(json_store):
    payload = {"version": 2, "total_trades": 3, "history": [{"pnl": 1.5}]}
    assert json_store.save_state("risk_state", payload)
    assert json_store.load_state("risk_state") == payload

    leftovers = [f for f in os.listdir(json_store.data_dir) if f.startswith(".tmp-")]
    assert leftovers == []


def test_json_missing_key(json_store):
    assert json_store.load_state("nothing_here") is None


def test_json_non_finite_sanitized(json_store):
    json_store.save_state("k", {"a": math.nan, "b": [math.inf, 1.0]})
    assert json_store.load_state("k") == {"a": None, "b": [None, 1.0]}


def test_json_rejects_non_object(json_store, tmp_path):
    os.makedirs(json_store.data_dir, exist_ok=True)
    with open(os.path.join(json_store.data_dir, "k.json"), "w") as f:
        json.dump([1, 2, 3], f)
    assert json_store.load_state("k") is None


def test_json_corrupt_file(json_store):
    os.makedirs(json_store.data_dir, exist_ok=True)
    with open(os.path.join(json_store.data_dir, "k.json"), "w") as f:
        f.write("{not json")
    assert json_store.load_state("k") is None


def test_json_unserializable_reports_failure(json_store):
    assert not json_store.save_state("k", {"obj": object()})
    assert json_store.load_state("k") is None


def test_database_round_trip(session_factory):
    store = DatabaseStateStore(session_factory)
    assert store.load_state("learning_state") is None

    assert store.save_state("learning_state", {"version": 2, "total_learnings": 1})
    assert store.save_state("learning_state", {"version": 2, "total_learnings": 2})

    assert store.load_state("learning_state") == {"version": 2, "total_learnings": 2}

    db = session_factory()
    try:
        rows = db.query(StateSnapshot).all()
        assert len(rows) == 1
        assert rows[0].version == 2
    finally:
        db.close()


def test_database_keys_are_independent(session_factory):
    store = DatabaseStateStore(session_factory)
    store.save_state("risk_state", {"version": 2, "daily_pnl": -1.0})
    store.save_state("learning_state", {"version": 2, "q_table": {}})

    assert store.load_state("risk_state")["daily_pnl"] == -1.0
    assert store.load_state("learning_state")["q_table"] == {}
