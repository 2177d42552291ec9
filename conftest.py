import pytest

import app as server
import db


@pytest.fixture
def database(tmp_path, monkeypatch):
    path = str(tmp_path / 'keys.db')
    monkeypatch.setattr(db, 'database', path)
    db.init_db()
    return path


@pytest.fixture
def client(database):
    server.app.testing = True
    return server.app.test_client()


@pytest.fixture(scope='session')
def pem():
    return server.serialize_key(server.generate_key())
