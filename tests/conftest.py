import pytest

from poolbet.database import get_connection, init_database


@pytest.fixture
def db_path(tmp_path):
    path = tmp_path / "poolbet.db"
    conn = get_connection(path)
    init_database(conn)
    conn.close()
    return path


@pytest.fixture
def conn(db_path):
    conn = get_connection(db_path)
    yield conn
    conn.close()
