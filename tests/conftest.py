import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DRIVEKENYA_DB", str(db_path))
    import drivekenya_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("DRIVEKENYA_DB", str(db_path))

    import drivekenya_rec.config as config
    import drivekenya_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


@pytest.fixture
def fresh_cli(fresh_db):
    """CLI module rebound to the temporary database."""
    import drivekenya_rec.cli as cli

    importlib.reload(cli)
    return cli


def seed_marketplace(database, users=(), cars=(), bookings=(), reviews=(), searches=()):
    """Insert row dicts into the SQLite store."""
    tables = [
        ("users", users),
        ("cars", cars),
        ("bookings", bookings),
        ("reviews", reviews),
        ("user_searches", searches),
    ]
    with database.get_db() as conn:
        for table, rows in tables:
            for row in rows:
                columns = ", ".join(row)
                placeholders = ", ".join("?" * len(row))
                conn.execute(
                    f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                    tuple(row.values()),
                )
