from __future__ import annotations

import os

import pytest

from citriage.store.db import Database


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("CITRIAGE_"):
            monkeypatch.delenv(k, raising=False)


@pytest.fixture()
def db(tmp_path) -> Database:
    return Database(db_path=str(tmp_path / "citriage.sqlite3"))
