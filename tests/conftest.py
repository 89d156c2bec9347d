from typing import List, Sequence
import pytest
from sqlalchemy import func, select
from roster.ingest import SourceTable, read_table
from roster.store import create_schema, make_engine


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    # rules.json / profiles.json never leak between tests or from the user's machine
    d = tmp_path / "data"
    monkeypatch.setenv("ROSTER_DATA_DIR", str(d))
    monkeypatch.delenv("ROSTER_DB_URL", raising=False)
    return d


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'roster.db'}")
    create_schema(engine)
    yield engine
    engine.dispose()


def csv_table(headers: Sequence[str], rows: Sequence[Sequence[str]], name: str = "roster.csv") -> SourceTable:
    lines: List[str] = [",".join(headers)] + [",".join(r) for r in rows]
    return read_table(("\n".join(lines) + "\n").encode("utf-8"), name, source_name=name)


def count(engine, model) -> int:
    with engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(model.__table__)).scalar_one()


def fetch_all(engine, model):
    with engine.connect() as conn:
        return conn.execute(select(model.__table__)).all()
