"""Tests for ORM models and database helpers.

These tests verify the BuildRecord model and the session helpers using
SQLite databases.
"""

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from depcache.builds.models import BuildRecord
from depcache.db import Base, create_all_tables, get_engine, get_session
from depcache.types import BuildStatus, PipelineState

DIGEST = "sha256:" + "ab" * 32


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_record(**overrides) -> BuildRecord:
    """Create a BuildRecord with defaults."""
    values = {
        "project_name": "server",
        "recipe_digest": DIGEST,
        "toolchain_version": "v7",
        "target_platform": "linux-x64",
    }
    values.update(overrides)
    return BuildRecord(**values)


class TestDatabaseSetup:
    """Test database setup and helpers."""

    def test_get_engine_creates_parent_dir(self, tmp_path):
        """get_engine should create the directory of a SQLite file."""
        db_path = tmp_path / "nested" / "test.db"
        engine = get_engine(f"sqlite:///{db_path}")
        assert engine is not None
        assert db_path.parent.is_dir()

    def test_create_all_tables(self, tmp_path):
        """create_all_tables should create the build records table."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        assert "build_records" in Base.metadata.tables

    def test_get_session_commits(self, tmp_path):
        """get_session should commit on success."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with get_session(factory) as session:
            session.add(make_record())

        with get_session(factory) as session:
            result = session.execute(select(BuildRecord)).scalars().all()
            assert len(result) == 1
            assert result[0].project_name == "server"

    def test_get_session_rolls_back(self, tmp_path):
        """get_session should roll back when the block raises."""
        engine = get_engine(f"sqlite:///{tmp_path / 'test.db'}")
        create_all_tables(engine)
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        with pytest.raises(RuntimeError), get_session(factory) as session:
            session.add(make_record())
            session.flush()
            raise RuntimeError("boom")

        with get_session(factory) as session:
            assert session.execute(select(BuildRecord)).scalars().all() == []


class TestBuildRecordModel:
    """Test BuildRecord model operations."""

    def test_defaults(self, session):
        """A new record should be pending and not a cache hit."""
        record = make_record()
        session.add(record)
        session.commit()

        assert record.id is not None
        assert record.status == BuildStatus.PENDING.value
        assert record.is_cache_hit is False
        assert record.requested_at is not None
        assert record.started_at is None

    def test_lifecycle(self, session):
        """mark_running and mark_succeeded should stamp times."""
        record = make_record()
        session.add(record)
        record.mark_running()
        assert record.status == BuildStatus.RUNNING.value
        assert record.started_at is not None

        record.mark_succeeded()
        record.pipeline_state = PipelineState.DONE.value
        session.commit()

        assert record.is_succeeded()
        assert record.finished_at is not None

    def test_mark_failed(self, session):
        """mark_failed should record the error."""
        record = make_record()
        session.add(record)
        record.mark_failed(error_type="toolchain_failure", message="exit code 101")
        session.commit()

        assert record.status == BuildStatus.FAILED.value
        assert record.error_type == "toolchain_failure"
        assert record.error_message == "exit code 101"
        assert not record.is_succeeded()

    def test_repr(self):
        """repr should include the project and a truncated digest."""
        text = repr(make_record())
        assert "server" in text
        assert DIGEST[:23] in text
