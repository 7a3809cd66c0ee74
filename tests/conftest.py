import os
import tempfile

os.environ.setdefault("BOOK_AGGREGATOR_LOG_DIR", tempfile.mkdtemp(prefix="book-aggregator-logs-"))

import pytest

from book_aggregator.catalog import IngestService, SqlAlchemyCanonicalRepository
from book_aggregator.config_manager import AggregatorSettings
from book_aggregator.config_manager import loader as cfg_loader
from book_aggregator.database import build_engine, build_session_factory, init_schema
from book_aggregator.logging_manager import clear_log_context


@pytest.fixture(autouse=True)
def _reset_global_state(monkeypatch):
    monkeypatch.setattr(cfg_loader, "_ACTIVE_SETTINGS", None)
    monkeypatch.setattr(cfg_loader, "_DOTENV_LOADED", True)
    yield
    clear_log_context()


@pytest.fixture
def settings() -> AggregatorSettings:
    return AggregatorSettings(
        database_url="sqlite://",
        redis_url=None,
        archive_prefix="books/v1/",
        processed_folder="processed/",
        migration_batch_size=10,
        migration_max_workers=4,
        migration_page_size=25,
        retry_max_attempts=3,
        retry_initial_delay_seconds=0.0,
        lookup_retry_attempts=2,
        lookup_retry_initial_delay=0.0,
    )


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'catalog.db'}")
    init_schema(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory) -> SqlAlchemyCanonicalRepository:
    return SqlAlchemyCanonicalRepository(session_factory)


@pytest.fixture
def ingest(repository) -> IngestService:
    return IngestService(repository)
