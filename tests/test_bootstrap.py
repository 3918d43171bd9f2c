# =============================================================================
# Unit Tests — Store Bootstrap CLI
# =============================================================================
#
# The sync session is patched; no PostgreSQL needed.
# =============================================================================

from contextlib import contextmanager
from unittest.mock import MagicMock, patch

from sqlalchemy.exc import ProgrammingError

from filings_rag.db import bootstrap


def _patched_session(error: Exception | None = None):
    session = MagicMock()
    if error is not None:
        session.execute.side_effect = error

    @contextmanager
    def _fake():
        yield session

    return _fake, session


def _executed(session) -> list[str]:
    return [str(call.args[0]) for call in session.execute.call_args_list]


class TestBootstrapModes:

    def test_bootstrap_installs_extension(self):
        fake, session = _patched_session()
        with patch("filings_rag.db.bootstrap.get_sync_session", fake):
            assert bootstrap.main(["bootstrap"]) == 0
        assert _executed(session) == ["CREATE EXTENSION IF NOT EXISTS vector"]

    def test_indexes_builds_hnsw_and_gin(self):
        fake, session = _patched_session()
        with patch("filings_rag.db.bootstrap.get_sync_session", fake):
            assert bootstrap.main(["indexes"]) == 0

        statements = _executed(session)
        assert len(statements) == 4
        assert "idx_chunks_embedding_hnsw" in statements[0]
        assert "hnsw (embedding vector_cosine_ops)" in statements[0]
        assert "m = 16, ef_construction = 64" in statements[0]
        assert all("IF NOT EXISTS" in s for s in statements)
        assert any("gin (time_based_facts)" in s for s in statements)
        assert any("gin (qualitative_facts)" in s for s in statements)
        assert any("gin (quantitative_facts)" in s for s in statements)

    def test_tables_uses_orm_metadata(self):
        engine = object()
        with patch("filings_rag.db.bootstrap.get_sync_engine", return_value=engine), \
             patch.object(bootstrap.Base.metadata, "create_all") as create_all:
            assert bootstrap.main(["tables"]) == 0
        create_all.assert_called_once_with(engine)


class TestBootstrapErrors:

    def test_missing_tables_reported(self):
        error = ProgrammingError(
            "CREATE INDEX ...", {}, Exception('relation "document_chunks" does not exist'),
        )
        fake, _ = _patched_session(error)
        with patch("filings_rag.db.bootstrap.get_sync_session", fake), \
             patch.object(bootstrap.logger, "error") as log_error:
            assert bootstrap.main(["indexes"]) == 1
        assert "Tables do not exist yet" in str(log_error.call_args.args[1])

    def test_missing_extension_reported(self):
        error = ProgrammingError(
            "CREATE INDEX ...", {},
            Exception('operator class "vector_cosine_ops" does not exist for access method "hnsw"'),
        )
        fake, _ = _patched_session(error)
        with patch("filings_rag.db.bootstrap.get_sync_session", fake), \
             patch.object(bootstrap.logger, "error") as log_error:
            assert bootstrap.main(["indexes"]) == 1
        assert "pgvector extension is not installed" in str(log_error.call_args.args[1])

    def test_other_database_error_exits_non_zero(self):
        error = ProgrammingError("CREATE EXTENSION ...", {}, Exception("permission denied"))
        fake, _ = _patched_session(error)
        with patch("filings_rag.db.bootstrap.get_sync_session", fake):
            assert bootstrap.main(["bootstrap"]) == 1
