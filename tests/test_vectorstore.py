# =============================================================================
# Unit Tests — Similarity Index (ChromaDB backend)
# =============================================================================
#
# Tests tenant-filtered search, thresholding, ordering and metadata
# round-trips using ChromaDB's in-process mode (no external services).
# pgvector search needs a running PostgreSQL instance; only its input
# validation and readiness check are tested here.
# =============================================================================

import asyncio
import math
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from filings_rag.db.models import Chunk, Company, Document
from filings_rag.errors import IndexUnavailable, InvalidInput
from filings_rag.models.facts import QuantitativeFact, TimeBasedFact
from filings_rag.services.vectorstore import (
    ChromaIndex,
    IndexedChunk,
    PgVectorIndex,
    _sanitise_chroma_metadata,
    _version_tuple,
    get_similarity_index,
    similarity_from_distance,
)

ACME = "acme-company-id"
GLOBEX = "globex-company-id"
QUERY = [1.0, 0.0, 0.0]


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _vector_with_similarity(similarity: float) -> list[float]:
    """Unit vector whose cosine similarity to QUERY is `similarity`."""
    return [similarity, math.sqrt(1 - similarity**2), 0.0]


def _indexed(chunk_id: str, embedding: list[float], **kwargs) -> IndexedChunk:
    return IndexedChunk(
        chunk_id=chunk_id,
        doc_id="doc-1",
        chunk_index=1,
        text=f"text of {chunk_id}",
        embedding=embedding,
        **kwargs,
    )


class TestChromaIndex:
    """Tests for ChromaIndex (in-process mode)."""

    def _make_index(self) -> ChromaIndex:
        """Fresh index with a unique collection per test."""
        return ChromaIndex(collection_name=f"test_{uuid.uuid4().hex}", dimensions=3)

    def test_acme_scenario(self):
        index = self._make_index()
        _run(index.add_chunks(ACME, [
            _indexed("c1", _vector_with_similarity(0.9)),
            _indexed("c2", _vector_with_similarity(0.7)),
            _indexed("c3", _vector_with_similarity(0.4)),
        ]))

        results = _run(index.search(QUERY, ACME, limit=5, similarity_threshold=0.6))

        assert [r.chunk_id for r in results] == ["c1", "c2"]
        assert results[0].similarity == pytest.approx(0.9, abs=1e-4)
        assert results[1].similarity == pytest.approx(0.7, abs=1e-4)

    @pytest.mark.parametrize("similarity", [0.6, 0.61, 0.63, 0.65, 0.69, 0.7])
    def test_chunk_exactly_at_threshold_included(self, similarity):
        index = self._make_index()
        _run(index.add_chunks(ACME, [_indexed("edge", _vector_with_similarity(similarity))]))

        results = _run(index.search(QUERY, ACME, similarity_threshold=similarity))

        assert [r.chunk_id for r in results] == ["edge"]
        assert results[0].similarity == pytest.approx(similarity, abs=1e-6)
        assert results[0].similarity >= similarity

    def test_tenant_isolation(self):
        index = self._make_index()
        # Globex holds the exact query vector; Acme only a weaker match
        _run(index.add_chunks(GLOBEX, [_indexed("g1", QUERY), _indexed("g2", QUERY)]))
        _run(index.add_chunks(ACME, [_indexed("a1", _vector_with_similarity(0.8))]))

        results = _run(index.search(QUERY, ACME, limit=1, similarity_threshold=0.0))

        assert [r.chunk_id for r in results] == ["a1"]

    def test_no_results_for_tenant_without_chunks(self):
        index = self._make_index()
        _run(index.add_chunks(ACME, [_indexed("a1", QUERY)]))

        assert _run(index.search(QUERY, GLOBEX)) == []

    def test_limit_and_order(self):
        index = self._make_index()
        _run(index.add_chunks(ACME, [
            _indexed(f"c{i}", _vector_with_similarity(s))
            for i, s in enumerate([0.65, 0.95, 0.8, 0.75])
        ]))

        results = _run(index.search(QUERY, ACME, limit=2, similarity_threshold=0.6))

        assert [r.chunk_id for r in results] == ["c1", "c2"]
        assert results[0].similarity >= results[1].similarity

    def test_upsert_replaces_vector(self):
        index = self._make_index()
        _run(index.add_chunks(ACME, [_indexed("c1", _vector_with_similarity(0.3))]))
        assert _run(index.search(QUERY, ACME)) == []

        _run(index.add_chunks(ACME, [_indexed("c1", QUERY)]))
        assert [r.chunk_id for r in _run(index.search(QUERY, ACME))] == ["c1"]

    def test_provenance_and_facts_round_trip(self):
        index = self._make_index()
        facts = [
            TimeBasedFact(text="t", event_type="launch", description="New SKU"),
            QuantitativeFact(metric_name="Revenue", value=10, unit="USD bn"),
        ]
        _run(index.add_chunks(ACME, [_indexed(
            "c1", QUERY,
            section_title="Outlook",
            page_start=3,
            page_end=4,
            document_title="Q4 Report",
            company_name="Acme",
            facts=facts,
        )]))

        [result] = _run(index.search(QUERY, ACME))

        assert result.section_title == "Outlook"
        assert (result.page_start, result.page_end) == (3, 4)
        assert result.document_title == "Q4 Report"
        assert result.company_name == "Acme"
        assert result.reporting_period is None
        assert result.facts == facts

    def test_wrong_dimension_rejected(self):
        index = self._make_index()
        with pytest.raises(InvalidInput):
            _run(index.add_chunks(ACME, [_indexed("c1", [1.0, 0.0])]))
        with pytest.raises(InvalidInput):
            _run(index.search([1.0, 0.0], ACME))

    def test_invalid_bounds_rejected(self):
        index = self._make_index()
        with pytest.raises(InvalidInput):
            _run(index.search(QUERY, ACME, limit=0))
        with pytest.raises(InvalidInput):
            _run(index.search(QUERY, ACME, similarity_threshold=2.0))

    def test_backend_error_becomes_index_unavailable(self):
        index = self._make_index()
        index._collection = MagicMock()
        index._collection.query.side_effect = ConnectionError("chroma down")

        with pytest.raises(IndexUnavailable):
            _run(index.search(QUERY, ACME))


class TestSanitiseMetadata:

    def test_none_dropped_and_lists_joined(self):
        assert _sanitise_chroma_metadata({
            "a": None, "b": [1, 2], "c": "x", "d": 3, "e": True,
        }) == {"b": "1,2", "c": "x", "d": 3, "e": True}


class TestPgVectorIndex:
    """Readiness, version handling and scoring against a mocked session."""

    def _session_factory(self, index_exists=True, extversion="0.8.0", rows=()):
        session = MagicMock()

        def _execute(statement, params=None):
            sql = str(statement)
            result = MagicMock()
            if "pg_extension" in sql:
                result.scalar_one_or_none.return_value = extversion
            elif "pg_indexes" in sql:
                result.scalar_one_or_none.return_value = 1 if index_exists else None
            else:
                result.all.return_value = list(rows)
            return result

        session.execute = AsyncMock(side_effect=_execute)

        context = MagicMock()
        context.__aenter__ = AsyncMock(return_value=session)
        context.__aexit__ = AsyncMock(return_value=False)
        return MagicMock(return_value=context), session

    def _executed(self, session) -> list[str]:
        return [str(call.args[0]) for call in session.execute.await_args_list]

    def test_missing_hnsw_index_is_unavailable(self):
        factory, session = self._session_factory(index_exists=False)
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        with pytest.raises(IndexUnavailable):
            _run(index.search(QUERY, str(uuid.uuid4())))
        assert session.execute.await_count == 2

    def test_missing_extension_is_unavailable(self):
        factory, _ = self._session_factory(extversion=None)
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        with pytest.raises(IndexUnavailable, match="pgvector extension"):
            _run(index.search(QUERY, str(uuid.uuid4())))

    def test_iterative_scan_set_on_recent_pgvector(self):
        factory, session = self._session_factory(extversion="0.8.0")
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        assert _run(index.search(QUERY, str(uuid.uuid4()))) == []

        executed = self._executed(session)
        assert "SET LOCAL hnsw.ef_search = 100" in executed
        assert "SET LOCAL hnsw.iterative_scan = strict_order" in executed

    def test_iterative_scan_skipped_on_old_pgvector(self):
        factory, session = self._session_factory(extversion="0.7.4")
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        _run(index.search(QUERY, str(uuid.uuid4())))
        _run(index.search(QUERY, str(uuid.uuid4())))

        executed = self._executed(session)
        assert not any("iterative_scan" in sql for sql in executed)
        # Version and index are checked once per instance
        assert sum("pg_extension" in sql for sql in executed) == 1

    def test_threshold_predicate_allows_float32_drift(self):
        factory, session = self._session_factory()
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        _run(index.search(QUERY, str(uuid.uuid4()), similarity_threshold=0.7))

        search_stmt = session.execute.await_args_list[-1].args[0]
        floats = [v for v in search_stmt.compile().params.values() if isinstance(v, float)]
        assert floats == [pytest.approx(0.7 - 5e-7, abs=1e-12)]

    def test_boundary_row_reported_at_threshold(self):
        row = (
            Chunk(id=uuid.uuid4(), doc_id=uuid.uuid4(), chunk_index=1, chunk_text="capex"),
            Document(id=uuid.uuid4(), filename="ar.pdf", title="Annual Report"),
            Company(name="Acme", sector="Chemicals"),
            # float32 rounding of a chunk whose true similarity is exactly 0.7
            1.0 - 0.699999988079071,
        )
        factory, _ = self._session_factory(rows=[row])
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        [result] = _run(index.search(QUERY, str(uuid.uuid4()), similarity_threshold=0.7))

        assert result.similarity == 0.7
        assert result.text == "capex"
        assert result.facts == []

    def test_invalid_company_id_rejected(self):
        factory, _ = self._session_factory()
        index = PgVectorIndex(session_factory=factory, dimensions=3)

        with pytest.raises(InvalidInput):
            _run(index.search(QUERY, "not-a-uuid"))

    def test_wrong_query_dimension_rejected(self):
        factory, _ = self._session_factory()
        index = PgVectorIndex(session_factory=factory, dimensions=1536)

        with pytest.raises(InvalidInput):
            _run(index.search(QUERY, str(uuid.uuid4())))

    def test_unknown_iterative_scan_mode_rejected(self):
        with pytest.raises(ValueError):
            PgVectorIndex(iterative_scan="fastest")


class TestScores:

    def test_similarity_rounded_to_six_places(self):
        assert similarity_from_distance(0.30000001192092896) == 0.7
        assert similarity_from_distance(0.0) == 1.0
        assert similarity_from_distance(0.1234564) == 0.876544

    @pytest.mark.parametrize("version,expected", [
        ("0.8.0", (0, 8, 0)), ("0.7.4", (0, 7, 4)), ("0.10.1-dev", (0, 10, 1)),
    ])
    def test_version_tuple(self, version, expected):
        assert _version_tuple(version) == expected


class TestFactory:

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            get_similarity_index("faiss")

    def test_pgvector_instance_cached(self):
        assert get_similarity_index("pgvector") is get_similarity_index("pgvector")
        assert isinstance(get_similarity_index("pgvector"), PgVectorIndex)
