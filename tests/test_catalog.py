# =============================================================================
# Unit Tests — Catalog Writer
# =============================================================================
#
# Tests the write-path helpers with a mocked AsyncSession. Full
# insert/commit behaviour needs PostgreSQL and is not covered here.
# =============================================================================

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from filings_rag.db.models import Company
from filings_rag.errors import InvalidInput
from filings_rag.models.facts import QualitativeFact, QuantitativeFact, TimeBasedFact
from filings_rag.services.catalog import (
    NewChunk,
    NewDocument,
    _split_facts,
    count_tokens,
    delete_company,
    get_or_create_company,
    save_document,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _session(existing=None) -> MagicMock:
    session = MagicMock()
    result = MagicMock()
    result.scalar_one_or_none.return_value = existing
    session.execute = AsyncMock(return_value=result)
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    return session


class TestGetOrCreateCompany:

    def test_existing_company_reused(self):
        existing = Company(name="Acme Corp", sector="Chemicals")
        session = _session(existing=existing)

        company = _run(get_or_create_company(session, "ACME CORP", "Other"))

        assert company is existing
        assert company.sector == "Chemicals"
        session.add.assert_not_called()

    def test_new_company_created(self):
        session = _session(existing=None)

        company = _run(get_or_create_company(session, "  Globex  ", "Energy", "GBX"))

        assert company.name == "Globex"
        assert company.ticker == "GBX"
        session.add.assert_called_once_with(company)
        session.flush.assert_awaited_once()

    def test_blank_name_rejected(self):
        with pytest.raises(InvalidInput):
            _run(get_or_create_company(_session(), "   ", "Energy"))


class TestSaveDocumentValidation:

    def test_no_chunks_rejected(self):
        session = _session()
        with pytest.raises(InvalidInput):
            _run(save_document(
                session, "Acme", "Chemicals",
                NewDocument(filename="ar.pdf", storage_path="s3://b/ar.pdf"),
                [],
            ))
        session.commit.assert_not_awaited()

    def test_wrong_embedding_dimension_rejected(self):
        session = _session()
        with pytest.raises(InvalidInput):
            _run(save_document(
                session, "Acme", "Chemicals",
                NewDocument(filename="ar.pdf", storage_path="s3://b/ar.pdf"),
                [NewChunk(text="hello", embedding=[0.1, 0.2])],
            ))
        session.add.assert_not_called()


class TestHelpers:

    def test_split_facts_by_category(self):
        tb, paql, paqn = _split_facts([
            QuantitativeFact(metric_name="Revenue", value=1, unit="USD"),
            TimeBasedFact(text="t", event_type="launch", description="d"),
            QualitativeFact(text="t", topic="ops", context="c"),
        ])
        assert [f["category"] for f in tb] == ["TB"]
        assert [f["category"] for f in paql] == ["PAQL"]
        assert paqn[0]["metricName"] == "Revenue"

    def test_count_tokens(self):
        assert count_tokens("") == 0
        assert 0 < count_tokens("Revenue increased by 15% year over year.") < 20


class TestDeleteCompany:

    def test_delete_reports_whether_company_existed(self):
        session = _session()
        session.execute.return_value.rowcount = 1
        assert _run(delete_company(session, "11111111-1111-1111-1111-111111111111")) is True

        session.execute.return_value.rowcount = 0
        assert _run(delete_company(session, "11111111-1111-1111-1111-111111111111")) is False
