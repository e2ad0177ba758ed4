"""
Tests for the database factory and transaction management.
"""

from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from aivp.data import database_factory
from aivp.data.database_factory import (
    DatabaseFactory,
    close_database,
    database_transaction,
    health_check,
    is_store_outage,
    managed_session,
    setup_database,
)
from aivp.data.repositories import ConsentRecordRepository, ParticipantRepository
from aivp.data.schemas import ConsentKind
from aivp.exceptions import StoreUnavailableError


@pytest.fixture
def sqlite_database():
    """Global factory bound to a fresh in-memory database."""
    close_database()
    setup_database("sqlite:///:memory:")
    yield database_factory._db_factory
    close_database()


class TestDatabaseFactory:
    def test_singleton(self):
        assert DatabaseFactory() is DatabaseFactory()

    def test_setup_creates_tables_and_is_healthy(self, sqlite_database):
        assert health_check() is True
        assert sqlite_database.engine.dialect.name == "sqlite"

    def test_transaction_commits(self, sqlite_database):
        with database_transaction() as session:
            ParticipantRepository(session).create("p1")

        with database_transaction() as session:
            assert ParticipantRepository(session).get_by_id("p1") is not None

    def test_transaction_rolls_back_on_error(self, sqlite_database):
        with pytest.raises(RuntimeError):
            with database_transaction() as session:
                ParticipantRepository(session).create("p1")
                raise RuntimeError("abort")

        with database_transaction() as session:
            assert ParticipantRepository(session).get_by_id("p1") is None

    def test_foreign_keys_enforced(self, sqlite_database):
        with pytest.raises(IntegrityError):
            with database_transaction() as session:
                ConsentRecordRepository(session).append(
                    "ghost", ConsentKind.DECLINE, datetime(2025, 1, 6, tzinfo=timezone.utc)
                )

    def test_mask_dsn(self):
        masked = DatabaseFactory._mask_dsn("postgresql://aivp:secret@db:5432/aivp")

        assert masked == "postgresql://aivp:****@db:5432/aivp"


class TestManagedSession:
    def test_outage_becomes_store_unavailable(self):
        session = Mock()
        session.commit.side_effect = OperationalError("COMMIT", {}, Exception("connection reset"))
        factory = Mock(return_value=session)

        with pytest.raises(StoreUnavailableError) as exc_info:
            with managed_session(factory):
                pass

        assert exc_info.value.retryable is True
        session.rollback.assert_called_once()
        session.close.assert_called_once()

    def test_other_errors_propagate(self):
        session = Mock()
        factory = Mock(return_value=session)

        with pytest.raises(ValueError):
            with managed_session(factory):
                raise ValueError("bad")

        session.commit.assert_not_called()
        session.rollback.assert_called_once()


@pytest.mark.parametrize(
    "error,expected",
    [
        (OperationalError("SELECT 1", {}, Exception("down")), True),
        (DBAPIError("SELECT 1", {}, Exception("gone"), connection_invalidated=True), True),
        (IntegrityError("INSERT", {}, Exception("duplicate")), False),
        (ValueError("bad"), False),
    ],
)
def test_is_store_outage(error, expected):
    assert is_store_outage(error) is expected
