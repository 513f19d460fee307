"""Unit tests for the pymongo collaborators."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from bson.timestamp import Timestamp
from pymongo.errors import AutoReconnect, NetworkTimeout, NotPrimaryError, OperationFailure
from pymongo.read_preferences import ReadPreference

from changewatch.backends.mongo import (
    PyMongoBatchCursor,
    PyMongoCapabilitySource,
    PyMongoCommandIssuer,
    PyMongoErrorClassifier,
    read_preference_from_name,
    watch,
)
from changewatch.core.exceptions import InvalidArgument, ResumableServerError
from changewatch.core.types import ChangeStreamOptions, ChangeStreamScope


class TestPyMongoErrorClassifier:
    """Tests for PyMongoErrorClassifier."""

    @pytest.fixture
    def classifier(self):
        return PyMongoErrorClassifier()

    @pytest.mark.parametrize(
        "error",
        [
            AutoReconnect("connection reset"),
            NetworkTimeout("timed out"),
            NotPrimaryError("not primary"),
            OperationFailure("cursor not found", code=43),
            OperationFailure("primary stepped down", code=189),
            OperationFailure("retry", code=280, details={"errorLabels": ["ResumableChangeStreamError"]}),
            ResumableServerError("injected"),
        ],
    )
    def test_resumable(self, classifier, error):
        """Test transient failures are resumable."""
        assert classifier.is_resumable(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            OperationFailure("duplicate key", code=11000),
            OperationFailure("interrupted", code=11601),
            OperationFailure(
                "fatal", code=43, details={"errorLabels": ["NonResumableChangeStreamError"]}
            ),
            ValueError("not a server error"),
        ],
    )
    def test_not_resumable(self, classifier, error):
        """Test other failures are not resumable."""
        assert classifier.is_resumable(error) is False


class TestPyMongoBatchCursor:
    """Tests for PyMongoBatchCursor."""

    @pytest.fixture
    def database(self):
        return MagicMock()

    def make_cursor(self, database, cursor_id=5, first_batch=None, **kwargs):
        return PyMongoBatchCursor(
            database,
            {"id": cursor_id, "ns": "app.orders", "firstBatch": first_batch or []},
            **kwargs,
        )

    def test_first_batch_served_first(self, database):
        """Test documents from the aggregate reply need no getMore."""
        cursor = self.make_cursor(database, first_batch=[{"_id": 1}])

        assert cursor.pull() == {"_id": 1}
        database.command.assert_not_called()

    def test_get_more(self, database):
        """Test getMore is sent with the cursor id and await time."""
        database.command.return_value = {"cursor": {"id": 5, "nextBatch": [{"_id": 2}]}}
        cursor = self.make_cursor(database, batch_size=10, max_await_time_ms=250)

        assert cursor.pull() == {"_id": 2}

        command = database.command.call_args.args[0]
        assert command["getMore"] == 5
        assert command["collection"] == "orders"
        assert command["batchSize"] == 10
        assert command["maxTimeMS"] == 250

    def test_try_pull_empty_batch(self, database):
        """Test try_pull runs one getMore and returns None when it is empty."""
        database.command.return_value = {"cursor": {"id": 5, "nextBatch": []}}
        cursor = self.make_cursor(database)

        assert cursor.try_pull(100) is None
        assert database.command.call_count == 1
        assert database.command.call_args.args[0]["maxTimeMS"] == 100

    def test_exhausted(self, database):
        """Test a dead cursor with nothing buffered ends iteration."""
        cursor = self.make_cursor(database, cursor_id=0)

        with pytest.raises(StopIteration):
            cursor.pull()
        with pytest.raises(StopIteration):
            cursor.try_pull()

    def test_teardown(self, database):
        """Test teardown kills the cursor once."""
        cursor = self.make_cursor(database)

        cursor.teardown()
        cursor.teardown()

        assert database.command.call_count == 1
        command = database.command.call_args.args[0]
        assert command["killCursors"] == "orders"
        assert command["cursors"] == [5]
        assert cursor.cursor_id == 0


class TestPyMongoCommandIssuer:
    """Tests for PyMongoCommandIssuer."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        reply = {
            "cursor": {"id": 7, "ns": "app.orders", "firstBatch": []},
            "operationTime": Timestamp(1_700_000_000, 4),
        }
        client.__getitem__.return_value.command.return_value = reply
        client.admin.command.return_value = {
            "cursor": {"id": 8, "ns": "admin.$cmd.aggregate", "firstBatch": []},
        }
        return client

    def test_collection_aggregate(self, client):
        """Test a collection stream aggregates on the collection."""
        issuer = PyMongoCommandIssuer(client, "app", "orders")
        pipeline = [{"$changeStream": {"fullDocument": "default"}}]

        reply = issuer.issue(
            "server",
            pipeline,
            scope=ChangeStreamScope.COLLECTION,
            session=None,
            options=ChangeStreamOptions(batch_size=10, collation={"locale": "en"}),
            retry_reads=False,
        )

        command = client.__getitem__.return_value.command.call_args.args[0]
        assert command["aggregate"] == "orders"
        assert command["pipeline"] == pipeline
        assert command["cursor"] == {"batchSize": 10}
        assert command["collation"] == {"locale": "en"}
        assert reply.operation_time == Timestamp(1_700_000_000, 4)
        assert reply.cursor.cursor_id == 7

    def test_cluster_aggregate(self, client):
        """Test a cluster stream aggregates on admin without an operation time."""
        issuer = PyMongoCommandIssuer(client)

        reply = issuer.issue(
            "server",
            [{"$changeStream": {"allChangesForCluster": True}}],
            scope=ChangeStreamScope.CLUSTER,
            session=None,
            options=ChangeStreamOptions(),
            retry_reads=False,
        )

        command = client.admin.command.call_args.args[0]
        assert command["aggregate"] == 1
        assert reply.operation_time is None

    def test_implicit_session_shared_by_cursor(self, client):
        """Test the aggregate, getMore and killCursors share one implicit session."""
        session = client.start_session.return_value
        database = client.__getitem__.return_value
        issuer = PyMongoCommandIssuer(client, "app", "orders")

        reply = issuer.issue(
            "server",
            [{"$changeStream": {}}],
            scope=ChangeStreamScope.COLLECTION,
            session=None,
            options=ChangeStreamOptions(),
            retry_reads=False,
        )
        database.command.return_value = {"cursor": {"id": 7, "nextBatch": []}}
        reply.cursor.try_pull(10)
        reply.cursor.teardown()

        client.start_session.assert_called_once_with(causal_consistency=False)
        assert [c.kwargs["session"] for c in database.command.call_args_list] == [session] * 3
        session.end_session.assert_called_once_with()

    def test_implicit_session_ended_on_exhaustion(self, client):
        """Test the implicit session ends when the server closes the cursor."""
        session = client.start_session.return_value
        database = client.__getitem__.return_value
        issuer = PyMongoCommandIssuer(client, "app", "orders")
        reply = issuer.issue(
            "server",
            [{"$changeStream": {}}],
            scope=ChangeStreamScope.COLLECTION,
            session=None,
            options=ChangeStreamOptions(),
            retry_reads=False,
        )
        database.command.return_value = {"cursor": {"id": 0, "nextBatch": [{"_id": 1}]}}

        assert reply.cursor.pull() == {"_id": 1}
        session.end_session.assert_called_once_with()
        reply.cursor.teardown()
        session.end_session.assert_called_once_with()

    def test_implicit_session_ended_on_failure(self, client):
        """Test a failed aggregate does not leak its implicit session."""
        client.__getitem__.return_value.command.side_effect = AutoReconnect("reset")
        issuer = PyMongoCommandIssuer(client, "app", "orders")

        with pytest.raises(AutoReconnect):
            issuer.issue(
                "server",
                [{"$changeStream": {}}],
                scope=ChangeStreamScope.COLLECTION,
                session=None,
                options=ChangeStreamOptions(),
                retry_reads=False,
            )
        client.start_session.return_value.end_session.assert_called_once_with()

    def test_explicit_session_not_ended(self, client):
        """Test a caller session is used as is and left open."""
        session = MagicMock()
        issuer = PyMongoCommandIssuer(client, "app", "orders")

        reply = issuer.issue(
            "server",
            [{"$changeStream": {}}],
            scope=ChangeStreamScope.COLLECTION,
            session=session,
            options=ChangeStreamOptions(),
            retry_reads=False,
        )
        reply.cursor.teardown()

        client.start_session.assert_not_called()
        assert client.__getitem__.return_value.command.call_args.kwargs["session"] is session
        session.end_session.assert_not_called()

    def test_database_required(self, client):
        """Test database streams need a database name."""
        issuer = PyMongoCommandIssuer(client)
        with pytest.raises(InvalidArgument):
            issuer.issue(
                "server",
                [],
                scope=ChangeStreamScope.DATABASE,
                session=None,
                options=ChangeStreamOptions(),
                retry_reads=False,
            )


class TestPyMongoCapabilitySource:
    """Tests for PyMongoCapabilitySource."""

    def test_hello(self):
        """Test the wire version comes from hello."""
        client = MagicMock()
        client.admin.command.return_value = {"maxWireVersion": 17, "me": "db1:27017"}

        assert PyMongoCapabilitySource(client).select() == ("db1:27017", 17)

    def test_legacy_fallback(self):
        """Test servers without hello fall back to isMaster."""
        client = MagicMock()
        client.admin.command.side_effect = [
            OperationFailure("no such command: 'hello'", code=59),
            {"maxWireVersion": 6},
        ]

        assert PyMongoCapabilitySource(client).select() == (None, 6)
        assert client.admin.command.call_args.args[0] == "isMaster"

    def test_other_errors_raised(self):
        """Test unrelated failures are not swallowed."""
        client = MagicMock()
        client.admin.command.side_effect = OperationFailure("unauthorized", code=13)

        with pytest.raises(OperationFailure):
            PyMongoCapabilitySource(client).select()


class TestReadPreferenceFromName:
    """Tests for read preference lookup."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("primary", ReadPreference.PRIMARY),
            ("secondaryPreferred", ReadPreference.SECONDARY_PREFERRED),
            ("nearest", ReadPreference.NEAREST),
        ],
    )
    def test_known_names(self, name, expected):
        assert read_preference_from_name(name) == expected

    def test_unknown_name(self):
        with pytest.raises(InvalidArgument) as exc_info:
            read_preference_from_name("fastest")
        assert exc_info.value.option == "read_preference"


class TestWatch:
    """Tests for the watch() helper."""

    def test_read_preference_by_name(self):
        """Test a read preference name is resolved for every command."""
        client = MagicMock()
        client.admin.command.return_value = {"maxWireVersion": 17}
        client.__getitem__.return_value.command.return_value = {
            "cursor": {"id": 0, "ns": "app.orders", "firstBatch": []},
        }

        watch(client, "app", "orders", read_preference="secondary").close()

        assert client.admin.command.call_args.kwargs["read_preference"] == ReadPreference.SECONDARY
        aggregate = client.__getitem__.return_value.command.call_args
        assert aggregate.kwargs["read_preference"] == ReadPreference.SECONDARY

    def test_collection_without_database(self):
        """Test a collection needs its database."""
        with pytest.raises(InvalidArgument):
            watch(MagicMock(), collection="orders")

    def test_opens_collection_stream(self):
        """Test watch() opens a collection stream through pymongo."""
        client = MagicMock()
        client.admin.command.return_value = {"maxWireVersion": 17}
        client.__getitem__.return_value.command.return_value = {
            "cursor": {"id": 7, "ns": "app.orders", "firstBatch": [{"_id": {"_data": "01"}}]},
            "operationTime": Timestamp(1_700_000_000, 1),
        }

        with watch(client, "app", "orders", max_await_time_ms=100) as stream:
            assert stream.scope is ChangeStreamScope.COLLECTION
            assert stream.next() == {"_id": {"_data": "01"}}
            assert stream.resume_token == {"_data": "01"}

        kill = client.__getitem__.return_value.command.call_args.args[0]
        assert kill["killCursors"] == "orders"
