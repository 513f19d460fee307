"""Change stream collaborators backed by a :class:`pymongo.MongoClient`.

These classes use only public pymongo command helpers: ``aggregate``,
``getMore`` and ``killCursors`` are sent through
:meth:`pymongo.database.Database.command`, which never retries on its own,
so the change stream is the only layer that resumes.

A server cursor belongs to the session that created it. When the caller
supplies no session, the issuer starts one per cursor and the cursor ends
it once the server cursor is gone, so every ``getMore`` and the final
``killCursors`` run under the same lsid as the ``aggregate``.

``getMore`` must reach the server that owns the cursor. Commands use the
configured read preference; with anything other than primary a getMore
may land on another member and fail with CursorNotFound, which the
stream treats as resumable.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Union

from bson.int64 import Int64
from bson.son import SON
from pymongo import MongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import ConnectionFailure, OperationFailure
from pymongo.read_preferences import (
    Nearest,
    Primary,
    PrimaryPreferred,
    ReadPreference,
    Secondary,
    SecondaryPreferred,
)

from changewatch.core.exceptions import InvalidArgument, ResumableServerError
from changewatch.core.types import (
    ChangeStreamOptions,
    ChangeStreamScope,
    Document,
    InitialReply,
    Pipeline,
)
from changewatch.observability.logging import get_logger
from changewatch.stream.change_stream import ChangeStream

logger = get_logger(__name__)

ServerMode = Union[Primary, PrimaryPreferred, Secondary, SecondaryPreferred, Nearest]

READ_PREFERENCES: dict[str, ServerMode] = {
    "primary": ReadPreference.PRIMARY,
    "primaryPreferred": ReadPreference.PRIMARY_PREFERRED,
    "secondary": ReadPreference.SECONDARY,
    "secondaryPreferred": ReadPreference.SECONDARY_PREFERRED,
    "nearest": ReadPreference.NEAREST,
}

# Error codes the server reports for failures a change stream may resume from.
RESUMABLE_ERROR_CODES = frozenset(
    [
        6,  # HostUnreachable
        7,  # HostNotFound
        43,  # CursorNotFound
        63,  # StaleShardVersion
        89,  # NetworkTimeout
        91,  # ShutdownInProgress
        133,  # FailedToSatisfyReadPreference
        150,  # StaleEpoch
        189,  # PrimarySteppedDown
        234,  # RetryChangeStream
        262,  # ExceededTimeLimit
        9001,  # SocketException
        10107,  # NotWritablePrimary
        11600,  # InterruptedAtShutdown
        11602,  # InterruptedDueToReplStateChange
        13388,  # StaleConfig
        13435,  # NotPrimaryNoSecondaryOk
        13436,  # NotPrimaryOrSecondary
    ]
)

RESUMABLE_LABEL = "ResumableChangeStreamError"
NON_RESUMABLE_LABEL = "NonResumableChangeStreamError"

COMMAND_NOT_FOUND = 59


def read_preference_from_name(name: str) -> ServerMode:
    """
    Look up a read preference by its connection string name.

    Raises:
        InvalidArgument: If the name is not a read preference mode.
    """
    try:
        return READ_PREFERENCES[name]
    except KeyError:
        raise InvalidArgument(
            f"Unknown read preference: {name!r}", "read_preference", name
        ) from None


class PyMongoErrorClassifier:
    """Classifies pymongo errors for change stream resumption."""

    def is_resumable(self, error: BaseException) -> bool:
        if isinstance(error, ConnectionFailure):
            return True
        if isinstance(error, OperationFailure):
            if error.has_error_label(NON_RESUMABLE_LABEL):
                return False
            if error.has_error_label(RESUMABLE_LABEL):
                return True
            return error.code in RESUMABLE_ERROR_CODES
        return isinstance(error, ResumableServerError)


class PyMongoCapabilitySource:
    """Selects a server through ``hello`` and reports its wire version."""

    def __init__(
        self,
        client: MongoClient[Document],
        read_preference: ServerMode = ReadPreference.PRIMARY,
    ) -> None:
        self._client = client
        self._read_preference = read_preference

    def select(self) -> tuple[Any, int]:
        admin = self._client.admin
        try:
            reply = admin.command("hello", read_preference=self._read_preference)
        except OperationFailure as e:
            if e.code != COMMAND_NOT_FOUND:
                raise
            # Servers older than 4.4.2 only know the legacy name
            reply = admin.command("isMaster", read_preference=self._read_preference)
        return reply.get("me"), int(reply.get("maxWireVersion", 0))


class PyMongoBatchCursor:
    """
    Server cursor driven by explicit ``getMore`` commands.

    Serves ``firstBatch`` first, then fetches batches on demand. With
    ``owns_session`` set, the session is ended once the server cursor is
    exhausted or killed.
    """

    def __init__(
        self,
        database: Database[Document],
        cursor_info: dict[str, Any],
        *,
        batch_size: int | None = None,
        max_await_time_ms: int | None = None,
        session: ClientSession | None = None,
        owns_session: bool = False,
        read_preference: ServerMode = ReadPreference.PRIMARY,
    ) -> None:
        self._database = database
        self._id = int(cursor_info.get("id", 0))
        self._collection = cursor_info.get("ns", "").split(".", 1)[-1]
        self._buffer: deque[Document] = deque(cursor_info.get("firstBatch", []))
        self._batch_size = batch_size
        self._max_await_time_ms = max_await_time_ms
        self._session = session
        self._owns_session = owns_session
        self._read_preference = read_preference
        if not self._id:
            self._end_session()

    @property
    def cursor_id(self) -> int:
        return self._id

    @property
    def session(self) -> ClientSession | None:
        return self._session

    def pull(self) -> Document:
        while not self._buffer:
            if not self._id:
                raise StopIteration
            self._get_more(self._max_await_time_ms)
        return self._buffer.popleft()

    def try_pull(self, timeout_ms: int | None = None) -> Document | None:
        if not self._buffer:
            if not self._id:
                raise StopIteration
            self._get_more(timeout_ms)
        if self._buffer:
            return self._buffer.popleft()
        return None

    def teardown(self) -> None:
        if not self._id:
            return
        cursor_id, self._id = self._id, 0
        try:
            self._database.command(
                SON([("killCursors", self._collection), ("cursors", [Int64(cursor_id)])]),
                session=self._session,
                read_preference=self._read_preference,
            )
        finally:
            self._end_session()

    def _get_more(self, max_time_ms: int | None) -> None:
        command = SON([("getMore", Int64(self._id)), ("collection", self._collection)])
        if self._batch_size:
            command["batchSize"] = self._batch_size
        if max_time_ms is not None:
            command["maxTimeMS"] = max_time_ms

        reply = self._database.command(
            command,
            session=self._session,
            read_preference=self._read_preference,
        )
        cursor = reply["cursor"]
        self._id = int(cursor.get("id", 0))
        self._buffer.extend(cursor.get("nextBatch", []))
        if not self._id:
            self._end_session()

    def _end_session(self) -> None:
        if self._owns_session and self._session is not None:
            session, self._session = self._session, None
            session.end_session()


class PyMongoCommandIssuer:
    """Runs the change stream ``aggregate`` command."""

    def __init__(
        self,
        client: MongoClient[Document],
        database: str | None = None,
        collection: str | None = None,
        read_preference: ServerMode = ReadPreference.PRIMARY,
    ) -> None:
        self._client = client
        self._database = database
        self._collection = collection
        self._read_preference = read_preference

    def issue(
        self,
        server: Any,
        pipeline: Pipeline,
        *,
        scope: ChangeStreamScope,
        session: ClientSession | None,
        options: ChangeStreamOptions,
        retry_reads: bool,
    ) -> InitialReply:
        database = self._target_database(scope)
        target: Any = self._collection if scope is ChangeStreamScope.COLLECTION else 1

        cursor_options: dict[str, Any] = {}
        if options.batch_size is not None:
            cursor_options["batchSize"] = options.batch_size
        command = SON([("aggregate", target), ("pipeline", pipeline), ("cursor", cursor_options)])
        if options.collation:
            command["collation"] = options.collation

        owns_session = session is None
        if owns_session:
            session = self._client.start_session(causal_consistency=False)

        logger.debug("Sending change stream aggregate", database=database.name, server=server)
        try:
            reply = database.command(
                command,
                session=session,
                read_preference=self._read_preference,
            )
        except BaseException:
            if owns_session:
                session.end_session()
            raise

        cursor = PyMongoBatchCursor(
            self._client[reply["cursor"]["ns"].split(".", 1)[0]],
            reply["cursor"],
            batch_size=options.batch_size,
            max_await_time_ms=options.max_await_time_ms,
            session=session,
            owns_session=owns_session,
            read_preference=self._read_preference,
        )
        return InitialReply(operation_time=reply.get("operationTime"), cursor=cursor)

    def _target_database(self, scope: ChangeStreamScope) -> Database[Document]:
        if scope is ChangeStreamScope.CLUSTER:
            return self._client.admin
        if self._database is None:
            raise InvalidArgument(f"A database is required for a {scope.value} change stream")
        return self._client[self._database]


def watch(
    client: MongoClient[Document],
    database: str | None = None,
    collection: str | None = None,
    pipeline: Pipeline | None = None,
    *,
    session: ClientSession | None = None,
    read_preference: ServerMode | str = ReadPreference.PRIMARY,
    **options: Any,
) -> ChangeStream:
    """
    Open a resumable change stream with pymongo.

    The scope follows the arguments: a collection, a whole database, or
    the whole cluster when neither is given.

    Args:
        client: The client to run commands with.
        database: Database to watch.
        collection: Collection to watch, within ``database``.
        pipeline: Stages appended after ``$changeStream``.
        session: A :class:`pymongo.client_session.ClientSession`, if any.
            Without one, each server cursor gets its own implicit session.
        read_preference: Read preference for every command, or its name.
        **options: :class:`~changewatch.core.types.ChangeStreamOptions` fields.

    Returns:
        An open change stream.
    """
    if collection is not None and database is None:
        raise InvalidArgument("Watching a collection requires its database", "collection", collection)
    if isinstance(read_preference, str):
        read_preference = read_preference_from_name(read_preference)

    if collection is not None:
        scope, namespace = ChangeStreamScope.COLLECTION, f"{database}.{collection}"
    elif database is not None:
        scope, namespace = ChangeStreamScope.DATABASE, database
    else:
        scope, namespace = ChangeStreamScope.CLUSTER, "cluster"

    return ChangeStream(
        scope,
        pipeline,
        ChangeStreamOptions.from_kwargs(**options),
        issuer=PyMongoCommandIssuer(client, database, collection, read_preference),
        capability_source=PyMongoCapabilitySource(client, read_preference),
        classifier=PyMongoErrorClassifier(),
        session=session,
        namespace=namespace,
    )
