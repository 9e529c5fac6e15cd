"""
Resource router and data-access engine.

DataProvider resolves a resource path to a table, validates insert
payloads, runs the statement and announces the change. Caller filters
are SQL fragments with named bind parameters, e.g.
``where="direction = :direction", params={"direction": "incoming"}``;
ids taken from the path are always bound, never concatenated.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import Table, and_, bindparam, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.sql import ColumnElement

from rapidstore.config import get_settings
from rapidstore.errors import InvalidResource, StorageError, ValidationError
from rapidstore.logging_utils import OperationLog, operation_context, setup_logging
from rapidstore.models import Field, FieldType, Form, Message, Monitor, Project, Survey
from rapidstore.notifications import ChangeNotifier, ResultSet
from rapidstore.registry import SchemaRegistry
from rapidstore.resources import ResourceKind, ResourceMatch, ResourceMatcher
from rapidstore.storage import create_storage_engine, get_engine, init_db
from rapidstore.validation import Validator

logger = logging.getLogger(__name__)

K = ResourceKind

STATIC_TABLES: Mapping[ResourceKind, Table] = {
    K.MESSAGE: Message.__table__,
    K.MESSAGE_ID: Message.__table__,
    K.MONITOR_MESSAGES: Message.__table__,
    K.MONITOR: Monitor.__table__,
    K.MONITOR_ID: Monitor.__table__,
    K.FORM: Form.__table__,
    K.FORM_ID: Form.__table__,
    K.FIELD: Field.__table__,
    K.FIELD_ID: Field.__table__,
    K.FIELDTYPE: FieldType.__table__,
    K.FIELDTYPE_ID: FieldType.__table__,
    K.PROJECT: Project.__table__,
    K.SURVEY: Survey.__table__,
}

INSERTABLE = frozenset({
    K.MESSAGE, K.MONITOR, K.PROJECT, K.SURVEY,
    K.FORM, K.FIELD, K.FIELDTYPE, K.FORMDATA_ID,
})

UPDATABLE = frozenset({
    K.MESSAGE, K.MESSAGE_ID, K.MONITOR, K.MONITOR_ID, K.MONITOR_MESSAGES,
    K.PROJECT, K.SURVEY, K.FORM, K.FORMDATA_ID,
})

DELETABLE = frozenset({
    K.MESSAGE, K.MESSAGE_ID, K.MONITOR, K.MONITOR_ID, K.MONITOR_MESSAGES,
    K.PROJECT, K.SURVEY, K.FORMDATA_ID,
})

RELATED_COLLECTIONS: Mapping[str, Sequence[str]] = {
    "message": ("messagesbymonitor",),
    "messagesbymonitor": ("message",),
}

_SET_PARAM_PREFIX = "_set_"

_ORDER_TERM = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)(?:\s+(asc|desc))?\s*$", re.IGNORECASE)


def _caller_filter(where: Optional[str], params: Optional[Mapping[str, Any]]):
    """Caller's WHERE fragment, parenthesized, with its parameters bound."""
    if not where or not where.strip():
        return None
    clause = text(f"({where})")
    if params:
        clause = clause.bindparams(**params)
    return clause


class DataProvider:
    """
    Routes resource paths to insert, update, delete and query operations.

    Args:
        engine: Storage handle; defaults to the process-wide engine
        notifier: Change notification channel
        matcher: Resource path matcher
        validator: Insert payload validator
        registry: Form data table registry
        monitor_hash_hook: Called after a new monitor row is created
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        notifier: Optional[ChangeNotifier] = None,
        matcher: Optional[ResourceMatcher] = None,
        validator: Optional[Validator] = None,
        registry: Optional[SchemaRegistry] = None,
        monitor_hash_hook: Optional[Callable[[], None]] = None,
    ):
        self.engine = engine if engine is not None else get_engine()
        self.notifier = notifier if notifier is not None else ChangeNotifier()
        self.matcher = matcher if matcher is not None else ResourceMatcher(
            authority=get_settings().CONTENT_AUTHORITY
        )
        self.validator = validator if validator is not None else Validator()
        self.registry = registry if registry is not None else SchemaRegistry(self.engine, self.notifier)
        self.monitor_hash_hook = monitor_hash_hook

    # =========================================================================
    # Resolution helpers
    # =========================================================================

    def _match(self, path: str, record: OperationLog, allowed: Optional[frozenset] = None) -> ResourceMatch:
        match = self.matcher.match(path)
        record.kind = match.kind.value
        if allowed is not None and match.kind not in allowed:
            raise InvalidResource(path, f"{record.operation} not supported for {match.kind.value}")
        return match

    def _table(self, match: ResourceMatch) -> Table:
        if match.kind is K.FORMDATA_ID:
            return self.registry.form_table(match.resource_id)
        return STATIC_TABLES[match.kind]

    def _id_condition(self, match: ResourceMatch, table: Table) -> Optional[ColumnElement]:
        """Row filter implied by the id in the path."""
        if match.kind is K.MONITOR_MESSAGES:
            return table.c.monitor_id == match.resource_id
        if match.is_item:
            return table.c.id == match.resource_id
        return None

    def _check_columns(self, table: Table, names, for_query: bool = False, path: str = "") -> None:
        for name in names:
            if name not in table.c:
                if for_query:
                    raise InvalidResource(path, f"unknown column {name!r} in {table.name}")
                raise ValidationError(name, f"unknown column in {table.name}")

    def _order_by(self, table: Table, order_by: Optional[str], path: str) -> List[ColumnElement]:
        """Parse "col [ASC|DESC], ..." into column orderings."""
        if not order_by or not order_by.strip():
            return []
        clauses = []
        for term in order_by.split(","):
            parsed = _ORDER_TERM.match(term)
            if parsed is None:
                raise InvalidResource(path, f"unsupported sort order {order_by!r}")
            name, direction = parsed.group(1), (parsed.group(2) or "asc").lower()
            self._check_columns(table, [name], for_query=True, path=path)
            column = table.c[name]
            clauses.append(column.desc() if direction == "desc" else column.asc())
        return clauses

    def _notify(self, match: ResourceMatch) -> None:
        self.notifier.notify_change(match.collection_path)
        # messages are readable both as message/... and messagesbymonitor/<id>
        for related in RELATED_COLLECTIONS.get(match.collection, ()):
            self.notifier.notify_change(related)

    def get_type(self, path: str) -> str:
        """MIME-style content type for a resource path."""
        return self.matcher.content_type(path)

    # =========================================================================
    # Insert
    # =========================================================================

    def insert(self, path: str, values: Optional[Mapping[str, Any]] = None) -> str:
        """
        Insert one row.

        Args:
            path: Collection path, e.g. "message" or "formdata/3"
            values: Column name -> value

        Returns:
            Path of the new row, "<path>/<new id>". For a monitor whose
            phone is already known, the existing "monitor/<id>".

        Raises:
            InvalidResource: path unknown or not insertable
            ValidationError: required field missing or unknown column
            NotFound: formdata form or table missing
            StorageError: the insert failed
        """
        with operation_context("insert", path) as record:
            match = self._match(path, record, INSERTABLE)
            normalized = self.validator.validate(match.kind, values)
            table = self._table(match)
            self._check_columns(table, normalized.keys())

            if match.kind is K.MONITOR:
                uri = self._insert_monitor(match, table, normalized, record)
            else:
                try:
                    new_id = self._insert_row(table, normalized, path)
                except SQLAlchemyError as e:
                    raise StorageError(f"Failed to insert row into {path}: {e}") from e
                uri = f"{match.path}/{new_id}"
                self._notify(match)

            record.extra["uri"] = uri
            return uri

    def _insert_row(self, table: Table, values: Dict[str, Any], path: str) -> int:
        logger.debug(f"Inserting into {table.name}: columns={sorted(values)}")
        with self.engine.begin() as conn:
            result = conn.execute(table.insert().values(**values))

        new_id = result.inserted_primary_key[0] if result.inserted_primary_key else None
        if new_id is None or result.rowcount == 0:
            raise StorageError(f"Failed to insert row into {path}")
        return new_id

    def _find_monitor_id(self, table: Table, phone: str) -> Optional[int]:
        try:
            with self.engine.connect() as conn:
                ids = conn.execute(select(table.c.id).where(table.c.phone == phone)).scalars().all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up monitor {phone}: {e}") from e
        if len(ids) == 1:
            return ids[0]
        return None

    def _insert_monitor(
        self,
        match: ResourceMatch,
        table: Table,
        values: Dict[str, Any],
        record: OperationLog,
    ) -> str:
        """Find-or-create a monitor by phone."""
        phone = values["phone"]
        existing_id = self._find_monitor_id(table, phone)
        if existing_id is not None:
            logger.info(f"Monitor already exists for phone {phone}: id={existing_id}")
            record.result = "existing"
            return f"{match.collection}/{existing_id}"

        try:
            new_id = self._insert_row(table, values, match.path)
        except IntegrityError as e:
            # Another caller created the same phone between the read and the insert
            existing_id = self._find_monitor_id(table, phone)
            if existing_id is None:
                raise StorageError(f"Failed to insert monitor {phone}: {e}") from e
            logger.info(f"Monitor created concurrently for phone {phone}: id={existing_id}")
            record.result = "existing"
            return f"{match.collection}/{existing_id}"
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to insert monitor {phone}: {e}") from e

        logger.info(f"Monitor created: id={new_id}, phone={phone}")
        self._notify(match)
        self._run_monitor_hash_hook()
        return f"{match.path}/{new_id}"

    def _run_monitor_hash_hook(self) -> None:
        if self.monitor_hash_hook is None:
            return
        try:
            self.monitor_hash_hook()
        except Exception:
            logger.exception("Monitor hash hook failed")

    # =========================================================================
    # Update / Delete
    # =========================================================================

    def update(
        self,
        path: str,
        values: Mapping[str, Any],
        where: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Apply a partial change to every row matching the path and filter.

        No required-field checks or defaults are applied.

        Returns:
            Number of rows changed
        """
        with operation_context("update", path) as record:
            match = self._match(path, record, UPDATABLE)
            if not values:
                raise ValidationError("values", "nothing to update")
            table = self._table(match)
            self._check_columns(table, values.keys())

            try:
                conditions = [
                    c for c in (self._id_condition(match, table), _caller_filter(where, params)) if c is not None
                ]
                # SET values get private bind names so caller filters may reuse column names
                stmt = table.update().values({
                    table.c[name]: bindparam(f"{_SET_PARAM_PREFIX}{name}", value, type_=table.c[name].type)
                    for name, value in values.items()
                })
                if conditions:
                    stmt = stmt.where(and_(*conditions))
                with self.engine.begin() as conn:
                    rowcount = conn.execute(stmt).rowcount
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to update {path}: {e}") from e

            record.extra["rowcount"] = rowcount
            if rowcount:
                self._notify(match)
            return rowcount

    def delete(
        self,
        path: str,
        where: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """
        Delete rows.

        message/<id> and monitor/<id> delete "id = <id> AND (<where>)",
        messagesbymonitor/<id> deletes "monitor_id = <id> AND (<where>)",
        formdata/<form id> deletes from the form's table by <where> alone.

        Returns:
            Number of rows deleted
        """
        with operation_context("delete", path) as record:
            match = self._match(path, record, DELETABLE)
            table = self._table(match)

            try:
                conditions = [
                    c for c in (self._id_condition(match, table), _caller_filter(where, params)) if c is not None
                ]
                stmt = table.delete()
                if conditions:
                    stmt = stmt.where(and_(*conditions))
                with self.engine.begin() as conn:
                    rowcount = conn.execute(stmt).rowcount
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to delete from {path}: {e}") from e

            record.extra["rowcount"] = rowcount
            if rowcount:
                self._notify(match)
            return rowcount

    # =========================================================================
    # Query
    # =========================================================================

    def query(
        self,
        path: str,
        projection: Optional[Sequence[str]] = None,
        where: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
    ) -> ResultSet:
        """
        Read rows for a resource path.

        Args:
            path: Any registered resource path
            projection: Column names to return; all columns if None
            where: Caller filter, ANDed with the path's id filter
            params: Bind parameters for where
            order_by: "col [ASC|DESC], ..."

        Returns:
            ResultSet bound to the path for change notification.
            formdata/<form id> ignores projection and order_by; see
            query_form_data.
        """
        with operation_context("query", path) as record:
            match = self._match(path, record)
            if match.kind is K.FORMDATA_ID:
                return self._select_form_data(match, where, params, record)

            table = self._table(match)
            if projection:
                self._check_columns(table, projection, for_query=True, path=path)
                columns = [table.c[name] for name in projection]
            else:
                columns = list(table.c)
            ordering = self._order_by(table, order_by, path)

            try:
                stmt = select(*columns)
                id_condition = self._id_condition(match, table)
                if id_condition is not None:
                    stmt = stmt.where(id_condition)
                caller_filter = _caller_filter(where, params)
                if caller_filter is not None:
                    stmt = stmt.where(caller_filter)
                if ordering:
                    stmt = stmt.order_by(*ordering)

                with self.engine.connect() as conn:
                    result = conn.execute(stmt)
                    names = list(result.keys())
                    rows = result.all()
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to query {path}: {e}") from e

            record.extra["rowcount"] = len(rows)
            return ResultSet(match.path, names, rows, self.notifier)

    def query_form_data(
        self,
        form_id: int,
        where: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> ResultSet:
        """
        Responses to a form, joined with their messages, newest message first.

        Returns every column of the form's data table. The caller filter
        may reference both tables, e.g. "messages.direction = :d".
        """
        path = f"formdata/{form_id}"
        with operation_context("query_form_data", path) as record:
            match = self._match(path, record)
            return self._select_form_data(match, where, params, record)

    def _select_form_data(
        self,
        match: ResourceMatch,
        where: Optional[str],
        params: Optional[Mapping[str, Any]],
        record: OperationLog,
    ) -> ResultSet:
        table = self.registry.form_table(match.resource_id)
        messages = Message.__table__

        try:
            stmt = (
                select(table)
                .select_from(table.join(messages, table.c.message_id == messages.c.id))
            )
            caller_filter = _caller_filter(where, params)
            if caller_filter is not None:
                stmt = stmt.where(caller_filter)
            stmt = stmt.order_by(messages.c.time.desc(), table.c.id.desc())

            with self.engine.connect() as conn:
                result = conn.execute(stmt)
                names = list(result.keys())
                rows = result.all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to query {match.path}: {e}") from e

        record.extra["rowcount"] = len(rows)
        return ResultSet(match.path, names, rows, self.notifier)


def create_provider(database_url: Optional[str] = None, **engine_kwargs) -> DataProvider:
    """
    Configure logging, open the database and return a ready DataProvider.

    Logging is set up from settings.LOG_LEVEL and the static tables are
    created if missing. Form data tables still need
    SchemaRegistry.provision_form_table.
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    engine = create_storage_engine(database_url or settings.DATABASE_URL, **engine_kwargs)
    init_db(engine)
    logger.info("Data provider ready", extra={"database_url": str(engine.url)})
    return DataProvider(engine=engine)
