"""
Schema registry for per-form data tables.

Each form stores its responses in a table named ``formdata_<prefix>``,
where prefix is the form's stored prefix with any leading marker
character (such as '@') removed. The table has an ``id`` primary key,
a ``message_id`` reference to the response message, and one
``col_<field name>`` column per field of the form.

The mutation and query paths only resolve these names. Creating the
tables is a separate step, provision_form_table().
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, MetaData, Table, Text, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from rapidstore.errors import InvalidResource, NotFound, StorageError
from rapidstore.models import Field, FieldType, Form, Message
from rapidstore.notifications import ChangeNotifier

logger = logging.getLogger(__name__)

FORMDATA_TABLE_PREFIX = "formdata_"
FIELD_COLUMN_PREFIX = "col_"

_LEADING_MARKER = re.compile(r"^[^0-9A-Za-z]+")
_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")

# FieldType.datatype -> column type; anything else is stored as text
DATATYPE_COLUMN_TYPES = {
    "integer": Integer,
    "number": Float,
    "float": Float,
    "ratio": Float,
    "boolean": Boolean,
}


def strip_prefix_marker(prefix: str) -> str:
    """'@tb' -> 'tb'"""
    return _LEADING_MARKER.sub("", prefix or "")


@dataclass(frozen=True)
class FieldDefinition:
    id: int
    name: str
    prompt: Optional[str]
    sequence: Optional[int]
    fieldtype_id: int
    fieldtype_name: Optional[str] = None
    datatype: Optional[str] = None
    regex: Optional[str] = None

    @property
    def column_name(self) -> str:
        return FIELD_COLUMN_PREFIX + self.name


@dataclass(frozen=True)
class FormDefinition:
    id: int
    formname: str
    description: Optional[str]
    parsemethod: Optional[str]
    prefix: Optional[str]
    fields: Tuple[FieldDefinition, ...] = ()

    @property
    def table_suffix(self) -> str:
        return strip_prefix_marker(self.prefix)


class SchemaRegistry:
    """
    Resolves form ids to their data tables and metadata.

    Form definitions are cached per form id. When a ChangeNotifier is
    given, the cache is dropped whenever forms, fields or field types
    change.
    """

    def __init__(self, engine: Engine, notifier: Optional[ChangeNotifier] = None):
        self.engine = engine
        self._forms: Dict[int, FormDefinition] = {}
        self._tables: Dict[str, Table] = {}
        if notifier is not None:
            for path in ("form", "field", "fieldtype"):
                notifier.subscribe(path, self._on_schema_change)

    def _on_schema_change(self, changed_path: str) -> None:
        logger.debug(f"Schema change at {changed_path}, clearing form cache")
        self.invalidate()

    def invalidate(self, form_id: Optional[int] = None) -> None:
        """Drop cached form definitions and reflected tables."""
        if form_id is None:
            self._forms.clear()
        else:
            self._forms.pop(form_id, None)
        self._tables.clear()

    # =========================================================================
    # Form metadata
    # =========================================================================

    def get_form(self, form_id: int) -> FormDefinition:
        """
        Load a form definition with its fields, ordered by sequence.

        Raises:
            NotFound: no form with this id
            StorageError: the lookup failed
        """
        cached = self._forms.get(form_id)
        if cached is not None:
            return cached

        logger.debug(f"Loading form definition: id={form_id}")
        try:
            with self.engine.connect() as conn:
                form = conn.execute(
                    select(Form.__table__).where(Form.id == form_id)
                ).mappings().first()
                if form is None:
                    raise NotFound(f"Form {form_id} does not exist")

                field_rows = conn.execute(
                    select(
                        Field.id,
                        Field.name,
                        Field.prompt,
                        Field.sequence,
                        Field.fieldtype_id,
                        FieldType.name.label("fieldtype_name"),
                        FieldType.datatype,
                        FieldType.regex,
                    )
                    .select_from(Field.__table__.outerjoin(FieldType.__table__, Field.fieldtype_id == FieldType.id))
                    .where(Field.form_id == form_id)
                    .order_by(Field.sequence.asc(), Field.id.asc())
                ).mappings().all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load form {form_id}: {e}") from e

        definition = FormDefinition(
            id=form["id"],
            formname=form["formname"],
            description=form["description"],
            parsemethod=form["parsemethod"],
            prefix=form["prefix"],
            fields=tuple(FieldDefinition(**row) for row in field_rows),
        )
        self._forms[form_id] = definition
        return definition

    def resolve_form_prefix(self, form_id: int) -> str:
        """
        Table-name suffix for a form's data table.

        Raises:
            NotFound: no form with this id
            InvalidResource: the stored prefix does not yield a usable table name
        """
        suffix = self.get_form(form_id).table_suffix
        if not suffix or not _IDENTIFIER.match(suffix):
            raise InvalidResource(
                f"formdata/{form_id}",
                f"form prefix does not name a valid table: {suffix!r}"
            )
        return suffix

    def formdata_table_name(self, form_id: int) -> str:
        return FORMDATA_TABLE_PREFIX + self.resolve_form_prefix(form_id)

    def form_table(self, form_id: int) -> Table:
        """
        Reflect a form's data table from the database.

        Raises:
            NotFound: the form or its data table does not exist
        """
        name = self.formdata_table_name(form_id)
        table = self._tables.get(name)
        if table is not None:
            return table

        try:
            table = Table(name, MetaData(), autoload_with=self.engine)
        except NoSuchTableError as e:
            raise NotFound(f"Form data table {name} has not been provisioned") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to reflect table {name}: {e}") from e

        self._tables[name] = table
        return table

    # =========================================================================
    # Table provisioning
    # =========================================================================

    def build_form_table(self, form_id: int, metadata: Optional[MetaData] = None) -> Table:
        """Table definition for a form's data table, built from its fields."""
        form = self.get_form(form_id)
        name = self.formdata_table_name(form_id)

        columns: List[Column] = [
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("message_id", Integer, ForeignKey(Message.__table__.c.id), nullable=False, index=True),
        ]
        for field in form.fields:
            if not _IDENTIFIER.match(field.name or ""):
                raise InvalidResource(
                    f"form/{form_id}",
                    f"field name is not a valid column name: {field.name!r}"
                )
            column_type = DATATYPE_COLUMN_TYPES.get((field.datatype or "").lower(), Text)
            columns.append(Column(field.column_name, column_type))

        return Table(name, metadata if metadata is not None else MetaData(), *columns)

    def provision_form_table(self, form_id: int) -> str:
        """
        Create a form's data table if it does not exist yet.

        Returns:
            The table name
        """
        table = self.build_form_table(form_id)
        logger.info(f"Provisioning form data table: {table.name}")
        try:
            table.create(bind=self.engine, checkfirst=True)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create table {table.name}: {e}") from e

        self._tables.pop(table.name, None)
        return table.name

    def drop_form_tables(self) -> List[str]:
        """
        Drop the data table of every form.

        Returns:
            Names of the tables that existed and were dropped
        """
        dropped = []
        try:
            with self.engine.connect() as conn:
                prefixes = conn.execute(select(Form.prefix)).scalars().all()
            existing = set(inspect(self.engine).get_table_names())

            for prefix in prefixes:
                suffix = strip_prefix_marker(prefix)
                name = FORMDATA_TABLE_PREFIX + suffix
                if not suffix or not _IDENTIFIER.match(suffix) or name not in existing:
                    continue
                Table(name, MetaData()).drop(bind=self.engine, checkfirst=True)
                dropped.append(name)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to drop form data tables: {e}") from e

        logger.info(f"Dropped {len(dropped)} form data table(s)")
        self._tables.clear()
        return dropped
