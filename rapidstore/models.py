"""
SQLAlchemy ORM models for the static tables.

Per-form data tables (formdata_<prefix>) are not declared here; their
columns depend on each form's fields and they are built at runtime by
rapidstore.registry.
For payload validation models, see schemas.py.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from rapidstore.storage import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the way timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Monitor(Base):
    """
    A message sender.

    Table: monitors
    Natural key: phone (unique, backs find-or-create on insert)
    """
    __tablename__ = "monitors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, unique=True, index=True)
    alias = Column(String)
    email = Column(String)
    first_name = Column(String)
    last_name = Column(String)
    incoming_messages = Column(Integer, default=0)


class Message(Base):
    """
    An SMS message sent to or received from a monitor.

    Table: messages
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message = Column(Text)
    time = Column(DateTime, default=utcnow, index=True)
    monitor_id = Column(Integer, ForeignKey("monitors.id"), index=True)
    direction = Column(String, nullable=False)  # 'incoming' or 'outgoing'
    is_virtual = Column(Boolean, default=False)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    time = Column(DateTime, default=utcnow)


class Survey(Base):
    __tablename__ = "surveys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    surveyname = Column(String)
    time = Column(DateTime, default=utcnow)


class Form(Base):
    """
    A survey form definition.

    The prefix (minus any leading marker such as '@') names the form's
    data table: formdata_<prefix>.
    """
    __tablename__ = "forms"

    id = Column(Integer, primary_key=True, autoincrement=True)
    formname = Column(String, nullable=False)
    description = Column(Text)
    parsemethod = Column(String)
    prefix = Column(String, unique=True)


class FieldType(Base):
    """Reusable type descriptor (numeric, word, date, ...) attached to fields."""
    __tablename__ = "fieldtypes"

    # Caller supplied, not autoincremented
    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String, nullable=False)
    regex = Column(String)
    datatype = Column(String)


class Field(Base):
    """One column of a form's data table."""
    __tablename__ = "fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    form_id = Column(Integer, ForeignKey("forms.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    fieldtype_id = Column(Integer, ForeignKey("fieldtypes.id"), nullable=False)
    prompt = Column(String)
    sequence = Column(Integer)
