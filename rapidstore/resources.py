"""
Resource path matching.

Resources are addressed by paths of the form ``<collection>[/<id>]``,
optionally written as ``content://<authority>/<collection>[/<id>]``.
The collection names are an external contract and must stay stable.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from rapidstore.errors import InvalidResource

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    MESSAGE = "message"
    MESSAGE_ID = "message_id"
    MONITOR = "monitor"
    MONITOR_ID = "monitor_id"
    MONITOR_MESSAGES = "monitor_messages"
    FORM = "form"
    FORM_ID = "form_id"
    FIELD = "field"
    FIELD_ID = "field_id"
    FIELDTYPE = "fieldtype"
    FIELDTYPE_ID = "fieldtype_id"
    FORMDATA_ID = "formdata_id"
    PROJECT = "project"
    SURVEY = "survey"


# (collection, carries numeric id) -> kind
DEFAULT_PATTERNS: Mapping[Tuple[str, bool], ResourceKind] = MappingProxyType({
    ("message", False): ResourceKind.MESSAGE,
    ("message", True): ResourceKind.MESSAGE_ID,
    ("monitor", False): ResourceKind.MONITOR,
    ("monitor", True): ResourceKind.MONITOR_ID,
    ("messagesbymonitor", True): ResourceKind.MONITOR_MESSAGES,
    ("form", False): ResourceKind.FORM,
    ("form", True): ResourceKind.FORM_ID,
    ("field", False): ResourceKind.FIELD,
    ("field", True): ResourceKind.FIELD_ID,
    ("fieldtype", False): ResourceKind.FIELDTYPE,
    ("fieldtype", True): ResourceKind.FIELDTYPE_ID,
    ("formdata", True): ResourceKind.FORMDATA_ID,
    ("project", False): ResourceKind.PROJECT,
    ("survey", False): ResourceKind.SURVEY,
})

# Kinds whose id scopes a collection rather than naming a single row
SCOPED_KINDS = frozenset({ResourceKind.MONITOR_MESSAGES, ResourceKind.FORMDATA_ID})

_ID_SEGMENT = re.compile(r"^[0-9]+$")
# Largest rowid SQLite can store
MAX_RESOURCE_ID = 2 ** 63 - 1
_CONTENT_TYPE_DIR = "vnd.rapidstore.dir/"
_CONTENT_TYPE_ITEM = "vnd.rapidstore.item/"


@dataclass(frozen=True)
class ResourceMatch:
    """A resolved resource path."""
    kind: ResourceKind
    collection: str
    resource_id: Optional[int] = None

    @property
    def path(self) -> str:
        if self.resource_id is None:
            return self.collection
        return f"{self.collection}/{self.resource_id}"

    @property
    def collection_path(self) -> str:
        """Path of the collection a change to this resource belongs to."""
        if self.kind in SCOPED_KINDS:
            return self.path
        return self.collection

    @property
    def is_item(self) -> bool:
        return self.resource_id is not None and self.kind not in SCOPED_KINDS


class ResourceMatcher:
    """
    Maps resource paths to (kind, id) pairs using an immutable pattern table.

    Matching is an exact collection name plus an optional trailing
    numeric segment. Anything else raises InvalidResource.
    """

    def __init__(
        self,
        authority: str = "org.rapidandroid.provider",
        patterns: Optional[Mapping[Tuple[str, bool], ResourceKind]] = None,
    ):
        self.authority = authority
        self._patterns = MappingProxyType(dict(patterns if patterns is not None else DEFAULT_PATTERNS))

    @property
    def patterns(self) -> Mapping[Tuple[str, bool], ResourceKind]:
        return self._patterns

    def _segments(self, path: str) -> list:
        if not isinstance(path, str):
            raise InvalidResource(repr(path), "path must be a string")

        remainder = path.strip()
        if "://" in remainder:
            scheme, _, rest = remainder.partition("://")
            authority, _, remainder = rest.partition("/")
            if scheme != "content" or authority != self.authority:
                raise InvalidResource(path, "unexpected scheme or authority")

        segments = remainder.strip("/").split("/")
        if not all(segments):
            raise InvalidResource(path, "empty path segment")
        return segments

    def match(self, path: str) -> ResourceMatch:
        """
        Resolve a path to its resource kind.

        Args:
            path: e.g. "message", "message/7", "content://<authority>/formdata/3"

        Returns:
            ResourceMatch with the kind and the numeric id, if any

        Raises:
            InvalidResource: the path matches no registered pattern
        """
        segments = self._segments(path)

        if len(segments) == 1:
            kind = self._patterns.get((segments[0], False))
            if kind is not None:
                return ResourceMatch(kind=kind, collection=segments[0])
        elif len(segments) == 2 and _ID_SEGMENT.match(segments[1]):
            kind = self._patterns.get((segments[0], True))
            if kind is not None:
                resource_id = int(segments[1])
                if resource_id > MAX_RESOURCE_ID:
                    raise InvalidResource(path, "id out of range")
                return ResourceMatch(kind=kind, collection=segments[0], resource_id=resource_id)

        logger.debug(f"No resource pattern matched path: {path!r}")
        raise InvalidResource(path)

    def content_type(self, path: str) -> str:
        """
        MIME-style type for a path: one row or a collection of rows.

        messagesbymonitor/<id> is a filtered listing and reports the
        monitor collection type.
        """
        match = self.match(path)
        if match.kind is ResourceKind.MONITOR_MESSAGES:
            return _CONTENT_TYPE_DIR + "monitor"
        if match.is_item:
            return _CONTENT_TYPE_ITEM + match.collection
        return _CONTENT_TYPE_DIR + match.collection
