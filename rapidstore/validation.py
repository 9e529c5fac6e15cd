import logging
from typing import Any, Dict, Mapping, Optional, Type

import pydantic
from pydantic import BaseModel

from rapidstore.errors import ValidationError
from rapidstore.resources import ResourceKind
from rapidstore.schemas import (
    FieldPayload,
    FieldTypePayload,
    FormDataPayload,
    FormPayload,
    MessagePayload,
    MonitorPayload,
    ProjectPayload,
    SurveyPayload,
)

logger = logging.getLogger(__name__)


INSERT_SCHEMAS: Mapping[ResourceKind, Type[BaseModel]] = {
    ResourceKind.MESSAGE: MessagePayload,
    ResourceKind.MONITOR: MonitorPayload,
    ResourceKind.PROJECT: ProjectPayload,
    ResourceKind.SURVEY: SurveyPayload,
    ResourceKind.FORM: FormPayload,
    ResourceKind.FIELD: FieldPayload,
    ResourceKind.FIELDTYPE: FieldTypePayload,
    ResourceKind.FORMDATA_ID: FormDataPayload,
}


class Validator:
    """Checks insert payloads per resource kind and fills in defaults."""

    def __init__(self, schemas: Optional[Mapping[ResourceKind, Type[BaseModel]]] = None):
        self.schemas = dict(schemas if schemas is not None else INSERT_SCHEMAS)

    def supports(self, kind: ResourceKind) -> bool:
        return kind in self.schemas

    def validate(self, kind: ResourceKind, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Validate and normalize an insert payload.

        Args:
            kind: Resource kind being inserted
            payload: Column name -> value mapping (None is treated as empty)

        Returns:
            New dict with defaults injected; the input is not modified

        Raises:
            ValidationError: naming the first missing or invalid field
        """
        schema = self.schemas.get(kind)
        if schema is None:
            raise ValueError(f"No insert schema for resource kind {kind.value}")

        values = dict(payload or {})
        try:
            model = schema.model_validate(values)
        except pydantic.ValidationError as e:
            error = e.errors()[0]
            field = ".".join(str(part) for part in error["loc"]) or "__root__"
            reason = "field required" if error["type"] == "missing" else error["msg"]
            logger.debug(f"Payload for {kind.value} rejected: {field}: {reason}")
            raise ValidationError(field, reason) from e

        return model.model_dump()
