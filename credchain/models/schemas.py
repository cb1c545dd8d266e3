"""
Credchain - Request Schemas
Pydantic models for document metadata supplied at registration.
"""

import json
from datetime import date
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from credchain.core.errors import ValidationError
from credchain.models.models import DocumentKind


ALLOWED_MIME_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
    "image/jpg",
})


class DocumentMetadata(BaseModel):
    """Academic metadata bound to a registered document."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    student_name: str = Field(min_length=1, max_length=100)
    student_id: str = Field(min_length=1, max_length=50)
    institution_name: str = Field(min_length=1, max_length=200)
    document_kind: DocumentKind
    issue_date: date
    expiry_date: Optional[date] = None
    grade: Optional[str] = Field(None, max_length=20)
    course: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def _expiry_after_issue(self) -> "DocumentMetadata":
        if self.expiry_date is not None and self.expiry_date <= self.issue_date:
            raise ValueError("expiry_date must be after issue_date")
        return self


def parse_metadata(raw: Union[Mapping[str, Any], str, None]) -> DocumentMetadata:
    """
    Parse registration metadata given as a mapping or a JSON string.

    Raises ValidationError naming the first offending field.
    """
    if raw is None:
        raise ValidationError("metadata is required", field="metadata")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise ValidationError("metadata must be valid JSON", field="metadata") from None
    if not isinstance(raw, Mapping):
        raise ValidationError("metadata must be an object", field="metadata")

    try:
        return DocumentMetadata.model_validate(dict(raw))
    except PydanticValidationError as exc:
        errors = exc.errors()
        first = errors[0]
        loc = [str(part) for part in first.get("loc", ())]
        field = loc[0] if loc else "expiry_date"
        details = [
            {
                "loc": [str(part) for part in err.get("loc", ())] or ["expiry_date"],
                "msg": err.get("msg", ""),
                "type": err.get("type", ""),
            }
            for err in errors
        ]
        raise ValidationError(f"Invalid metadata: {field}: {first.get('msg', '')}", field=field, details=details) from None
