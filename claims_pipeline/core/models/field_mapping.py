"""
Field catalog and mapping models.

A canonical (standard) field is identified by its field_name, e.g. "member_dob".
Mappings associate spreadsheet source columns with those field names.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from claims_pipeline.utils.clock import utc_now


class FieldDataType(str, Enum):
    STRING = "STRING"
    NUMBER = "NUMBER"
    DATE = "DATE"
    BOOLEAN = "BOOLEAN"
    ENUM = "ENUM"


class RequirementLevel(str, Enum):
    CRITICAL = "CRITICAL"
    REQUIRED = "REQUIRED"
    RECOMMENDED = "RECOMMENDED"
    OPTIONAL = "OPTIONAL"


class StandardField(BaseModel):
    """
    A canonical field that spreadsheet columns are mapped onto.

    Attributes:
        field_name: Stable identifier and record key ("member_dob")
        display_name: Human-readable label ("Member Date of Birth")
        product_id: Product this field belongs to
        data_type: Expected value type
        requirement_level: How important the field is for downstream use
        display_order: Catalog order; also the similarity tie-break order
        is_active: Whether the field is offered for mapping
    """

    field_name: str = Field(..., min_length=1)
    display_name: str = ""
    product_id: str | None = None
    description: str | None = None
    data_type: FieldDataType = FieldDataType.STRING
    requirement_level: RequirementLevel = RequirementLevel.OPTIONAL
    display_order: int = 0
    is_active: bool = True

    class Config:
        json_schema_extra = {
            "example": {
                "field_name": "member_dob",
                "display_name": "Member Date of Birth",
                "product_id": "pbm",
                "data_type": "DATE",
                "requirement_level": "REQUIRED",
                "display_order": 3,
            }
        }


class FieldVariation(BaseModel):
    """A known alternative header name for a canonical field."""

    field_name: str = Field(..., min_length=1)
    variation_name: str = Field(..., min_length=1)
    is_active: bool = True


class FieldMapping(BaseModel):
    """
    The active mapping of one file.

    Attributes:
        mapping_id: Identifier of this mapping version
        file_id: Owning file
        columns: Source column -> canonical field name, in header order
        is_active: At most one active mapping exists per file
    """

    mapping_id: str
    file_id: str
    columns: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)

    def mapped_field_names(self) -> list[str]:
        """Canonical field names targeted by this mapping, in column order."""
        return list(self.columns.values())


class MappingTemplate(BaseModel):
    """
    A named, reusable source column -> canonical field mapping.

    Templates are kept per product and applied to new files whose headers
    follow a layout seen before.

    Attributes:
        template_id: Identifier of the template
        template_name: Name shown when picking a template
        product_id: Product whose catalog the field names belong to
        columns: Source column -> canonical field name, in header order
        is_active: Deleted templates stay stored but inactive
    """

    template_id: str
    template_name: str = Field(..., min_length=1)
    product_id: str | None = None
    columns: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utc_now)
    updated_by: str | None = None
    updated_at: datetime | None = None


class AutoMapResult(BaseModel):
    """Outcome of one auto-mapping call, with match-type statistics."""

    mapping: dict[str, str] = Field(default_factory=dict)
    exact_matches: int = 0
    variation_matches: int = 0
    similarity_matches: int = 0
    unmapped_headers: list[str] = Field(default_factory=list)

    @property
    def total_matches(self) -> int:
        return self.exact_matches + self.variation_matches + self.similarity_matches
