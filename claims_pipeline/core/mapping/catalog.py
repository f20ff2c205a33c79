"""
Field catalog configuration.

Loads the canonical field catalog and its known header variations from YAML.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from claims_pipeline.core.models import FieldVariation, StandardField


class FieldCatalogLoader:
    """
    Loads standard claim fields from a YAML file.

    Expected YAML format:
    ```yaml
    fields:
      - field_name: member_dob
        display_name: Member Date of Birth
        product_id: pbm
        data_type: DATE
        requirement_level: REQUIRED
        display_order: 1
        variations: [DOB, Birth Date]
    ```

    display_order defaults to the field's position in the list.
    """

    def __init__(self, config_path: str | Path):
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Field catalog file not found: {config_path}")

    def load(self) -> tuple[list[StandardField], list[FieldVariation]]:
        """
        Parse the catalog.

        Returns:
            (fields in file order, variations)

        Raises:
            ValueError: If YAML is invalid, a field is malformed or defined twice
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config or "fields" not in config:
            raise ValueError("Catalog file must contain 'fields' section")
        if not isinstance(config["fields"], list):
            raise ValueError("'fields' section must be a list")

        fields: list[StandardField] = []
        variations: list[FieldVariation] = []
        seen: set[str] = set()
        for idx, field_def in enumerate(config["fields"]):
            field, field_variations = self._parse_field(field_def, idx)
            if field.field_name in seen:
                raise ValueError(f"Duplicate field '{field.field_name}'")
            seen.add(field.field_name)
            fields.append(field)
            variations.extend(field_variations)
        return fields, variations

    def _parse_field(
        self, field_def: dict[str, Any], idx: int
    ) -> tuple[StandardField, list[FieldVariation]]:
        if not isinstance(field_def, dict):
            raise ValueError(f"Field #{idx} must be a mapping")
        if "field_name" not in field_def:
            raise ValueError(f"Field #{idx} is missing 'field_name'")

        name = field_def["field_name"]
        values = {k: v for k, v in field_def.items() if k != "variations"}
        values.setdefault("display_name", name)
        values.setdefault("display_order", idx + 1)
        for key in ("data_type", "requirement_level"):
            if isinstance(values.get(key), str):
                values[key] = values[key].upper()

        try:
            field = StandardField(**values)
            variations = [
                FieldVariation(field_name=name, variation_name=str(v))
                for v in field_def.get("variations") or []
            ]
        except ValidationError as e:
            raise ValueError(f"Invalid field definition '{name}': {e}") from e
        return field, variations
