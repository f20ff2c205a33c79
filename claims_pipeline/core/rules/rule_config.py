"""
Rule configuration management.

Loads enrichment rule definitions from YAML files.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from claims_pipeline.core.models import RuleDefinition


class RuleConfigLoader:
    """
    Loads enrichment rule definitions from YAML configuration files.

    Expected YAML format:
    ```yaml
    rules:
      - id: age_classification
        name: Age Classification Rule
        priority: 10
        processor: age_classification
      - id: channel_classification
        name: Channel Classification Rule
        priority: 20
        processor: channel_classification
        parameters:
          retail_max_days: 30
          retail90_max_days: 83
        active: true
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the rule config loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Rule configuration file not found: {config_path}")

    def load_rule_definitions(self, active_only: bool = True) -> list[RuleDefinition]:
        """
        Load and parse rule definitions, ordered by ascending priority.

        Raises:
            ValueError: If YAML is invalid or a rule is missing required fields
        """
        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config or "rules" not in config:
            raise ValueError("Configuration file must contain 'rules' section")
        if not isinstance(config["rules"], list):
            raise ValueError("'rules' section must be a list")

        definitions = [self._parse_rule(rule_def, idx) for idx, rule_def in enumerate(config["rules"])]

        seen: set[str] = set()
        for definition in definitions:
            if definition.rule_id in seen:
                raise ValueError(f"Duplicate rule id '{definition.rule_id}'")
            seen.add(definition.rule_id)

        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return sorted(definitions, key=lambda d: d.priority)

    def _parse_rule(self, rule_def: dict[str, Any], idx: int) -> RuleDefinition:
        if not isinstance(rule_def, dict):
            raise ValueError(f"Rule #{idx} must be a mapping")
        if "processor" not in rule_def:
            raise ValueError(f"Rule #{idx} is missing 'processor'")

        processor = rule_def["processor"]
        rule_id = rule_def.get("id", processor)

        try:
            return RuleDefinition(
                rule_id=str(rule_id),
                name=rule_def.get("name", rule_id),
                rule_type=rule_def.get("type", "enrichment"),
                priority=rule_def.get("priority", 100),
                processor=processor,
                parameters=rule_def.get("parameters", rule_def.get("params", {})),
                is_active=rule_def.get("active", rule_def.get("enabled", True)),
            )
        except ValidationError as e:
            raise ValueError(f"Invalid rule definition '{rule_id}': {e}") from e
