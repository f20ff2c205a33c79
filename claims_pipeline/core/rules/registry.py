"""
Rule registry for enrichment processors.

Holds the rule definitions read from a configuration source and the
executable processors registered against them. Definitions are matched
to implementations through PROCESSOR_FACTORIES, a fixed table keyed by
the definition's ``processor`` value.
"""

import inspect
import threading
from typing import Callable, Protocol

from claims_pipeline.core.exceptions import NotInitialized
from claims_pipeline.core.models import RuleDefinition
from claims_pipeline.core.rules.age_processor import AgeRulesProcessor
from claims_pipeline.core.rules.base_processor import RuleProcessor
from claims_pipeline.core.rules.channel_processor import ChannelRuleProcessor
from claims_pipeline.observability.logger import get_logger

logger = get_logger(__name__)

ProcessorFactory = Callable[..., RuleProcessor]

PROCESSOR_FACTORIES: dict[str, ProcessorFactory] = {
    AgeRulesProcessor.processor_key: AgeRulesProcessor,
    ChannelRuleProcessor.processor_key: ChannelRuleProcessor,
}


class RuleDefinitionSource(Protocol):
    def load_rule_definitions(self, active_only: bool = True) -> list[RuleDefinition]:
        ...


def default_rule_definitions() -> list[RuleDefinition]:
    """Definitions for the built-in processors, used to seed an empty store."""
    return [
        RuleDefinition(
            rule_id=factory.default_rule_id,
            name=factory.default_name,
            priority=factory.default_priority,
            processor=key,
        )
        for key, factory in PROCESSOR_FACTORIES.items()
    ]


class RuleRegistry:
    """
    Catalog of rule definitions plus the live processors that implement them.

    load_definitions() must run before active_processors() is queried.
    """

    def __init__(
        self,
        definition_source: RuleDefinitionSource,
        factories: dict[str, ProcessorFactory] | None = None,
    ):
        self.definition_source = definition_source
        self.factories = dict(PROCESSOR_FACTORIES if factories is None else factories)
        self._lock = threading.Lock()
        self._definitions: dict[str, RuleDefinition] | None = None
        self._processors: dict[str, RuleProcessor] = {}

    @property
    def initialized(self) -> bool:
        return self._definitions is not None

    def load_definitions(self) -> list[RuleDefinition]:
        """Load every definition from the source; active ones are ordered by priority."""
        definitions = self.definition_source.load_rule_definitions(active_only=False)
        ordered = sorted(definitions, key=lambda d: d.priority)
        with self._lock:
            self._definitions = {d.rule_id: d for d in ordered}

        active = [d for d in ordered if d.is_active]
        logger.info(
            f"Loaded {len(ordered)} rule definitions ({len(active)} active): "
            f"{[d.rule_id for d in active]}"
        )
        return active

    def register_processor(self, processor: RuleProcessor) -> None:
        with self._lock:
            self._processors[processor.rule_id] = processor
        logger.debug(f"Registered processor {processor!r}")

    def register_default_processors(self, **factory_kwargs) -> list[RuleProcessor]:
        """
        Build a processor for every loaded definition whose processor key is known.

        Args:
            **factory_kwargs: Passed to every factory whose constructor accepts them
                (e.g. ``today`` for the age rule)
        """
        definitions = self._require_definitions()
        built = []
        for definition in definitions.values():
            factory = self.factories.get(definition.processor)
            if factory is None:
                logger.warning(
                    f"No processor implementation '{definition.processor}' "
                    f"for rule {definition.rule_id}"
                )
                continue
            accepted = inspect.signature(factory).parameters
            kwargs = {k: v for k, v in factory_kwargs.items() if k in accepted}
            processor = factory(
                rule_id=definition.rule_id,
                name=definition.name,
                priority=definition.priority,
                **kwargs,
            )
            self.register_processor(processor)
            built.append(processor)
        return built

    def active_processors(self) -> list[RuleProcessor]:
        """
        Processors whose definition is active and registered, by ascending priority.

        Raises:
            NotInitialized: If load_definitions() has not run
        """
        definitions = self._require_definitions()
        with self._lock:
            processors = dict(self._processors)

        active = []
        for definition in definitions.values():
            if not definition.is_active:
                continue
            processor = processors.get(definition.rule_id)
            if processor is None:
                logger.warning(
                    f"Rule {definition.rule_id} ({definition.name}) has no registered processor, skipping"
                )
                continue
            active.append(processor)
        return active

    def get_definition(self, rule_id: str) -> RuleDefinition | None:
        return self._require_definitions().get(rule_id)

    def get_processor(self, rule_id: str) -> RuleProcessor | None:
        with self._lock:
            return self._processors.get(rule_id)

    def parameters_for(self, rule_id: str) -> dict:
        definition = self.get_definition(rule_id)
        return dict(definition.parameters) if definition else {}

    def _require_definitions(self) -> dict[str, RuleDefinition]:
        with self._lock:
            definitions = self._definitions
        if definitions is None:
            raise NotInitialized("Rule registry not initialized; call load_definitions() first")
        return definitions
