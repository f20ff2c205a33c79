"""
Enrichment rule processors, registry and configuration.
"""

from .age_processor import AgeRulesProcessor
from .base_processor import RuleProcessor
from .channel_processor import ChannelRuleProcessor
from .registry import PROCESSOR_FACTORIES, RuleRegistry, default_rule_definitions
from .rule_config import RuleConfigLoader

__all__ = [
    "RuleProcessor",
    "AgeRulesProcessor",
    "ChannelRuleProcessor",
    "RuleRegistry",
    "PROCESSOR_FACTORIES",
    "default_rule_definitions",
    "RuleConfigLoader",
]
