"""
ChatBI Agents Module

Stages of the natural-language-to-SQL pipeline.

Available Agents and helpers:
    - BaseAgent: Abstract base class with timing, retries and error wrapping
    - SQLGenerationAgent: One model round trip, parsed into a GeneratedQuery
    - ExecutionGateway: Policy-enforcing executor with output masking
    - classify / parse_command: Intent routing and chat commands (no model call)
    - validate_sql / validate_schema: Static statement and schema checks
    - assess_join_requirement: Cross-table JOIN check
"""

from chatbi.agents.base import BaseAgent
from chatbi.agents.commands import parse_command
from chatbi.agents.executor import ExecutionGateway
from chatbi.agents.generator import GeneratedQuery, SQLGenerationAgent
from chatbi.agents.intent import classify, detect_display_format
from chatbi.agents.join_checker import assess_join_requirement, detect_cross_table_need
from chatbi.agents.validator import validate_schema, validate_sql

__all__ = [
    "BaseAgent",
    "ExecutionGateway",
    "GeneratedQuery",
    "SQLGenerationAgent",
    "assess_join_requirement",
    "classify",
    "detect_cross_table_need",
    "detect_display_format",
    "parse_command",
    "validate_schema",
    "validate_sql",
]
