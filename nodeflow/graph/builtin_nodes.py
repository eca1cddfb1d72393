"""
Built-in control node types: start, end, condition, template.

Model calls, retrieval, scripting and HTTP nodes belong to the host
application and are registered alongside these.
"""

import json
import logging
import re
from typing import Any

from nodeflow.graph.node import FINAL_OUTPUT_PORT, NodeTypeRegistry, NodeTypeSpec, RunContext

logger = logging.getLogger(__name__)

CONDITION_TYPES = (
    "contains",
    "equals",
    "not_equals",
    "greater_than",
    "less_than",
    "regex",
    "custom",
)

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.-]+)\s*\}\}")


async def _execute_start(
    inputs: dict[str, Any], properties: dict[str, Any], ctx: RunContext
) -> dict[str, Any]:
    return {"output": {**ctx.variables, **(properties.get("variables") or {})}}


async def _execute_end(
    inputs: dict[str, Any], properties: dict[str, Any], ctx: RunContext
) -> dict[str, Any]:
    result = inputs.get("input")
    if properties.get("output_format") == "json":
        return {FINAL_OUTPUT_PORT: json.dumps(result, indent=2, default=str)}
    return {FINAL_OUTPUT_PORT: result}


def evaluate_condition(value: Any, properties: dict[str, Any]) -> bool:
    """Apply the configured comparison to a condition node's input."""
    condition_type = properties.get("condition_type", "contains")
    compare_value = properties.get("compare_value", "")

    if condition_type == "contains":
        return str(compare_value) in str(value)
    if condition_type == "equals":
        return value == compare_value
    if condition_type == "not_equals":
        return value != compare_value
    if condition_type in ("greater_than", "less_than"):
        try:
            left, right = float(value), float(compare_value)
        except (TypeError, ValueError):
            return False
        return left > right if condition_type == "greater_than" else left < right
    if condition_type == "regex":
        return re.search(str(compare_value), str(value)) is not None
    if condition_type == "custom":
        predicate = properties.get("predicate")
        if not callable(predicate):
            logger.warning("⚠ Custom condition has no callable 'predicate'; treating as false")
            return False
        try:
            return bool(predicate(value))
        except Exception as e:
            logger.warning(f"⚠ Custom condition failed: {e}")
            return False

    raise ValueError(f"Unknown condition_type '{condition_type}'. Valid: {CONDITION_TYPES}")


async def _execute_condition(
    inputs: dict[str, Any], properties: dict[str, Any], ctx: RunContext
) -> dict[str, Any]:
    value = inputs.get("input")
    # Exactly one port is produced; the engine follows only that branch
    if evaluate_condition(value, properties):
        return {"true": value}
    return {"false": value}


def render_template(template: str, values: dict[str, Any]) -> str:
    """Replace {{name}} placeholders; unknown names are left untouched."""

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key in values:
            return str(values[key])
        return match.group(0)

    return _PLACEHOLDER.sub(substitute, template)


async def _execute_template(
    inputs: dict[str, Any], properties: dict[str, Any], ctx: RunContext
) -> dict[str, Any]:
    values = dict(ctx.variables)
    provided = inputs.get("variables")
    if isinstance(provided, dict):
        values.update(provided)
    return {"output": render_template(properties.get("template", ""), values)}


BUILTIN_NODE_TYPES = [
    NodeTypeSpec(
        type="start",
        name="Start",
        category="control",
        description="Entry point; emits the run's variables",
        execute=_execute_start,
        outputs={"output": {"type": "any", "label": "Output"}},
        properties={
            "variables": {
                "type": "object",
                "label": "Input variables",
                "default": {},
                "description": "Variables merged over the run's initial variables",
            }
        },
    ),
    NodeTypeSpec(
        type="end",
        name="End",
        category="control",
        description="Exit point; its input becomes the run result",
        execute=_execute_end,
        inputs={"input": {"type": "any", "label": "Input"}},
        properties={
            "output_format": {
                "type": "select",
                "label": "Output format",
                "options": ["text", "json", "markdown"],
                "default": "text",
            }
        },
    ),
    NodeTypeSpec(
        type="condition",
        name="Condition",
        category="control",
        description="Routes its input to the 'true' or the 'false' port",
        execute=_execute_condition,
        branching=True,
        inputs={"input": {"type": "any", "label": "Input"}},
        outputs={
            "true": {"type": "any", "label": "True"},
            "false": {"type": "any", "label": "False"},
        },
        properties={
            "condition_type": {
                "type": "select",
                "label": "Condition type",
                "options": list(CONDITION_TYPES),
                "default": "contains",
            },
            "compare_value": {"type": "text", "label": "Compare value", "default": ""},
        },
    ),
    NodeTypeSpec(
        type="template",
        name="Template",
        category="process",
        description="Substitutes {{name}} placeholders",
        execute=_execute_template,
        inputs={"variables": {"type": "object", "label": "Variables"}},
        outputs={"output": {"type": "string", "label": "Output"}},
        properties={
            "template": {
                "type": "textarea",
                "label": "Template",
                "default": "{{variable}}",
            }
        },
    ),
]


def register_builtin_nodes(registry: NodeTypeRegistry) -> None:
    for spec in BUILTIN_NODE_TYPES:
        registry.register(spec)
    logger.debug(f"Registered {len(BUILTIN_NODE_TYPES)} built-in node types")
