"""Repair of tool arguments that flatten nested object parameters.

Models sometimes place the children of an object parameter at the top level:

    schema:   {"action": str, "parameters": {"owner": str, "repo": str}}
    received: {"action": "list", "owner": "foo", "repo": "bar"}
    repaired: {"action": "list", "parameters": {"owner": "foo", "repo": "bar"}}
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from taskmate.utils.logging import get_logger

if TYPE_CHECKING:
    from taskmate.tools.base import ToolDefinition

logger = get_logger(__name__)


@dataclass
class SchemaFixResult:
    """Outcome of fix_schema()."""

    valid: bool
    fixed: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)


def _nested_properties(prop_schema: Any) -> dict[str, Any] | None:
    if not isinstance(prop_schema, dict) or prop_schema.get("type") != "object":
        return None
    properties = prop_schema.get("properties")
    if not isinstance(properties, dict) or not properties:
        return None
    return properties


def fix_schema(args: dict[str, Any], schema: dict[str, Any] | None) -> SchemaFixResult:
    """Validate and auto-fix tool arguments against a JSON schema.

    Args:
        args: Arguments supplied by the model
        schema: JSON schema of the tool input

    Returns:
        valid=False when required keys are missing after repair; otherwise
        valid=True, with ``fixed`` set only if a repair was applied.
    """
    try:
        properties = schema.get("properties") if isinstance(schema, dict) else None
        if not isinstance(properties, dict) or not isinstance(args, dict):
            return SchemaFixResult(valid=True)

        fixed = dict(args)
        warnings: list[str] = []
        repaired = False

        for param_name, prop_schema in properties.items():
            nested = _nested_properties(prop_schema)
            if nested is None:
                continue

            existing = args.get(param_name)
            if param_name in args and not isinstance(existing, dict):
                continue

            stray_keys = [key for key in nested if key in fixed and key not in properties]
            if not stray_keys:
                continue

            merged = dict(existing) if isinstance(existing, dict) else {}
            for key in stray_keys:
                merged[key] = fixed.pop(key)
            fixed[param_name] = merged
            repaired = True

            warnings.append(
                f"Parameter structure error: Found {', '.join(stray_keys)} at top level, "
                f"but they should be nested inside '{param_name}'. Auto-fixed."
            )

        required = schema.get("required") or []
        if isinstance(required, list):
            missing = [key for key in required if isinstance(key, str) and key not in fixed]
            if missing:
                warnings.append(f"Missing required parameters: {', '.join(missing)}")
                return SchemaFixResult(valid=False, warnings=warnings)

        if repaired:
            return SchemaFixResult(valid=True, fixed=fixed, warnings=warnings)
        return SchemaFixResult(valid=True)

    except Exception as e:  # noqa: BLE001 - a broken schema must never block execution
        logger.debug(f"Schema check skipped: {e}")
        return SchemaFixResult(valid=True)


def _resolve(node: Any, defs: dict[str, Any], depth: int = 0) -> Any:
    """Inline local $ref pointers and optional (anyOf object|null) wrappers."""
    if depth > 10 or not isinstance(node, dict):
        return node

    ref = node.get("$ref")
    if isinstance(ref, str) and ref.startswith("#/$defs/"):
        target = defs.get(ref.removeprefix("#/$defs/"))
        if isinstance(target, dict):
            return _resolve({**target, **{k: v for k, v in node.items() if k != "$ref"}}, defs, depth + 1)

    any_of = node.get("anyOf")
    if isinstance(any_of, list):
        non_null = [option for option in any_of if not (isinstance(option, dict) and option.get("type") == "null")]
        if len(non_null) == 1:
            resolved = _resolve(non_null[0], defs, depth + 1)
            if isinstance(resolved, dict):
                return {**{k: v for k, v in node.items() if k != "anyOf"}, **resolved}

    if isinstance(node.get("properties"), dict):
        node = {**node, "properties": {k: _resolve(v, defs, depth + 1) for k, v in node["properties"].items()}}
    return node


def get_tool_schema(tool: "ToolDefinition") -> dict[str, Any] | None:
    """Return the tool's input schema with nested objects inlined, or None."""
    try:
        schema = tool.get_json_schema()
    except Exception as e:  # noqa: BLE001
        logger.debug(f"No schema for tool {tool.name}: {e}")
        return None
    if not isinstance(schema, dict):
        return None
    defs = schema.get("$defs") or {}
    return _resolve(schema, defs if isinstance(defs, dict) else {})
