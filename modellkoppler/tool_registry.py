"""Tool registry: names, schemas, argument validation and executors.

Parameter schemas are either pydantic model classes or JSON-schema objects.
JSON schemas are compiled once at registration into a strict pydantic model so
both kinds validate the same way, and both export an OpenAI-style function
definition for injection into backend requests.
"""

from __future__ import annotations

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model

from .errors import ConfigurationError

LOG = logging.getLogger(__name__)

_TOOL_NAME_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "object": dict,
    "null": type(None),
}


def _python_type(spec: Any) -> Any:
    """Map one JSON-schema property to a python annotation."""
    if not isinstance(spec, dict):
        return Any
    enum = spec.get("enum")
    if isinstance(enum, list) and enum:
        return Literal[tuple(enum)]
    json_type = spec.get("type")
    if isinstance(json_type, list):
        members = [t for t in json_type if t != "null"]
        inner = _python_type({**spec, "type": members[0]}) if len(members) == 1 else Any
        return Optional[inner] if "null" in json_type else inner
    if json_type == "array":
        return list[_python_type(spec.get("items"))]
    return _JSON_TYPES.get(str(json_type), Any)


def arguments_model_from_schema(tool_name: str, schema: dict[str, Any]) -> type[BaseModel]:
    """Compile a JSON object schema into a strict pydantic model."""
    if schema.get("type", "object") != "object":
        raise ConfigurationError(f"tool '{tool_name}' parameters must be an object schema")
    properties = schema.get("properties") or {}
    if not isinstance(properties, dict):
        raise ConfigurationError(f"tool '{tool_name}' schema properties must be an object")
    required = set(schema.get("required") or [])
    unknown_required = required - set(properties)
    if unknown_required:
        raise ConfigurationError(
            f"tool '{tool_name}' requires undeclared properties: {', '.join(sorted(unknown_required))}"
        )

    fields: dict[str, Any] = {}
    for position, (prop, spec) in enumerate(properties.items()):
        annotation = _python_type(spec)
        # Positional field names keep arbitrary JSON property names clear of BaseModel attributes.
        if prop in required:
            fields[f"p{position}"] = (annotation, Field(..., alias=prop))
        else:
            default = spec.get("default") if isinstance(spec, dict) else None
            fields[f"p{position}"] = (Optional[annotation], Field(default, alias=prop))

    extra = "forbid" if schema.get("additionalProperties") is False else "allow"
    return create_model(
        f"{tool_name}_arguments",
        __config__=ConfigDict(extra=extra, strict=True, populate_by_name=False),
        **fields,
    )


@dataclass
class RegisteredTool:
    """One registered tool."""

    name: str
    description: str
    parameters: dict[str, Any]
    arguments_model: type[BaseModel]
    executor: Any
    timeout_seconds: float | None = None
    from_json_schema: bool = True

    def function_definition(self) -> dict[str, Any]:
        """OpenAI-style tool definition injected into backend requests."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": copy.deepcopy(self.parameters),
            },
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate arguments; raises pydantic.ValidationError on mismatch."""
        model = self.arguments_model.model_validate(arguments)
        if not self.from_json_schema:
            return model.model_dump()
        validated = model.model_dump(by_alias=True, exclude_unset=True)
        for prop, spec in (self.parameters.get("properties") or {}).items():
            if prop not in validated and isinstance(spec, dict) and "default" in spec:
                validated[prop] = spec["default"]
        return validated


class ToolRegistry:
    """Mapping from tool name to description, schema and executor.

    Registration and lookup are the only mutations; names are unique per registry.
    """

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        *,
        description: str,
        parameters: dict[str, Any] | type[BaseModel],
        executor: Any,
        timeout_seconds: float | None = None,
    ) -> RegisteredTool:
        """Register one tool; duplicate or malformed names raise ConfigurationError."""
        if not _TOOL_NAME_RE.match(name):
            raise ConfigurationError(f"invalid tool name '{name}'")
        if name in self._tools:
            raise ConfigurationError(f"tool '{name}' is already registered")
        executor_fn = getattr(executor, "execute", executor)
        if not callable(executor_fn):
            raise ConfigurationError(f"tool '{name}' executor is not callable")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ConfigurationError(f"tool '{name}' timeout must be > 0")

        if isinstance(parameters, type) and issubclass(parameters, BaseModel):
            tool = RegisteredTool(
                name=name,
                description=description,
                parameters=parameters.model_json_schema(),
                arguments_model=parameters,
                executor=executor,
                timeout_seconds=timeout_seconds,
                from_json_schema=False,
            )
        elif isinstance(parameters, dict):
            tool = RegisteredTool(
                name=name,
                description=description,
                parameters=copy.deepcopy(parameters),
                arguments_model=arguments_model_from_schema(name, parameters),
                executor=executor,
                timeout_seconds=timeout_seconds,
            )
        else:
            raise ConfigurationError(f"tool '{name}' parameters must be a JSON schema or pydantic model")

        self._tools[name] = tool
        LOG.info("tool registered name=%s timeout=%s", name, timeout_seconds)
        return tool

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def function_definitions(self) -> list[dict[str, Any]]:
        """Definitions of all tools, in registration order."""
        return [tool.function_definition() for tool in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
