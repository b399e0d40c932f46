"""Translate JSON-Schema-like tool parameter descriptions into validators.

Capability servers describe tool inputs with JSON Schema. The gateway turns
that description into a pydantic type and validates call parameters through a
``TypeAdapter``. Translation is deliberately lenient: shapes it does not
understand (unions, ``anyOf``/``oneOf``, unknown or missing ``type``) accept
any value, so a third-party tool is never excluded because of a schema dialect
gap. The tool itself remains responsible for rejecting bad input.

Supported keywords: ``type`` (string, number, integer, boolean, array,
object), ``enum``, ``items``, ``properties``, ``required`` and
``additionalProperties: false``. Enum values match by type as well as value.
"""

import json
from typing import Annotated, Any, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    TypeAdapter,
    ValidationError,
    create_model,
)

_UNION_KEYWORDS = ("anyOf", "oneOf", "allOf")


class ValidationResult(BaseModel):
    """Outcome of validating a value against a parameter schema."""

    success: bool = True
    value: Any = None
    error: str | None = None


def _enum_annotation(values: list[Any]) -> Any:
    """Exact-match validator over enum values.

    Matching compares type as well as value, so ``True`` is not ``1`` and
    ``"1"`` is not ``1``, in line with the strict scalar types.
    """
    choices = list(values)

    def check(value: Any) -> Any:
        for choice in choices:
            if type(value) is type(choice) and value == choice:
                return value
        listed = ", ".join(json.dumps(choice, default=str) for choice in choices)
        raise ValueError(f"Input should be one of {listed}")

    return Annotated[Any, AfterValidator(check)]


def _object_annotation(schema: dict[str, Any], model_name: str) -> Any:
    properties = schema.get("properties")
    forbid_extra = schema.get("additionalProperties") is False

    if not isinstance(properties, dict):
        if forbid_extra:
            return create_model(model_name, __config__=ConfigDict(extra="forbid"))
        return dict[str, Any]

    required = set(schema.get("required") or [])
    fields: dict[str, Any] = {}
    # Property names are carried as aliases so keys like "model_config",
    # "from" or "_private" do not collide with Python or pydantic names.
    for index, (prop_name, prop_schema) in enumerate(properties.items()):
        annotation = schema_to_annotation(prop_schema, f"{model_name}_{index}")
        default: Any = ... if prop_name in required else None
        fields[f"field_{index}"] = (annotation, Field(default, alias=str(prop_name)))

    return create_model(
        model_name,
        __config__=ConfigDict(
            extra="forbid" if forbid_extra else "allow",
            populate_by_name=False,
        ),
        **fields,
    )


def schema_to_annotation(schema: Any, model_name: str = "Parameters") -> Any:
    """Translate a JSON-Schema-like mapping into a pydantic-compatible type."""
    if not isinstance(schema, dict):
        return Any
    if any(key in schema for key in _UNION_KEYWORDS):
        return Any

    enum_values = schema.get("enum")
    if isinstance(enum_values, list) and enum_values:
        return _enum_annotation(enum_values)

    schema_type = schema.get("type")
    if schema_type == "string":
        return StrictStr
    if schema_type == "number":
        return Union[StrictInt, StrictFloat]
    if schema_type == "integer":
        return StrictInt
    if schema_type == "boolean":
        return StrictBool
    if schema_type == "array":
        items = schema.get("items")
        if isinstance(items, dict):
            return list[schema_to_annotation(items, f"{model_name}_item")]  # type: ignore[misc]
        return list[Any]
    if schema_type == "object":
        return _object_annotation(schema, model_name)

    # Type lists ("string" | "null"), "null" and unknown names.
    return Any


def _format_error(exc: ValidationError) -> str:
    problems = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        message = str(item.get("msg", "invalid value"))
        problems.append(f"{location}: {message}" if location else message)
    return "; ".join(problems) or str(exc)


class ParameterValidator:
    """Runtime validator compiled from a tool's parameter schema."""

    def __init__(self, schema: Any = None):
        self.json_schema: dict[str, Any] = dict(schema) if isinstance(schema, dict) else {}
        self._annotation = schema_to_annotation(schema)
        self._adapter: TypeAdapter[Any] = TypeAdapter(self._annotation)

    @property
    def accepts_anything(self) -> bool:
        """Whether translation degraded to the accept-anything validator."""
        return self._annotation is Any

    def validate(self, value: Any) -> ValidationResult:
        """Validate ``value``; never raises for bad input."""
        try:
            parsed = self._adapter.validate_python(value)
        except ValidationError as e:
            return ValidationResult(success=False, value=value, error=_format_error(e))
        cleaned = self._adapter.dump_python(parsed, by_alias=True, exclude_unset=True)
        return ValidationResult(success=True, value=cleaned)


def build_validator(schema: Any) -> ParameterValidator:
    """Build a parameter validator from a JSON-Schema-like mapping."""
    return ParameterValidator(schema)
