"""Configuration schemas declared by automation plugins.

A plugin describes the parameters it accepts as an ordered list of
ConfigField entries. validate_parameters() checks a submitted mapping
against that schema and returns every field-scoped problem at once,
so a UI can show them next to the offending inputs.

Example:
    schema = ConfigSchema(fields=[
        ConfigField(key="targetPath", label="Target path", type=FieldType.TEXT, required=True),
        ConfigField(key="compress", label="Compress", type=FieldType.BOOLEAN, default=False),
        ConfigField(
            key="level", label="Compression level", type=FieldType.NUMBER,
            validation=FieldValidation(min=1, max=9),
            depends_on=FieldDependency(field="compress", value=True),
        ),
    ])
    result = validate_parameters(schema, {"targetPath": "/data"})
    assert result.valid
"""

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional


class FieldType(str, Enum):
    """Value types a configuration field can hold."""

    TEXT = "text"
    PASSWORD = "password"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    MULTISELECT = "multiselect"
    TEXTAREA = "textarea"
    URL = "url"
    EMAIL = "email"


TEXT_TYPES = frozenset(
    {FieldType.TEXT, FieldType.PASSWORD, FieldType.TEXTAREA, FieldType.URL, FieldType.EMAIL}
)

_URL_RE = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class FieldOption:
    label: str
    value: Any


@dataclass(frozen=True)
class FieldValidation:
    """Optional constraints.

    min/max bound the length of text values, the value of numbers
    and the number of selected items of multiselects.
    """

    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    custom: Optional[Callable[[Any], Optional[str]]] = None


@dataclass(frozen=True)
class FieldDependency:
    """The field only applies when `field` currently equals `value`."""

    field: str
    value: Any


@dataclass(frozen=True)
class ConfigField:
    key: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    description: str = ""
    placeholder: str = ""
    default: Any = None
    options: tuple[FieldOption, ...] = ()
    validation: Optional[FieldValidation] = None
    group: Optional[str] = None
    depends_on: Optional[FieldDependency] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
            "description": self.description,
            "placeholder": self.placeholder,
            "default": self.default,
            "options": [{"label": o.label, "value": o.value} for o in self.options],
            "group": self.group,
        }
        if self.validation:
            data["validation"] = {
                "min": self.validation.min,
                "max": self.validation.max,
                "pattern": self.validation.pattern,
                "custom": self.validation.custom is not None,
            }
        if self.depends_on:
            data["depends_on"] = {"field": self.depends_on.field, "value": self.depends_on.value}
        return data


@dataclass(frozen=True)
class ConfigGroup:
    id: str
    label: str
    description: str = ""
    collapsible: bool = False
    default_expanded: bool = True


@dataclass(frozen=True, init=False)
class ConfigSchema:
    """Ordered field declarations plus optional UI groups."""

    fields: tuple[ConfigField, ...] = ()
    groups: tuple[ConfigGroup, ...] = ()

    def __init__(self, fields=(), groups=()):
        object.__setattr__(self, "fields", tuple(fields))
        object.__setattr__(self, "groups", tuple(groups))

    def get_field(self, key: str) -> Optional[ConfigField]:
        for f in self.fields:
            if f.key == key:
                return f
        return None

    def defaults(self) -> dict[str, Any]:
        """Parameters seeded from declared field defaults."""
        return {f.key: copy.deepcopy(f.default) for f in self.fields if f.default is not None}

    def to_dict(self) -> dict[str, Any]:
        return {
            "fields": [f.to_dict() for f in self.fields],
            "groups": [
                {
                    "id": g.id,
                    "label": g.label,
                    "description": g.description,
                    "collapsible": g.collapsible,
                    "default_expanded": g.default_expanded,
                }
                for g in self.groups
            ],
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    field_errors: dict[str, list[str]] = field(default_factory=dict)

    @property
    def invalid_fields(self) -> list[str]:
        return list(self.field_errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": list(self.errors),
            "field_errors": {k: list(v) for k, v in self.field_errors.items()},
        }


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_error(cfg: ConfigField, value: Any) -> Optional[str]:
    """Return an error if value does not match the declared type."""
    label = cfg.label or cfg.key
    if cfg.type in TEXT_TYPES:
        if not isinstance(value, str):
            return f"{label} must be a string"
        if cfg.type == FieldType.URL and not _URL_RE.match(value):
            return f"{label} must be a valid http(s) URL"
        if cfg.type == FieldType.EMAIL and not _EMAIL_RE.match(value):
            return f"{label} must be a valid email address"
        return None
    if cfg.type == FieldType.NUMBER:
        return None if _is_number(value) else f"{label} must be a number"
    if cfg.type == FieldType.BOOLEAN:
        return None if isinstance(value, bool) else f"{label} must be true or false"
    if cfg.type == FieldType.SELECT:
        if cfg.options and value not in [o.value for o in cfg.options]:
            return f"{label} must be one of: {', '.join(str(o.value) for o in cfg.options)}"
        return None
    if cfg.type == FieldType.MULTISELECT:
        if not isinstance(value, (list, tuple)):
            return f"{label} must be a list"
        allowed = [o.value for o in cfg.options]
        if allowed:
            invalid = [v for v in value if v not in allowed]
            if invalid:
                return f"{label} contains invalid option(s): {', '.join(str(v) for v in invalid)}"
        return None
    return None


def _constraint_errors(cfg: ConfigField, value: Any) -> list[str]:
    rules = cfg.validation
    if rules is None:
        return []

    label = cfg.label or cfg.key
    errors: list[str] = []

    if cfg.type in TEXT_TYPES:
        if rules.min is not None and len(value) < rules.min:
            errors.append(f"{label} must have at least {rules.min:g} characters")
        if rules.max is not None and len(value) > rules.max:
            errors.append(f"{label} must have at most {rules.max:g} characters")
        if rules.pattern and not re.search(rules.pattern, value):
            errors.append(f"{label} has an invalid format")
    elif cfg.type == FieldType.NUMBER:
        if rules.min is not None and value < rules.min:
            errors.append(f"{label} must be at least {rules.min:g}")
        if rules.max is not None and value > rules.max:
            errors.append(f"{label} must be at most {rules.max:g}")
    elif cfg.type == FieldType.MULTISELECT:
        if rules.min is not None and len(value) < rules.min:
            errors.append(f"{label} requires at least {rules.min:g} selection(s)")
        if rules.max is not None and len(value) > rules.max:
            errors.append(f"{label} allows at most {rules.max:g} selection(s)")

    if rules.custom is not None:
        custom_error = rules.custom(value)
        if custom_error:
            errors.append(custom_error)

    return errors


def dependency_met(cfg: ConfigField, parameters: Mapping[str, Any]) -> bool:
    if cfg.depends_on is None:
        return True
    return parameters.get(cfg.depends_on.field) == cfg.depends_on.value


def validate_parameters(schema: ConfigSchema, parameters: Mapping[str, Any]) -> ValidationResult:
    """Validate parameters against a schema.

    Never mutates `parameters`. Errors follow field declaration order and
    are also grouped by field key in `field_errors`.
    """
    if not isinstance(parameters, Mapping):
        return ValidationResult(valid=False, errors=["Parameters must be a mapping"])

    errors: list[str] = []
    field_errors: dict[str, list[str]] = {}
    for cfg in schema.fields:
        if not dependency_met(cfg, parameters):
            continue

        value = parameters.get(cfg.key)
        if _is_empty(value):
            if cfg.required:
                found = [f"{cfg.label or cfg.key} is required"]
            else:
                continue
        else:
            type_error = _type_error(cfg, value)
            found = [type_error] if type_error else _constraint_errors(cfg, value)

        if found:
            field_errors[cfg.key] = found
            errors.extend(found)

    return ValidationResult(valid=not errors, errors=errors, field_errors=field_errors)
