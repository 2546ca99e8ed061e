"""Per-kind payload schemas, enforced synchronously at submission."""

from __future__ import annotations

import copy
from typing import Any, Dict

from jsonschema import Draft7Validator

from core.errors import ValidationError
from remote.operations import DATABASE_TYPES, SUPPORTED_PLUGINS

from .models import JobKind

PLUGIN_NAME = {"type": "string", "enum": list(SUPPORTED_PLUGINS)}
DOKKU_NAME = {"type": "string", "pattern": "^[a-z0-9][a-z0-9\\-]*\\Z"}
EMAIL = {"type": "string", "pattern": "^[^@\\s]+@[^@\\s]+\\.[^@\\s]+\\Z"}

_EMPTY = {"type": "object", "additionalProperties": False, "properties": {}}

PAYLOAD_SCHEMAS: Dict[str, Dict[str, Any]] = {
    JobKind.INSTALL_PLUGIN.value: {
        "type": "object",
        "required": ["plugin_name", "plugin_url"],
        "additionalProperties": False,
        "properties": {
            "plugin_name": PLUGIN_NAME,
            "plugin_url": {"type": "string", "minLength": 1, "pattern": "\\S"},
        },
    },
    JobKind.TOGGLE_PLUGIN.value: {
        "type": "object",
        "required": ["plugin_name", "enabled"],
        "additionalProperties": False,
        "properties": {
            "plugin_name": PLUGIN_NAME,
            "enabled": {"type": "boolean"},
        },
    },
    JobKind.DELETE_PLUGIN.value: {
        "type": "object",
        "required": ["plugin_name"],
        "additionalProperties": False,
        "properties": {"plugin_name": PLUGIN_NAME},
    },
    JobKind.CONFIGURE_LETSENCRYPT.value: {
        "type": "object",
        "required": ["email"],
        "additionalProperties": False,
        "properties": {
            "email": EMAIL,
            "auto_generate_ssl": {"type": "boolean", "default": False},
        },
    },
    JobKind.SYNC_PLUGINS.value: _EMPTY,
    JobKind.DESTROY_DATABASE.value: {
        "type": "object",
        "required": ["database_name", "database_type"],
        "additionalProperties": False,
        "properties": {
            "database_name": DOKKU_NAME,
            "database_type": {"type": "string", "enum": list(DATABASE_TYPES)},
        },
    },
    JobKind.UNINSTALL_MONITORING_AGENT.value: _EMPTY,
    JobKind.UNLOCK_GIT.value: {
        "type": "object",
        "required": ["app_name"],
        "additionalProperties": False,
        "properties": {"app_name": DOKKU_NAME},
    },
}

_validators = {kind: Draft7Validator(schema) for kind, schema in PAYLOAD_SCHEMAS.items()}


def _apply_defaults(schema: Dict[str, Any], payload: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(payload)
    for key, prop in schema.get("properties", {}).items():
        if key not in result and "default" in prop:
            result[key] = prop["default"]
    return result


def validate_job_input(kind: str, payload: Any) -> Dict[str, Any]:
    """
    Validate a job's input against its kind's schema.

    Returns a normalized copy with schema defaults filled in.
    Raises ValidationError listing every problem found.
    """
    validator = _validators.get(kind)
    if validator is None:
        raise ValidationError(
            f"Unknown job kind: {kind!r}",
            [f"kind must be one of {', '.join(sorted(_validators))}"],
        )
    if payload is None:
        payload = {}

    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        messages = [
            f"{'.'.join(str(p) for p in error.path) or '<payload>'}: {error.message}"
            for error in errors
        ]
        raise ValidationError(f"{kind} payload validation failed: {', '.join(messages)}", messages)

    return _apply_defaults(PAYLOAD_SCHEMAS[kind], payload)
