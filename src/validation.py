"""
Override Validation - schema and range checks for runtime config requests.

The override block is first checked structurally against a JSON Schema, then
against the semantic limits the container runtime enforces.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from jsonschema import Draft7Validator

from models import IMAGE_OWNER_KEY, RuntimeConfigRequest
from quantity import QUANTITY_PATTERN, parse_quantity, quantity_to_bytes

logger = logging.getLogger(__name__)

MIN_PIDS_LIMIT = 20
MIN_LOG_SIZE = 8192
VALID_LOG_LEVELS = ("error", "fatal", "panic", "warn", "info", "debug")

RUNTIME_CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "overlaySize": {"type": "string", "pattern": QUANTITY_PATTERN},
        "logLevel": {"type": "string"},
        "pidsLimit": {"type": "integer"},
        "logSizeMax": {"type": "string", "pattern": QUANTITY_PATTERN},
    },
}


def validate_spec_against_schema(
    spec: Dict[str, Any], schema: Dict[str, Any]
) -> Tuple[bool, Optional[str]]:
    """
    Validate a document against a JSON Schema.

    Returns:
        Tuple of (is_valid, error_message)
    """
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(spec), key=lambda e: list(e.absolute_path))
    if not errors:
        return True, None

    error_messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        error_messages.append(f"{path}: {error.message}")
    return False, "; ".join(error_messages)


def validate_runtime_config_request(
    request: RuntimeConfigRequest,
) -> Tuple[bool, Optional[str]]:
    """
    Validate the overrides of a runtime config request.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if request.name == IMAGE_OWNER_KEY:
        return False, f"name {IMAGE_OWNER_KEY!r} is reserved"

    ctrcfg = request.spec.get("containerRuntimeConfig")
    if not ctrcfg:
        return False, "containerRuntimeConfig should not be empty"

    valid, error = validate_spec_against_schema(ctrcfg, RUNTIME_CONFIG_SCHEMA)
    if not valid:
        return False, f"invalid containerRuntimeConfig: {error}"

    overrides = request.overrides

    if overrides.pids_limit < 0 or 0 < overrides.pids_limit < MIN_PIDS_LIMIT:
        return False, f"invalid PidsLimit {overrides.pids_limit}, cannot be less than {MIN_PIDS_LIMIT}"

    if overrides.log_size_max:
        log_size = quantity_to_bytes(overrides.log_size_max)
        if 0 < log_size <= MIN_LOG_SIZE:
            return False, f"invalid LogSizeMax {overrides.log_size_max}, cannot be less than 8K"
        if log_size < 0:
            return False, f"invalid LogSizeMax {overrides.log_size_max}, cannot be negative"

    if overrides.overlay_size and parse_quantity(overrides.overlay_size) < 0:
        return False, f"invalid overlaySize {overrides.overlay_size}, cannot be negative"

    if overrides.log_level and overrides.log_level not in VALID_LOG_LEVELS:
        return False, (
            f"invalid LogLevel {overrides.log_level}, must be one of "
            f"{', '.join(VALID_LOG_LEVELS)}"
        )

    return True, None
