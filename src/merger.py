"""
Config Merger - apply user overrides to baseline configuration files.

Every function here is pure: baseline TOML bytes plus an override in,
TOML bytes out. Tables and keys keep the order they have in the baseline and
new ones are appended, so the same input always yields byte-identical
output.
"""

import tomllib
from typing import Any, Callable, Dict, List, Optional

import tomli_w

import envelope
from models import RuntimeOverrides
from quantity import is_zero, quantity_to_bytes

STORAGE_CONFIG_PATH = "/etc/containers/storage.conf"
CRIO_CONFIG_PATH = "/etc/crio/crio.conf"
REGISTRIES_CONFIG_PATH = "/etc/containers/registries.conf"

STORAGE = "storage"
RUNTIME = "runtime"
REGISTRIES = "registries"

CATEGORY_PATHS = {
    STORAGE: STORAGE_CONFIG_PATH,
    RUNTIME: CRIO_CONFIG_PATH,
    REGISTRIES: REGISTRIES_CONFIG_PATH,
}

IGNITION_VERSION = "2.2.0"
FILE_MODE = 0o644


class MergeError(Exception):
    """Raised when a baseline file cannot be parsed."""


def _load(data: bytes) -> Dict[str, Any]:
    try:
        return tomllib.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise MergeError(f"could not decode baseline TOML: {e}")


def _dump(doc: Dict[str, Any]) -> bytes:
    return tomli_w.dumps(doc).encode("utf-8")


def _table(doc: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for key in keys:
        doc = doc.setdefault(key, {})
    return doc


def update_storage_config(data: bytes, overrides: RuntimeOverrides) -> bytes:
    """Set ``storage.options.size`` from the overlay size override."""
    doc = _load(data)
    if not is_zero(overrides.overlay_size):
        _table(doc, "storage", "options")["size"] = overrides.overlay_size
    return _dump(doc)


def update_runtime_config(data: bytes, overrides: RuntimeOverrides) -> bytes:
    """Set log level, pids limit and log size limit under ``crio.runtime``."""
    doc = _load(data)
    if overrides.log_level:
        _table(doc, "crio", "runtime")["log_level"] = overrides.log_level
    if overrides.pids_limit:
        _table(doc, "crio", "runtime")["pids_limit"] = overrides.pids_limit
    if not is_zero(overrides.log_size_max):
        _table(doc, "crio", "runtime")["log_size_max"] = quantity_to_bytes(
            overrides.log_size_max
        )
    return _dump(doc)


def update_registries_config(
    data: bytes, insecure: List[str], blocked: List[str]
) -> bytes:
    """Set the insecure and blocked registry lists."""
    doc = _load(data)
    if insecure:
        _table(doc, "registries", "insecure")["registries"] = list(insecure)
    if blocked:
        _table(doc, "registries", "block")["registries"] = list(blocked)
    return _dump(doc)


def merge_source(
    source: str, update: Callable[[bytes], bytes]
) -> bytes:
    """
    Decode a baseline envelope and apply ``update`` to its contents.

    Raises:
        envelope.EnvelopeError: If the source is not a valid data URL.
        MergeError: If the decoded contents are not valid TOML.
    """
    return update(envelope.decode(source).data)


def build_payload(files: Dict[str, Optional[bytes]]) -> Dict[str, Any]:
    """
    Build an artifact payload from file contents keyed by path.

    Entries whose contents are None are left out. Paths are sorted.
    """
    entries = []
    for path in sorted(files):
        contents = files[path]
        if contents is None:
            continue
        entries.append(
            {
                "filesystem": "root",
                "path": path,
                "mode": FILE_MODE,
                "contents": {"source": envelope.encode(contents)},
            }
        )

    payload: Dict[str, Any] = {"ignition": {"version": IGNITION_VERSION}}
    if entries:
        payload["storage"] = {"files": entries}
    return payload
