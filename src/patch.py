"""
JSON Patch helpers for single-field edits.

Builds RFC 6902 patches that carry only the difference between the current
and desired value of one list field, and applies them to a document. Every
removal and replacement is preceded by a ``test`` op so that a patch computed
against a stale read fails instead of clobbering a concurrent edit.
"""

import copy
import difflib
from typing import Any, Dict, List


class PatchError(Exception):
    """Raised when a patch operation is malformed or its path is missing."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class PatchTestFailed(PatchError):
    """Raised when a ``test`` op does not match the document."""


def make_list_patch(
    path: str, current: List[Any], desired: List[Any]
) -> List[Dict[str, Any]]:
    """
    Compute a minimal JSON Patch turning ``current`` into ``desired``.

    Opcodes are emitted back to front so indexes always refer to positions
    of the original list.

    Args:
        path: JSON pointer of the list field (e.g. '/finalizers')
        current: The value as last read
        desired: The value to write

    Returns:
        List of patch operations; empty if the lists are equal.
    """
    ops: List[Dict[str, Any]] = []
    matcher = difflib.SequenceMatcher(a=current, b=desired, autojunk=False)

    for tag, i1, i2, j1, j2 in reversed(matcher.get_opcodes()):
        if tag == "equal":
            continue
        if tag in ("delete", "replace"):
            for index in range(i2 - 1, i1 - 1, -1):
                ops.append({"op": "test", "path": f"{path}/{index}", "value": current[index]})
                ops.append({"op": "remove", "path": f"{path}/{index}"})
        if tag in ("insert", "replace"):
            for offset, value in enumerate(desired[j1:j2]):
                ops.append({"op": "add", "path": f"{path}/{i1 + offset}", "value": value})

    return ops


def _split(path: str) -> List[str]:
    if not path.startswith("/"):
        raise PatchError(f"Invalid patch path: {path}")
    return [p.replace("~1", "/").replace("~0", "~") for p in path[1:].split("/")]


def _resolve_parent(document: Any, parts: List[str], path: str) -> Any:
    target = document
    for part in parts[:-1]:
        if isinstance(target, dict) and part in target:
            target = target[part]
        elif isinstance(target, list) and part.isdigit() and int(part) < len(target):
            target = target[int(part)]
        else:
            raise PatchError(f"Patch path not found: {path}")
    return target


def _list_index(target: List[Any], part: str, path: str, allow_end: bool) -> int:
    if allow_end and part == "-":
        return len(target)
    if not part.isdigit():
        raise PatchError(f"Invalid list index in patch path: {path}")
    index = int(part)
    limit = len(target) if allow_end else len(target) - 1
    if index > limit:
        raise PatchError(f"Patch path not found: {path}")
    return index


def apply_patch(document: Dict[str, Any], patches: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Apply JSON Patch operations to a document.

    Supports add, remove, replace and test on dict keys and list indexes.

    Args:
        document: The document to patch (not modified).
        patches: List of JSON Patch operations.

    Returns:
        A new document with patches applied.

    Raises:
        PatchTestFailed: If a test op does not match.
        PatchError: If an operation is invalid.
    """
    result = copy.deepcopy(document)

    for patch in patches:
        op = patch.get("op")
        path = patch.get("path", "")
        parts = _split(path)
        target = _resolve_parent(result, parts, path)
        last = parts[-1]

        if op == "test":
            if isinstance(target, list) and last.isdigit() and int(last) < len(target):
                actual = target[int(last)]
            elif isinstance(target, dict) and last in target:
                actual = target[last]
            else:
                raise PatchTestFailed(f"Patch test path not found: {path}")
            if actual != patch.get("value"):
                raise PatchTestFailed(
                    f"Patch test failed at {path}: expected {patch.get('value')!r}, "
                    f"found {actual!r}"
                )

        elif op == "add":
            value = copy.deepcopy(patch.get("value"))
            if isinstance(target, list):
                target.insert(_list_index(target, last, path, allow_end=True), value)
            elif isinstance(target, dict):
                target[last] = value
            else:
                raise PatchError(f"Patch path not found: {path}")

        elif op == "replace":
            value = copy.deepcopy(patch.get("value"))
            if isinstance(target, list):
                target[_list_index(target, last, path, allow_end=False)] = value
            elif isinstance(target, dict) and last in target:
                target[last] = value
            else:
                raise PatchError(f"Patch path not found: {path}")

        elif op == "remove":
            if isinstance(target, list):
                del target[_list_index(target, last, path, allow_end=False)]
            elif isinstance(target, dict) and last in target:
                del target[last]
            else:
                raise PatchError(f"Patch path not found: {path}")

        else:
            raise PatchError(f"Unsupported patch operation: {op}")

    return result
