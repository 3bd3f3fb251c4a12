"""
Baseline Rendering - default configuration bundles per pool.

Templates live in ``<templates_dir>/<pool>/`` with a fallback to
``<templates_dir>/default/``. Each file is rendered with ``string.Template``
against the controller config snapshot and returned as a data URL envelope
keyed by its target path.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from string import Template
from typing import Any, Dict

import envelope
from merger import CATEGORY_PATHS
from models import ControllerConfigSnapshot

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "default"

TEMPLATE_FILES = {
    "storage.conf": CATEGORY_PATHS["storage"],
    "crio.conf": CATEGORY_PATHS["runtime"],
    "registries.conf": CATEGORY_PATHS["registries"],
}


class TemplateError(Exception):
    """Raised when a baseline bundle cannot be rendered."""


class BaselineRenderer(ABC):
    """Renders the default configuration bundle for a pool."""

    @abstractmethod
    def render(
        self, snapshot: ControllerConfigSnapshot, pool_name: str
    ) -> Dict[str, str]:
        """
        Render the baseline bundle.

        Returns:
            Mapping of target file path to data URL envelope.

        Raises:
            TemplateError: If any bundle file cannot be produced.
        """


def _flatten(spec: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    values: Dict[str, str] = {}
    for key, value in spec.items():
        name = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            values.update(_flatten(value, name))
        else:
            values[name] = str(value)
    return values


class FileTemplateRenderer(BaselineRenderer):
    """Renders baseline files from a template directory."""

    def __init__(self, templates_dir: str):
        self.templates_dir = Path(templates_dir)

    def _template_path(self, pool_name: str, filename: str) -> Path:
        for role in (pool_name, DEFAULT_ROLE):
            path = self.templates_dir / role / filename
            if path.is_file():
                return path
        raise TemplateError(
            f"no template {filename} for pool {pool_name} in {self.templates_dir}"
        )

    def render(
        self, snapshot: ControllerConfigSnapshot, pool_name: str
    ) -> Dict[str, str]:
        values = _flatten(snapshot.spec)
        values["pool"] = pool_name

        bundle = {}
        for filename, target in TEMPLATE_FILES.items():
            path = self._template_path(pool_name, filename)
            try:
                text = Template(path.read_text(encoding="utf-8")).substitute(values)
            except (KeyError, ValueError) as e:
                raise TemplateError(f"could not render {path}: {e}")
            bundle[target] = envelope.encode(text.encode("utf-8"))

        logger.debug(f"Rendered baseline bundle for pool {pool_name}")
        return bundle
