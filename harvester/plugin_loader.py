"""
Plugin loader for automatic discovery and registration of sources and sinks.
"""

import importlib
import inspect
import logging
import pathlib
from types import ModuleType
from typing import Dict, Type, Union

from .interfaces import PageSource, Sink

logger = logging.getLogger(__name__)

# Plugin directories relative to this file
ROOT = pathlib.Path(__file__).parent.parent
PLUGIN_DIRS = (ROOT / "plugins", ROOT / "sinks")

Plugin = Union[Type[PageSource], Type[Sink]]

# Global registry of discovered plugin classes
_REGISTRY: Dict[str, Plugin] = {}


def _module_name(path: pathlib.Path) -> str:
    """Dotted import path, e.g. ``plugins.meta_adlibrary.fetcher``."""
    rel = path.relative_to(ROOT).with_suffix("")
    return ".".join(rel.parts)


def _load_module(path: pathlib.Path) -> ModuleType:
    """Import a plugin module by its package path."""
    mod = importlib.import_module(_module_name(path))
    logger.debug(f"Loaded module: {mod.__name__}")
    return mod


def refresh_registry() -> None:
    """Scan plugins/ and sinks/ and register PageSource / Sink subclasses."""
    _REGISTRY.clear()

    module_count = 0
    class_count = 0

    for plugin_dir in PLUGIN_DIRS:
        if not plugin_dir.exists():
            logger.warning(f"Plugin directory does not exist: {plugin_dir}")
            continue

        for py_file in sorted(plugin_dir.rglob("*.py")):
            # Skip __init__.py and files starting with _
            if py_file.name.startswith("_"):
                continue

            try:
                mod = _load_module(py_file)
            except Exception as e:
                logger.error(f"Failed to load module {py_file}: {e}")
                continue
            module_count += 1

            for _, obj in inspect.getmembers(mod, inspect.isclass):
                if (
                    issubclass(obj, (PageSource, Sink))
                    and obj not in (PageSource, Sink)
                    and not inspect.isabstract(obj)
                    and obj.__module__ == mod.__name__
                ):
                    # Register with key: <package dir>.ClassName
                    key = f"{py_file.parent.name}.{obj.__name__}"
                    _REGISTRY[key] = obj
                    class_count += 1
                    logger.debug(f"Registered plugin: {key}")

    logger.info(f"Plugin discovery complete: {module_count} modules, {class_count} classes")


def get(class_path: str) -> Plugin:
    """Get a plugin class by its path.

    Args:
        class_path: Format 'plugin_name.ClassName' (e.g., 'meta_adlibrary.AdLibraryFetcher')

    Returns:
        The plugin class

    Raises:
        KeyError: If the class is not found
    """
    if not _REGISTRY:
        refresh_registry()

    if class_path not in _REGISTRY:
        available = list(_REGISTRY.keys())
        raise KeyError(f"Plugin '{class_path}' not found. Available: {available}")

    return _REGISTRY[class_path]


def list_available() -> Dict[str, Plugin]:
    """Get a copy of all registered plugins."""
    if not _REGISTRY:
        refresh_registry()
    return _REGISTRY.copy()
