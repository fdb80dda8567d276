"""Load user-supplied transform functions.

A hook is named ``package.module:function`` or ``path/to/script.py:function``.
Context hooks take and return the template context dict; text hooks take and
return the rendered note; metadata hooks take the context and return extra
frontmatter keys. Hooks are trusted code and must not have side effects.
"""

import importlib
import importlib.util
import logging
from pathlib import Path
from typing import Any, Callable

log = logging.getLogger(__name__)


def _import(target: str):
    if not target.endswith(".py"):
        return importlib.import_module(target)

    path = Path(target).expanduser()
    if not path.exists():
        raise ValueError(f"Hook script not found: {path}")
    module_spec = importlib.util.spec_from_file_location(f"marginalia_hook_{path.stem}", path)
    if module_spec is None or module_spec.loader is None:
        raise ValueError(f"Cannot load hook script: {path}")
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def load_hook(spec: str) -> Callable[[Any], Any]:
    """Resolve a hook name to a callable. Raises ValueError when it cannot."""
    target, sep, attr = spec.strip().rpartition(":")
    if not sep or not target or not attr:
        raise ValueError(f"Hook {spec!r} must look like 'module:function' or 'file.py:function'")

    try:
        module = _import(target)
    except (ImportError, SyntaxError) as exc:
        raise ValueError(f"Could not load hook {spec!r}: {exc}") from exc

    fn = getattr(module, attr, None)
    if not callable(fn):
        raise ValueError(f"Hook {spec!r}: {attr!r} is not a function in {target}")
    log.debug("Loaded hook %s", spec)
    return fn
