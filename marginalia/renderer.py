"""Note rendering: Jinja2 templates over plain context mappings.

Rendering is deterministic: the same template and context always give the
same text. Nothing time- or run-dependent is exposed to templates.
"""

import functools
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

import jinja2

from marginalia.models import Kind
from marginalia.vault import escape_yaml, sanitize_note_name

log = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

Hook = Callable[[Any], Any]


class RenderError(Exception):
    """A unit could not be rendered (bad template, missing key, failing hook)."""


def _date(value: Any, fmt: str = "%Y-%m-%d") -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.strftime(fmt)


def _blockquote(text: str) -> str:
    return "\n".join(f"> {line}".rstrip() for line in str(text).splitlines() or [""])


def _hashtag(name: str) -> str:
    return "#" + "-".join(str(name).split())


def _environment() -> jinja2.Environment:
    env = jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
        autoescape=False,
    )
    env.filters["yaml_escape"] = lambda s: escape_yaml(str(s))
    env.filters["sanitize"] = sanitize_note_name
    env.filters["date"] = _date
    env.filters["blockquote"] = _blockquote
    env.filters["hashtag"] = _hashtag
    return env


_ENV = _environment()


@functools.lru_cache(maxsize=32)
def _compile(template_source: str) -> jinja2.Template:
    return _ENV.from_string(template_source)


def render(template_source: str, context: Mapping[str, Any]) -> str:
    """Render a template source string against a context mapping."""
    try:
        return _compile(template_source).render(**context)
    except (jinja2.TemplateError, TypeError, ValueError) as exc:
        raise RenderError(f"{type(exc).__name__}: {exc}") from exc


def load_template(path: Optional[str], default_name: str) -> str:
    """Read a template from ``path``, or the built-in ``default_name``."""
    if path:
        return Path(path).expanduser().read_text(encoding="utf-8")
    return (TEMPLATES_DIR / default_name).read_text(encoding="utf-8")


def _apply_hook(hook: Hook, value: Any, expected: type, what: str) -> Any:
    name = getattr(hook, "__name__", repr(hook))
    try:
        result = hook(value)
    except Exception as exc:
        raise RenderError(f"{what} hook {name} failed: {exc!r}") from exc
    if not isinstance(result, expected):
        raise RenderError(
            f"{what} hook {name} returned {type(result).__name__}, "
            f"expected {expected.__name__}"
        )
    return result


@dataclass
class Renderer:
    """Templates plus the optional hooks applied before and after rendering.

    The metadata hook returns extra frontmatter keys; templates see them as
    ``metadata``.
    """

    book_template: str
    document_template: str
    context_hook: Optional[Hook] = None
    text_hook: Optional[Hook] = None
    metadata_hook: Optional[Hook] = None

    def render_unit(self, kind: Kind, context: Dict[str, Any]) -> str:
        template = self.document_template if kind is Kind.DOCUMENTS else self.book_template
        if self.context_hook is not None:
            context = _apply_hook(self.context_hook, context, dict, "context")
        if self.metadata_hook is not None:
            extra = _apply_hook(self.metadata_hook, context, dict, "metadata")
            context = {**context, "metadata": {**context.get("metadata", {}), **extra}}
        text = render(template, context)
        if self.text_hook is not None:
            text = _apply_hook(self.text_hook, text, str, "text")
        return text
