"""Render file templates and templated reference names with Jinja2.

Templates see one variable, `node`, built from the node record and the
file's resolved references:

    {{ node.labels.hostname }}
    {{ node.secrets.db_password }}
    {{ node.config_maps.listen_port }}

Undefined variables are errors, so a typo never renders as an empty
string into a live config file.
"""

from typing import Any, Dict

from jinja2 import Environment, StrictUndefined, TemplateError

from .errors import UnrecognizedValueError


class TemplateRenderer:
    """(template string, JSON-serializable context) -> rendered bytes."""

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )

    def render(self, template: str, context: Dict[str, Any]) -> bytes:
        """Render a template.

        Raises:
            UnrecognizedValueError if the template fails to parse or render
        """
        try:
            return self.env.from_string(template).render(**context).encode("utf-8")
        except TemplateError as e:
            raise UnrecognizedValueError(f"failed to render template: {e}") from e


def template_context(labels: Dict[str, str], secrets: Dict[str, str], config_maps: Dict[str, str]) -> Dict[str, Any]:
    return {
        "node": {
            "labels": dict(labels),
            "secrets": dict(secrets),
            "config_maps": dict(config_maps),
        }
    }
