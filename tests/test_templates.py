import pytest

from nodekeeper_agent.errors import UnrecognizedValueError
from nodekeeper_agent.templates import TemplateRenderer, template_context


def test_renders_node_context() -> None:
    context = template_context({"hostname": "web-1"}, {"token": "abc"}, {"port": "80"})
    out = TemplateRenderer().render("{{ node.labels.hostname }}:{{ node.config_maps.port }} {{ node.secrets.token }}\n", context)
    assert out == b"web-1:80 abc\n"


def test_no_html_escaping() -> None:
    context = template_context({}, {"password": "a<b&c"}, {})
    assert TemplateRenderer().render("{{ node.secrets.password }}", context) == b"a<b&c"


def test_undefined_is_an_error() -> None:
    with pytest.raises(UnrecognizedValueError):
        TemplateRenderer().render("{{ node.secrets.missing }}", template_context({}, {}, {}))


def test_syntax_error_is_an_error() -> None:
    with pytest.raises(UnrecognizedValueError):
        TemplateRenderer().render("{% if %}", template_context({}, {}, {}))
