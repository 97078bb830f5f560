"""
Jinja2 template-based report rendering.

Text reports (test runs, full diagnostic listings) are stored as .j2
templates in this directory. Use render() to fill them in.
"""

from jinja2 import Environment, FileSystemLoader
from pathlib import Path

from core.utils import get_simple_name

_TEMPLATES_DIR = Path(__file__).parent


_env = Environment(
    loader=FileSystemLoader(_TEMPLATES_DIR),
    autoescape=False,  # Plain text output
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)
_env.filters["simple_name"] = get_simple_name


def render(template_name: str, **kwargs) -> str:
    """Render a report template with given parameters.

    Args:
        template_name: Path relative to templates dir (e.g., "test_report.j2")
        **kwargs: Template variables

    Returns:
        Rendered report string
    """
    template = _env.get_template(template_name)
    return template.render(**kwargs)
