"""Template rendering utilities."""

import logging
from typing import Any
from jinja2 import Environment, BaseLoader, TemplateError, StrictUndefined


logger = logging.getLogger(__name__)


BINARY_SHIM_TEMPLATE = """#!/bin/sh
# Horizon container binary wrapper
# Exported from container {{ container_name }}
exec {{ runtime }} exec {% if interactive %}-it {% endif %}{{ container_name }} {{ binary }} "$@"
"""

SERVICE_OVERRIDE_TEMPLATE = """# Managed by horizon for {{ service_name }}
[Service]
{% if config.auto_restart %}Restart={{ 'on-failure' if config.restart_on_failure else 'always' }}
{% else %}Restart=no
{% endif %}{% for key, value in config.environment | dictsort %}Environment="{{ key }}={{ value }}"
{% endfor %}"""

REPOSITORY_TEMPLATE = """# Managed by horizon
[{{ repo.name }}]
Server = {{ repo.url }}
SigLevel = {{ 'Required DatabaseOptional' if repo.gpg_check else 'Never' }}
"""


class StringTemplateLoader(BaseLoader):
    """Template loader for string templates."""

    def __init__(self, template_string: str):
        self.template_string = template_string

    def get_source(self, environment, template):
        return self.template_string, None, lambda: True


def render_template(template_str: str, **context: Any) -> str:
    """Render a Jinja2 template string with given context."""
    try:
        env = Environment(
            loader=StringTemplateLoader(template_str),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )
        template = env.get_template("")
        return template.render(**context)

    except TemplateError as e:
        logger.error(f"Template rendering error: {e}")
        raise
