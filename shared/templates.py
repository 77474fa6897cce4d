"""
Email templates known to the notification provider.

Templates are static artifacts registered with the provider ahead of time;
senders refer to them by name and pass only the data to substitute. Variable
substitution uses Python's string formatting with {variable} placeholders.

The pipeline ships a single template, ``orderExecuted``, sent once an order
has been executed.
"""

from dataclasses import dataclass
from typing import Any, Optional


class TemplateNotFound(LookupError):
    """No template is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"No template registered under '{name}'")
        self.name = name


@dataclass(frozen=True)
class EmailTemplate:
    """A named email template with subject and body variants."""
    name: str
    subject: str
    body: str

    def render(self, **kwargs) -> tuple[str, str]:
        """
        Render the template with provided variables.

        Returns:
            Tuple of (subject, body)
        """
        return (
            self.subject.format(**kwargs),
            self.body.format(**kwargs),
        )


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[str, EmailTemplate] = {
    "orderExecuted": EmailTemplate(
        name="orderExecuted",
        subject="Your order {order_id} has been executed",
        body="""Hello,

Your order {order_id} has been executed.

{result_summary}

Thanks for your order!
""",
    ),
}


def get_template(name: str) -> Optional[EmailTemplate]:
    """Get a template by name."""
    return TEMPLATES.get(name)


def register_template(template: EmailTemplate) -> None:
    """Register (or replace) a template, as an operator would upload one."""
    TEMPLATES[template.name] = template


def render_template(name: str, data: dict[str, Any]) -> tuple[str, str]:
    """
    Render a named template.

    Raises:
        TemplateNotFound: If no template has that name
        KeyError: If the data lacks a placeholder used by the template
    """
    template = get_template(name)
    if template is None:
        raise TemplateNotFound(name)
    return template.render(**data)


def format_result_summary(result: dict[str, Any]) -> str:
    """
    Format an execution result for inclusion in an email body.

    Args:
        result: Flat mapping produced by the order processor
    """
    if not result:
        return "No further details were reported."
    return "\n".join(f"  - {key}: {value}" for key, value in sorted(result.items()))
