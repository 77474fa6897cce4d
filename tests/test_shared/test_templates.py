"""
Tests for email templates.

These tests verify that templates render correctly with variable substitution.
"""

import pytest

from shared.templates import (
    TEMPLATES,
    EmailTemplate,
    TemplateNotFound,
    format_result_summary,
    get_template,
    register_template,
    render_template,
)


class TestEmailTemplate:
    """Tests for EmailTemplate class."""

    def test_render(self):
        """Test rendering a template with variables."""
        template = EmailTemplate(
            name="test",
            subject="Order {order_id}",
            body="Order {order_id} is {state}",
        )

        subject, body = template.render(order_id="ORD-001", state="done")

        assert subject == "Order ORD-001"
        assert body == "Order ORD-001 is done"

    def test_render_missing_variable(self):
        template = EmailTemplate(name="test", subject="{a}", body="{b}")

        with pytest.raises(KeyError):
            template.render(a="x")


class TestTemplateRegistry:
    """Tests for the provider-side template registry."""

    def test_order_executed_template_exists(self):
        template = get_template("orderExecuted")

        assert template is not None
        assert "{order_id}" in template.subject
        assert "{result_summary}" in template.body

    def test_render_template(self):
        subject, body = render_template(
            "orderExecuted",
            {"order_id": "ord-042", "result_summary": "  - status: EXECUTED"},
        )

        assert subject == "Your order ord-042 has been executed"
        assert "ord-042" in body
        assert "status: EXECUTED" in body

    def test_unknown_template(self):
        with pytest.raises(TemplateNotFound):
            render_template("doesNotExist", {})

    def test_register_template(self):
        template = EmailTemplate(name="testOnly", subject="S {x}", body="B {x}")
        try:
            register_template(template)

            assert render_template("testOnly", {"x": 1}) == ("S 1", "B 1")
        finally:
            TEMPLATES.pop("testOnly", None)


class TestFormatResultSummary:
    """Tests for the result summary helper."""

    def test_empty_result(self):
        assert format_result_summary({}) == "No further details were reported."

    def test_keys_are_sorted(self):
        summary = format_result_summary({"status": "EXECUTED", "attempt": 1})

        assert summary == "  - attempt: 1\n  - status: EXECUTED"
