"""Tests for operator interaction module."""

import io

import pytest
from rich.console import Console

from edge_deployer.interaction import (
    AutoResponseHandler,
    CallbackInteractionHandler,
    CLIInteractionHandler,
    InputType,
    InteractionRequest,
    InteractionResponse,
    QuestionCategory,
    create_handler,
)


class TestInteractionRequest:
    """Tests for InteractionRequest dataclass."""

    def test_defaults_to_resource_conflict_confirm(self):
        request = InteractionRequest(question="Adopt the existing database?")

        assert request.input_type == InputType.CONFIRM
        assert request.category == QuestionCategory.RESOURCE_CONFLICT
        assert request.options == []

    def test_format_prompt(self):
        request = InteractionRequest(
            question="Adopt the existing database?",
            context="config records a different id",
            domain="a.com",
        )

        prompt = request.format_prompt()
        assert "⚠️" in prompt
        assert "Adopt the existing database?" in prompt
        assert "Domain: a.com" in prompt
        assert "config records a different id" in prompt


class TestInteractionResponse:
    @pytest.mark.parametrize("value", ["y", "YES", " yes ", "true"])
    def test_confirmed(self, value):
        assert InteractionResponse(value=value).confirmed

    def test_cancelled_is_never_confirmed(self):
        response = InteractionResponse(value="yes", cancelled=True)
        assert not response.confirmed
        assert InteractionResponse.cancelled_response().cancelled


class TestAutoResponseHandler:
    def test_is_not_interactive_and_declines(self):
        handler = AutoResponseHandler()
        response = handler.ask(InteractionRequest(question="Adopt the existing database?"))

        assert handler.interactive is False
        assert response.value == "no"
        assert not response.confirmed

    def test_keyword_responses(self):
        handler = AutoResponseHandler(default_responses={"adopt": "yes"})
        response = handler.ask(InteractionRequest(question="Adopt the existing database?"))
        assert response.confirmed


class TestCLIInteractionHandler:
    def test_confirm_reads_from_console(self, monkeypatch):
        console = Console(file=io.StringIO(), force_terminal=False)
        handler = CLIInteractionHandler(console=console)
        monkeypatch.setattr("edge_deployer.interaction.handler.Confirm.ask", lambda *a, **kw: True)

        response = handler.ask(InteractionRequest(question="Adopt?", domain="a.com"))

        assert response.confirmed
        assert "Adopt?" in console.file.getvalue()

    def test_interrupt_cancels(self, monkeypatch):
        handler = CLIInteractionHandler(console=Console(file=io.StringIO()))

        def interrupted(*args, **kwargs):
            raise KeyboardInterrupt

        monkeypatch.setattr("edge_deployer.interaction.handler.Confirm.ask", interrupted)
        assert handler.ask(InteractionRequest(question="Adopt?")).cancelled


def test_callback_handler_delegates():
    asked = []
    handler = CallbackInteractionHandler(
        ask_callback=lambda req: asked.append(req) or InteractionResponse(value="yes")
    )
    assert handler.ask(InteractionRequest(question="Adopt?")).confirmed
    assert len(asked) == 1


def test_create_handler():
    assert isinstance(create_handler("auto"), AutoResponseHandler)
    assert isinstance(create_handler("cli"), CLIInteractionHandler)
    with pytest.raises(ValueError):
        create_handler("telepathy")
