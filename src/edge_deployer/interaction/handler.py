"""Operator interaction used when an existing resource conflicts with a run."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from rich.console import Console
from rich.prompt import Confirm, Prompt

logger = logging.getLogger(__name__)


class InputType(str, Enum):
    """Type of operator input expected."""
    CHOICE = "choice"       # 从 options 中选择
    CONFIRM = "confirm"     # 是/否确认


class QuestionCategory(str, Enum):
    """Category of questions for context."""
    RESOURCE_CONFLICT = "resource_conflict"   # 已有资源与请求的配置不一致
    CONFIRMATION = "confirmation"             # 确认高风险操作


@dataclass
class InteractionRequest:
    """A question the engine needs the operator to answer."""

    question: str
    input_type: InputType = InputType.CONFIRM
    options: List[str] = field(default_factory=list)
    category: QuestionCategory = QuestionCategory.RESOURCE_CONFLICT
    context: Optional[str] = None               # 附加上下文（域名、资源 ID 等）
    default: Optional[str] = None
    domain: Optional[str] = None

    def format_prompt(self) -> str:
        icons = {
            QuestionCategory.RESOURCE_CONFLICT: "⚠️",
            QuestionCategory.CONFIRMATION: "🤔",
        }
        lines = [f"{icons.get(self.category, '❓')} {self.question}"]
        if self.domain:
            lines.append(f"   Domain: {self.domain}")
        if self.context:
            lines.append(f"   ℹ️  {self.context}")
        return "\n".join(lines)


@dataclass
class InteractionResponse:
    """Operator's answer to an interaction request."""

    value: str
    cancelled: bool = False

    @property
    def confirmed(self) -> bool:
        return not self.cancelled and self.value.strip().lower() in ("y", "yes", "true", "是")

    @classmethod
    def cancelled_response(cls) -> "InteractionResponse":
        return cls(value="", cancelled=True)


class UserInteractionHandler(ABC):
    """Abstract base class for handling operator interactions."""

    # 非交互模式下，资源冲突直接视为致命错误
    interactive: bool = True

    @abstractmethod
    def ask(self, request: InteractionRequest) -> InteractionResponse:
        """
        Present a request to the operator and get their response.

        Args:
            request: The interaction request to present

        Returns:
            The operator's response
        """

    @abstractmethod
    def notify(self, message: str, level: str = "info") -> None:
        """Send a notification to the operator (no response needed)."""


class CLIInteractionHandler(UserInteractionHandler):
    """Terminal interaction handler built on rich prompts.

    Several domain pipelines may ask at once; questions are serialized so the
    prompts never interleave.
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()
        self._lock = threading.Lock()

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        with self._lock:
            self.console.print(request.format_prompt())
            try:
                if request.input_type == InputType.CHOICE and request.options:
                    value = Prompt.ask(
                        "   请选择",
                        choices=request.options,
                        default=request.default,
                        console=self.console,
                    )
                    return InteractionResponse(value=value)
                default = (request.default or "n").lower() in ("y", "yes")
                confirmed = Confirm.ask("   确认?", default=default, console=self.console)
                return InteractionResponse(value="yes" if confirmed else "no")
            except (KeyboardInterrupt, EOFError):
                self.console.print("   (已取消)")
                return InteractionResponse.cancelled_response()

    def notify(self, message: str, level: str = "info") -> None:
        styles = {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "success": "green",
        }
        self.console.print(f"[{styles.get(level, 'white')}]{message}[/]")


class CallbackInteractionHandler(UserInteractionHandler):
    """
    Interaction handler that uses callbacks.
    Useful for embedding the engine in another UI.
    """

    def __init__(
        self,
        ask_callback: Callable[[InteractionRequest], InteractionResponse],
        notify_callback: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.ask_callback = ask_callback
        self.notify_callback = notify_callback or (lambda msg, lvl: logger.info(f"[{lvl}] {msg}"))

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        return self.ask_callback(request)

    def notify(self, message: str, level: str = "info") -> None:
        self.notify_callback(message, level)


class AutoResponseHandler(UserInteractionHandler):
    """
    Automatic response handler for non-interactive runs.

    Never adopts a conflicting resource: the engine treats conflicts as fatal
    when ``interactive`` is False, and any direct question is declined.
    """

    interactive = False

    def __init__(self, default_responses: Optional[Dict[str, str]] = None) -> None:
        self.default_responses = default_responses or {}

    def ask(self, request: InteractionRequest) -> InteractionResponse:
        logger.info(f"Auto-responding to: {request.question[:50]}...")
        for keyword, response in self.default_responses.items():
            if keyword.lower() in request.question.lower():
                return InteractionResponse(value=response)
        return InteractionResponse(value="no")

    def notify(self, message: str, level: str = "info") -> None:
        logger.info(f"[{level}] {message}")


def create_handler(mode: str) -> UserInteractionHandler:
    """Build the handler for the configured interaction mode."""
    if mode == "cli":
        return CLIInteractionHandler()
    if mode == "auto":
        return AutoResponseHandler()
    raise ValueError(f"Unknown interaction mode: {mode}")
