"""
Command table — the validated mapping from command tokens to handlers.

The table is assembled once at startup by explicit ``register(...)`` calls on
a :class:`CommandTableBuilder`, validated by :meth:`CommandTableBuilder.build`,
and is read-only afterwards.

Three designations drive chat mode:

- the *chat-enter* command (transition ``ENTER_CHAT``)
- the *chat-exit* command (transition ``EXIT_CHAT``)
- the *conversation-default* command, which receives every non-exit message
  while a session is in chat mode

They are either all registered or all absent. A partial trio is a fatal
configuration error.
"""

from __future__ import annotations

import enum
import functools
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Awaitable, Callable, Iterator, Optional

import structlog

from polybot.errors import CommandTableError

if TYPE_CHECKING:
    from polybot.sessions import Session

logger = structlog.get_logger(__name__)

Handler = Callable[["Session", str], Awaitable[str]]


class Transition(str, enum.Enum):
    """Chat-mode change the router applies after a command's handler returns."""

    NONE = "none"
    ENTER_CHAT = "enter_chat"
    EXIT_CHAT = "exit_chat"


@dataclass(frozen=True)
class CommandDescriptor:
    token: str
    handler: Handler
    transition: Transition = Transition.NONE
    description: str = ""

    async def handle(self, session: "Session", args: str) -> str:
        return await self.handler(session, args)


class CommandTable(Mapping[str, CommandDescriptor]):
    """Immutable token → descriptor mapping with the chat-mode designations."""

    def __init__(
        self,
        commands: dict[str, CommandDescriptor],
        *,
        chat_enter: Optional[str] = None,
        chat_exit: Optional[str] = None,
        conversation_default: Optional[str] = None,
    ) -> None:
        self._commands = MappingProxyType(dict(commands))
        self._chat_enter = chat_enter
        self._chat_exit = chat_exit
        self._conversation_default = conversation_default

    def __getitem__(self, token: str) -> CommandDescriptor:
        return self._commands[token]

    def __iter__(self) -> Iterator[str]:
        return iter(self._commands)

    def __len__(self) -> int:
        return len(self._commands)

    def lookup(self, token: str) -> Optional[CommandDescriptor]:
        """Exact, case-sensitive lookup."""
        return self._commands.get(token)

    @property
    def chat_enter(self) -> Optional[str]:
        return self._chat_enter

    @property
    def chat_exit(self) -> Optional[str]:
        return self._chat_exit

    @property
    def conversation_default(self) -> Optional[str]:
        return self._conversation_default

    @property
    def supports_chat(self) -> bool:
        return self._conversation_default is not None

    def describe(self) -> list[tuple[str, str]]:
        """(token, description) pairs in registration order."""
        return [(d.token, d.description or d.token) for d in self._commands.values()]


class CommandTableBuilder:
    """Collects registrations and produces a validated :class:`CommandTable`."""

    def __init__(self) -> None:
        self._commands: dict[str, CommandDescriptor] = {}
        self._errors: list[str] = []
        self._chat_enter: list[str] = []
        self._chat_exit: list[str] = []
        self._conversation_default: list[str] = []

    def register(
        self,
        token: str,
        handler: Handler,
        transition: Transition = Transition.NONE,
        *,
        conversation_default: bool = False,
        description: str = "",
    ) -> "CommandTableBuilder":
        if not token or token != token.strip() or any(ch.isspace() for ch in token):
            self._errors.append(f"invalid command token {token!r}")
            return self
        if token in self._commands:
            self._errors.append(f"duplicate command token {token!r}")
            return self

        transition = Transition(transition)
        self._commands[token] = CommandDescriptor(
            token=token,
            handler=handler,
            transition=transition,
            description=description,
        )
        if transition is Transition.ENTER_CHAT:
            self._chat_enter.append(token)
        elif transition is Transition.EXIT_CHAT:
            self._chat_exit.append(token)
        if conversation_default:
            self._conversation_default.append(token)
        return self

    def build(self) -> CommandTable:
        errors = list(self._errors)
        for name, tokens in (
            ("chat-enter", self._chat_enter),
            ("chat-exit", self._chat_exit),
            ("conversation-default", self._conversation_default),
        ):
            if len(tokens) > 1:
                errors.append(f"more than one {name} command: {', '.join(tokens)}")

        defined = [
            bool(tokens)
            for tokens in (self._chat_enter, self._chat_exit, self._conversation_default)
        ]
        if any(defined) and not all(defined):
            errors.append(
                "chat-enter, chat-exit and conversation-default commands must be "
                "either all defined or all undefined"
            )
        if errors:
            raise CommandTableError("; ".join(errors))

        table = CommandTable(
            self._commands,
            chat_enter=self._chat_enter[0] if self._chat_enter else None,
            chat_exit=self._chat_exit[0] if self._chat_exit else None,
            conversation_default=(
                self._conversation_default[0] if self._conversation_default else None
            ),
        )
        logger.info(
            "commands.table_built",
            commands=len(table),
            chat_mode=table.supports_chat,
        )
        return table


def fallback(message: str) -> Callable[[Handler], Handler]:
    """
    Decorate a handler so any exception becomes the user-facing *message*.

    The router never sees handler exceptions; this is where they stop.
    """

    def decorator(func: Handler) -> Handler:
        @functools.wraps(func)
        async def wrapper(session: "Session", args: str) -> str:
            try:
                return await func(session, args)
            except Exception as e:
                logger.warning(
                    "commands.handler_failed",
                    handler=func.__name__,
                    user_id=session.user_id,
                    error=str(e),
                )
                return message

        return wrapper

    return decorator
