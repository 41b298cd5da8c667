"""
Command router — the per-user chat-mode state machine.

A session is either in *normal* mode, where the first word of a message picks
the command, or in *chat* mode, where every message except the chat-exit
command goes verbatim to the conversation-default handler. Mode transitions
are declared on the command descriptors and applied here, after the handler
returns, never by the handlers themselves.
"""

from __future__ import annotations

import structlog

from polybot.commands import CommandDescriptor, CommandTable, Transition
from polybot.sessions import Session, SessionRegistry

logger = structlog.get_logger(__name__)

UNKNOWN_COMMAND_REPLY = "Did not understand!"


def split_command(text: str) -> tuple[str, str]:
    """Split *text* into (command_token, argument) on the first whitespace run.

    The remaining words are re-joined with single spaces.
    """
    words = text.split()
    if not words:
        return "", ""
    return words[0], " ".join(words[1:])


class CommandRouter:
    """Routes inbound text for a user to a handler and returns the reply."""

    def __init__(self, registry: SessionRegistry, table: CommandTable) -> None:
        self._registry = registry
        self._table = table

    @property
    def table(self) -> CommandTable:
        return self._table

    async def route(self, user_id: int, text: str) -> str:
        """Handle one message. Messages from the same user are serialized."""
        async with self._registry.acquire(user_id) as session:
            return await self._route_locked(session, text)

    async def _route_locked(self, session: Session, text: str) -> str:
        registry = self._registry
        registry.touch(session)

        descriptor: CommandDescriptor | None
        if registry.is_chat_mode(session) and not self._is_chat_exit(text):
            descriptor = self._table.lookup(self._table.conversation_default or "")
            argument = text
        else:
            token, argument = split_command(text)
            descriptor = self._table.lookup(token)

        logger.debug(
            "router.dispatch",
            user_id=session.user_id,
            command=descriptor.token if descriptor else None,
            chat_mode=session.chat_mode,
            argument=argument,
        )

        if descriptor is None:
            return UNKNOWN_COMMAND_REPLY

        reply = await descriptor.handle(session, argument)

        if descriptor.transition is Transition.ENTER_CHAT:
            registry.set_mode(session, True)
        elif descriptor.transition is Transition.EXIT_CHAT:
            registry.set_mode(session, False)
        return reply

    def _is_chat_exit(self, text: str) -> bool:
        exit_token = self._table.chat_exit
        return bool(exit_token) and text.startswith(exit_token)
