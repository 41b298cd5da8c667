"""
Bot command handlers and the startup command table.

Every handler has the uniform shape ``async (session, args) -> str`` and
turns its own failures into a user-facing reply via :func:`fallback`. Chat
mode is declared here with transitions; the router applies them.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Optional

from polybot.commands import CommandTable, CommandTableBuilder, Transition, fallback
from polybot.services.affirmations import Affirmations
from polybot.services.llm import LanguageModel
from polybot.services.network import IpLookup
from polybot.services.weather import OpenMeteo
from polybot.sessions import Session

NO_AGENT_REPLY = "Could not create the llm agent, check the API key"


@dataclass
class HandlerServices:
    """Collaborators the handlers call into."""

    ip_lookup: IpLookup
    weather: OpenMeteo
    affirmations: Affirmations
    llm: LanguageModel
    rng: Optional[random.Random] = None


def build_command_table(services: HandlerServices) -> CommandTable:
    """Register every command and return the validated table."""
    rng = services.rng or random.Random()
    builder = CommandTableBuilder()
    table: Optional[CommandTable] = None

    @fallback("Error getting the Ip address")
    async def ip(session: Session, args: str) -> str:
        return await services.ip_lookup.lookup_external_ip()

    @fallback("Error getting the temp")
    async def temp(session: Session, args: str) -> str:
        city = args or services.weather.favourite_city
        value = await services.weather.get_temperature(city)
        return f"{value:.1f}°C in {city}"

    @fallback("Problem getting the affirmation :(")
    async def affirm(session: Session, args: str) -> str:
        return await services.affirmations.get_affirmation()

    @fallback("Problem getting the agent response")
    async def ask(session: Session, args: str) -> str:
        if not args:
            return "Ask something!"
        if not services.llm.available:
            return NO_AGENT_REPLY
        return await services.llm.ask(args)

    @fallback("Error during initializing the chat!")
    async def chat(session: Session, args: str) -> str:
        session.conversation.reset(args or services.llm.chat_prompt)
        if not services.llm.available:
            return f"Let's chat! (warning: {NO_AGENT_REPLY})"
        return "Let's chat!"

    # Gives memory to conversations in chat mode.
    @fallback("Problem getting the agent response")
    async def chain(session: Session, args: str) -> str:
        if not args:
            return "Say something!"
        if not services.llm.available:
            return NO_AGENT_REPLY
        return await services.llm.converse(session.conversation, args)

    async def endchat(session: Session, args: str) -> str:
        return "See ya!"

    async def dice(session: Session, args: str) -> str:
        return str(rng.randint(1, 6))

    async def help_(session: Session, args: str) -> str:
        if table is None:
            return ""
        return "\n".join(f"{token} — {description}" for token, description in table.describe())

    builder.register("/ip", ip, description="Show the bot's public IP")
    builder.register("/temp", temp, description="Current temperature, optionally for a city")
    builder.register("/affirm", affirm, description="A random affirmation")
    builder.register("/ask", ask, description="Ask the language model a single question")
    builder.register(
        "/chat",
        chat,
        Transition.ENTER_CHAT,
        description="Start a conversation, optionally with a persona prompt",
    )
    builder.register(
        "/chain",
        chain,
        conversation_default=True,
        description="Send one message to the ongoing conversation",
    )
    builder.register("/endchat", endchat, Transition.EXIT_CHAT, description="Leave chat mode")
    builder.register("/dice", dice, description="Roll a six-sided die")
    builder.register("/help", help_, description="List the commands")
    table = builder.build()
    return table
