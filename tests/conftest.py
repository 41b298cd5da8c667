"""
Shared fixtures for the Polybot test suite.

Provides a small command table with the full chat-mode trio, a registry and
router wired to it, and a self-signed certificate pair for 127.0.0.1 so
listener tests can serve real TLS.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from polybot.commands import CommandTable, CommandTableBuilder, Transition
from polybot.router import CommandRouter
from polybot.services.certificates import issue_certificate
from polybot.sessions import Session, SessionRegistry


# ---------------------------------------------------------------------------
# Command table
# ---------------------------------------------------------------------------


async def _echo(session: Session, args: str) -> str:
    return f"echo:{args}"


async def _enter(session: Session, args: str) -> str:
    return "entered"


async def _talk(session: Session, args: str) -> str:
    return f"talk:{args}"


async def _leave(session: Session, args: str) -> str:
    return "left"


@pytest.fixture
def chat_table() -> CommandTable:
    """/echo, plus /chat, /talk and /end forming the chat-mode trio."""
    return (
        CommandTableBuilder()
        .register("/echo", _echo)
        .register("/chat", _enter, Transition.ENTER_CHAT)
        .register("/talk", _talk, conversation_default=True)
        .register("/end", _leave, Transition.EXIT_CHAT)
        .build()
    )


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def router(registry: SessionRegistry, chat_table: CommandTable) -> CommandRouter:
    return CommandRouter(registry, chat_table)


# ---------------------------------------------------------------------------
# TLS material
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def tls_pair(tmp_path_factory: pytest.TempPathFactory) -> tuple[Path, Path]:
    """(cert_path, key_path) for a certificate issued to 127.0.0.1."""
    directory = tmp_path_factory.mktemp("tls")
    cert_pem, key_pem = issue_certificate("127.0.0.1", organization="Polybot Tests")
    cert_path = directory / "polybot.pem"
    key_path = directory / "polybot.key"
    cert_path.write_bytes(cert_pem)
    key_path.write_bytes(key_pem)
    return cert_path, key_path
