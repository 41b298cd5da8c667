"""
Polybot — Telegram webhook bot service.

The package contains a long-running bot backend that receives Telegram
updates over an HTTPS webhook, routes them to command handlers, and keeps
per-user conversational state in memory.

Architecture layers (bottom to top):
    1. Session registry (per-user state, chat mode, conversation history)
    2. Command table (validated token → handler mapping, built at startup)
    3. Command router (chat-mode state machine)
    4. Listener supervisor (TLS webhook listener with hot swap)
    5. IP-change monitor (certificate rotation on public IP drift)
    6. Orchestrator (races listener, rotation signal, auxiliary loops)
"""

__version__ = "0.1.0"
__author__ = "Polybot contributors"
