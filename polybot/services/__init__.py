"""
External collaborators used by command handlers and the IP monitor.

Every adapter takes the shared ``aiohttp.ClientSession`` owned by the
service entry point and raises a :class:`polybot.errors.ServiceError`
subclass on failure.
"""

from polybot.services.affirmations import Affirmations
from polybot.services.certificates import CertificateIssuer, issue_certificate
from polybot.services.llm import LanguageModel
from polybot.services.network import IpLookup
from polybot.services.plant import PlantMonitor
from polybot.services.telegram import TelegramClient, Update, WebhookStatus
from polybot.services.weather import OpenMeteo

__all__ = [
    "Affirmations",
    "CertificateIssuer",
    "IpLookup",
    "LanguageModel",
    "OpenMeteo",
    "PlantMonitor",
    "TelegramClient",
    "Update",
    "WebhookStatus",
    "issue_certificate",
]
