"""Exception hierarchy shared across Polybot subsystems."""

from __future__ import annotations


class PolybotError(Exception):
    """Base class for all Polybot errors."""


class ConfigurationError(PolybotError):
    """Raised when the service cannot start in a consistent configuration."""


class CommandTableError(ConfigurationError):
    """Raised when command registrations fail validation."""


class ListenerError(PolybotError):
    """Raised when the webhook listener cannot be constructed or bound."""


class ServiceError(PolybotError):
    """Raised by an external collaborator (Telegram, IP lookup, weather, …)."""


class TelegramError(ServiceError):
    """The Telegram Bot API was unreachable or answered with ok=false."""


class IpLookupError(ServiceError):
    """The external IP could not be determined."""


class CertificateError(ServiceError):
    """Certificate material could not be generated or written."""


class WeatherError(ServiceError):
    """The weather provider failed or did not know the city."""


class LLMError(ServiceError):
    """The language-model request failed or is not configured."""
