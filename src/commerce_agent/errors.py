"""Exception hierarchy for the endpoint resolution pipeline."""

from __future__ import annotations


class CommerceAgentError(Exception):
    pass


class ConfigurationError(CommerceAgentError):
    """Missing credentials, base URL or other required settings."""


class SpecificationLoadError(CommerceAgentError):
    """An OpenAPI document could not be fetched or parsed."""


class ClassificationError(CommerceAgentError):
    """The classifier returned nothing, or nothing usable."""


class AuthenticationError(CommerceAgentError):
    """The token exchange did not yield an access token."""


class PlaceholderError(CommerceAgentError):
    """A path template still has placeholders nobody could fill."""


class ExecutionError(CommerceAgentError):
    pass
