"""
Defines custom exceptions used throughout the application.

These exceptions allow for more specific error handling than built-in exceptions.
"""

class TubeshelfError(Exception):
    """Base class for all application errors."""
    pass

class ConfigurationError(TubeshelfError):
    """Raised when an enqueue request is refused because of configuration."""
    code = 'configuration'

class DestinationNotConfiguredError(ConfigurationError):
    """No download directory has been configured."""
    code = 'destination_not_configured'

    def __init__(self, message: str = "Configure a download directory before queueing downloads."):
        super().__init__(message)

class CredentialsStaleError(ConfigurationError):
    """Cookies may be expired and the caller did not confirm the request."""
    code = 'credentials_stale'

    def __init__(self, message: str = "Cookies may be stale. Refresh them or confirm to download anyway."):
        super().__init__(message)

class JobNotFoundError(TubeshelfError):
    """Raised when a command targets a job id the registry does not know."""
    pass
