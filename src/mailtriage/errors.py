"""Exception types raised across mailtriage."""


class MailTriageError(Exception):
    """Base class for mailtriage errors."""


class AccountConnectionError(MailTriageError, ConnectionError):
    """Handshake, authentication or transport failure for an account."""


class MessageParseError(MailTriageError):
    """A raw message source could not be parsed."""


class InferenceError(MailTriageError):
    """The inference call failed or returned a label outside the category set."""


class AccountNotFoundError(MailTriageError):
    """No saved configuration exists for the requested account."""


class AccountValidationError(MailTriageError, ValueError):
    """Required account fields are missing or invalid."""
