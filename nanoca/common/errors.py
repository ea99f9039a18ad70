"""Error taxonomy. Every failure reaches the command boundary as one of these."""


class NanoCAError(Exception):
    exit_code = 1


class ConfigurationError(NanoCAError):
    """Directory is not a usable CA (or not empty when creating one)."""
    exit_code = 2


class ValidationError(NanoCAError):
    """Malformed request, bad signature or bad subject attributes."""
    exit_code = 3


class StateConflict(NanoCAError):
    exit_code = 4


class NotFound(StateConflict):
    pass


class AlreadyRevoked(StateConflict):
    pass


class CryptoFailure(NanoCAError):
    exit_code = 5


class IOFailure(NanoCAError):
    exit_code = 6
