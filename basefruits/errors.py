class BaseFruitsError(Exception):
    """Base class for errors raised by the notification backend."""


class StoreReadError(BaseFruitsError):
    """The subscription store could not be read in full."""


class StoreWriteError(BaseFruitsError):
    """The subscription store could not persist a snapshot."""


class BroadcastConfigError(BaseFruitsError):
    """A broadcast cannot be attempted with the current configuration."""
