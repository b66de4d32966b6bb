class SyncError(Exception):
    """Base class for every error raised by the sync core."""


class TransportError(SyncError):
    """Connect, write or read failure on the IPC channel."""


class WriteError(TransportError):
    pass


class DispatchError(SyncError):
    """A submitted command did not produce a successful reply."""


class ConnectionLost(TransportError, DispatchError):
    """The channel dropped while the command was queued or awaiting its reply."""


class NotConnected(DispatchError):
    pass


class Timeout(DispatchError):
    pass


class Cancelled(DispatchError):
    pass


class EngineRejected(DispatchError):
    def __init__(self, error: str, command_id: int = 0):
        super().__init__(f"mpv rejected command {command_id}: {error}")
        self.error = error
        self.command_id = command_id


class EngineError(SyncError):
    """Local validation failure: unknown verb, bad arity or out-of-range value.

    Raised before a command is queued; never sent over the wire.
    """
