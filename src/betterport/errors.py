"""Exception classes raised by ports and transports."""

__all__ = (
    "AlreadyClosedError",
    "AlreadyOpenError",
    "DisconnectTimeoutError",
    "NotFoundError",
    "OpenTimeoutError",
    "PortClosedError",
    "PortError",
    "TransportError",
    "UnknownTransportTypeError",
    "WriteRejectedError",
)


class PortError(RuntimeError):
    """Base class for port-related errors."""

    pass


class NotFoundError(PortError):
    """Exception thrown when the device or endpoint of a transport is not
    present at the time we try to open it.
    """

    def __init__(self, path=None):
        """Constructor.

        Parameters:
            path (Optional[str]): the path of the device or endpoint that
                was not found
        """
        message = (
            "Port does not exist" if path is None else f"Port does not exist: {path}"
        )
        super(NotFoundError, self).__init__(message)
        self.path = path


class AlreadyOpenError(PortError):
    """Exception thrown when trying to open a transport whose handle is
    live already.
    """

    def __init__(self, message=None):
        super(AlreadyOpenError, self).__init__(message or "Port is already open")


class AlreadyClosedError(PortError):
    """Exception thrown internally when closing a transport that has no
    handle. Callers of ``close()`` never see it; closing twice is not an
    error.
    """

    def __init__(self, message=None):
        super(AlreadyClosedError, self).__init__(message or "Port is already closed")


class OpenTimeoutError(PortError):
    """Exception thrown when a connection-oriented transport could not
    establish its connection within the allotted time.
    """

    def __init__(self, timeout=None):
        """Constructor.

        Parameters:
            timeout (Optional[float]): the timeout that has expired, in seconds
        """
        message = (
            "Connection timeout"
            if timeout is None
            else f"Connection timeout after {timeout:g} seconds"
        )
        super(OpenTimeoutError, self).__init__(message)
        self.timeout = timeout


class WriteRejectedError(PortError):
    """Exception passed to write callbacks when the port could not accept
    the data: it is not open, not writable or it has nobody to send to.
    """

    pass


class TransportError(PortError):
    """Exception that wraps an I/O error reported by a transport while its
    handle was live.
    """

    pass


class DisconnectTimeoutError(PortError):
    """Exception passed along with the ``closed`` signal of a port when it
    was closed because no data arrived within the disconnect timeout.
    """

    def __init__(self, timeout=None):
        message = (
            "No data received"
            if timeout is None
            else f"No data received in {timeout:g} seconds"
        )
        super(DisconnectTimeoutError, self).__init__(message)
        self.timeout = timeout


class PortClosedError(PortError):
    """Exception thrown when trying to open a port that was closed
    permanently without stating explicitly whether it should be kept open.
    """

    def __init__(self, message=None):
        super(PortClosedError, self).__init__(
            message
            or "Port was closed permanently; pass keep_open explicitly to reopen it"
        )


class UnknownTransportTypeError(PortError):
    """Exception thrown when trying to construct a transport with an
    unknown type.
    """

    def __init__(self, transport_type):
        """Constructor.

        Parameters:
            transport_type (str): the transport type that the user tried
                to construct.
        """
        message = "Unknown transport type: {0!r}".format(transport_type)
        super(UnknownTransportTypeError, self).__init__(message)
        self.transport_type = transport_type
