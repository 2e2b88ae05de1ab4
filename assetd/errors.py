class ServerError(Exception):
    """Base class for process-level failures."""


class BindError(ServerError):
    def __init__(self, address, reason) -> None:
        self.address = address
        self.reason = reason
        host, port = address
        super().__init__(f"cannot listen on {host or '*'}:{port}: {reason}")


class AssetSourceError(ServerError):
    """The asset root could not be opened."""


class StateError(ServerError):
    """Illegal server lifecycle transition."""


class RequestHeaderTooLarge(ValueError):
    pass
