import enum
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Optional


class ConnState(enum.Enum):
    NEW = "new"
    ACTIVE = "active"
    IDLE = "idle"
    CLOSED = "closed"


@dataclass(frozen=True)
class Request:
    method: str
    target: str
    path: str
    query: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def keep_alive(self) -> bool:
        conn = self.headers.get("connection", "").lower()
        if self.version == "HTTP/1.0":
            return conn == "keep-alive"
        return conn != "close"


@dataclass(frozen=True)
class Asset:
    name: str
    resource: object  # pathlib.Path or any other Traversable
    size: int
    mtime: Optional[float] = None

    def open(self) -> BinaryIO:
        return self.resource.open("rb")


@dataclass(frozen=True)
class ResponseSpec:
    status: int
    reason: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    asset: Optional[Asset] = None
    offset: int = 0
    body_size: int = 0
