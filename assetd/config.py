from dataclasses import dataclass


@dataclass(frozen=True)
class Config:
    host: str = ""
    port: int = 8080
    read_timeout: float = 10.0
    write_timeout: float = 30.0
    idle_timeout: float = 60.0
    shutdown_timeout: float = 15.0
    new_conn_grace: float = 5.0
    backlog: int = 128
    accept_timeout: float = 0.5
    max_header_bytes: int = 1 << 20
    chunk_size: int = 64 * 1024
    debug: bool = False
