"""Immutable per-session settings passed to every client component."""

import base64
from dataclasses import dataclass
from typing import List, Tuple

from common.constants import DEFAULT_CHUNK_SIZE_BYTES, DEFAULT_GRPC_TIMEOUT_SECONDS, DEFAULT_SERVER


@dataclass(frozen=True)
class SessionContext:
    """
    Connection and behavior settings for one client session.

    Attributes:
        server: host:port of the model server
        username: Basic-auth username sent with every call
        password: Basic-auth password sent with every call
        timeout: Per-call timeout in seconds
        assume_yes: Skip confirmation prompts
        chunk_size: Upload chunk size in bytes
    """
    server: str = DEFAULT_SERVER
    username: str = ''
    password: str = ''
    timeout: float = DEFAULT_GRPC_TIMEOUT_SECONDS
    assume_yes: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE_BYTES

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")

    def __repr__(self) -> str:
        return (
            f"SessionContext(server={self.server!r}, username={self.username!r}, "
            f"timeout={self.timeout}, assume_yes={self.assume_yes}, chunk_size={self.chunk_size})"
        )

    def auth_headers(self) -> List[Tuple[str, str]]:
        """Call metadata carrying the basic-auth credential pair."""
        token = base64.b64encode(f"{self.username}:{self.password}".encode('utf-8')).decode('ascii')
        return [('authorization', f"basic {token}")]
