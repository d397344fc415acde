"""Shared RPC/protocol message definitions (JSON wire formats)."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import base64
import binascii


@dataclass
class IDRequest:
    """Request message for Get/Delete RPCs (xos.ID)."""
    id: int

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id}


@dataclass
class QueryElement:
    """One predicate of a Filter query."""
    name: str
    operator: str
    invert: bool = False
    i_value: Optional[int] = None
    s_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize using the wire field names (iValue/sValue)."""
        obj = {
            'name': self.name,
            'operator': self.operator,
            'invert': self.invert,
        }
        if self.i_value is not None:
            obj['iValue'] = self.i_value
        if self.s_value is not None:
            obj['sValue'] = self.s_value
        return obj


@dataclass
class Query:
    """Request message for Filter RPCs (xos.Query)."""
    kind: str = 'DEFAULT'
    elements: List[QueryElement] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'elements': [e.to_dict() for e in self.elements],
        }


@dataclass
class FileRequest:
    """Request message for the Download RPC."""
    uri: str

    def to_dict(self) -> Dict[str, Any]:
        return {'uri': self.uri}


@dataclass
class FileChunk:
    """A piece of file data for streaming, in either direction."""
    uri: str
    data: bytes

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the chunk base64-encoded."""
        return {
            'uri': self.uri,
            'chunk': base64.b64encode(self.data).decode('ascii'),
        }

    @classmethod
    def from_dict(cls, obj: Any) -> 'FileChunk':
        """
        Deserialize a received chunk.

        Raises:
            ValueError: If the message is not a well-formed chunk
        """
        if not isinstance(obj, dict) or not isinstance(obj.get('chunk'), str):
            raise ValueError("Malformed chunk message")
        try:
            data = base64.b64decode(obj['chunk'], validate=True)
        except binascii.Error as e:
            raise ValueError(f"Malformed chunk payload: {e}")
        return cls(uri=obj.get('uri', ''), data=data)


@dataclass
class FileUploadResponse:
    """Response message for the Upload RPC."""
    status: str
    checksum: str = ''
    chunks_received: int = 0
    bytes_received: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'checksum': self.checksum,
            'chunks_received': self.chunks_received,
            'bytes_received': self.bytes_received,
        }

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'FileUploadResponse':
        return cls(
            status=obj.get('status', 'SUCCESS'),
            checksum=obj.get('checksum', ''),
            chunks_received=int(obj.get('chunks_received', 0)),
            bytes_received=int(obj.get('bytes_received', 0)),
        )


@dataclass
class ServerVersion:
    """Response message for the GetVersion RPC."""
    version: str
    python_version: str = 'unknown'
    git_commit: str = 'unknown'
    build_time: str = 'unknown'
    os: str = 'unknown'
    arch: str = 'unknown'

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'ServerVersion':
        return cls(
            version=obj.get('version', ''),
            python_version=obj.get('pythonVersion', 'unknown'),
            git_commit=obj.get('gitCommit', 'unknown'),
            build_time=obj.get('buildTime', 'unknown'),
            os=obj.get('os', 'unknown'),
            arch=obj.get('arch', 'unknown'),
        )


@dataclass
class ServiceStatus:
    """One entry of the GetLoadStatus response: a dynamically loaded service."""
    name: str
    version: str = ''
    state: str = ''

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> 'ServiceStatus':
        return cls(
            name=obj.get('name', ''),
            version=obj.get('version', ''),
            state=obj.get('state', ''),
        )


@dataclass
class ComponentStatus:
    """A subsystem row of the status listing."""
    component: str
    name: str = ''
    version: str = ''
    connection: str = ''
    status: str = ''

    @classmethod
    def from_database_info(cls, component: str, obj: Dict[str, Any]) -> 'ComponentStatus':
        """Build from a GetDatabaseInfo response."""
        return cls(
            component=component,
            name=obj.get('name', ''),
            version=obj.get('version', ''),
            connection=obj.get('connection', ''),
            status=obj.get('status', ''),
        )
