"""Chunked file upload and download with end-to-end SHA-256 verification."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional, Tuple, Union

from common.constants import CHECKSUM_ALGORITHM, FILETRANSFER_SERVICE
from common.logging_config import get_logger
from common.protocol import FileChunk, FileRequest, FileUploadResponse
from modelclient.bridge import ClientStreamProducer, DownloadConsumer, invoke_rpc
from modelclient.channel import CallChannel, Message
from modelclient.exceptions import (
    ChecksumMismatchError,
    InvalidInputError,
    RpcCallError,
    classify_rpc_error,
)
from modelclient.schema import SchemaCatalog
from modelclient.session import SessionContext

logger = get_logger(__name__)

UPLOAD_METHOD = f"{FILETRANSFER_SERVICE}.Upload"
DOWNLOAD_METHOD = f"{FILETRANSFER_SERVICE}.Download"

STATUS_SUCCESS = "SUCCESS"
STATUS_ERROR = "ERROR"


def is_file_uri(s: str) -> bool:
    return s.startswith("file://")


class IncrementalChecksumCalculator:
    """
    Calculate a checksum incrementally for streaming data.

    Usage:
        calculator = IncrementalChecksumCalculator()
        calculator.update(chunk1)
        calculator.update(chunk2)
        checksum = calculator.checksum  # 'sha256:<hex>'
    """

    def __init__(self, algorithm: str = CHECKSUM_ALGORITHM):
        self._algorithm = algorithm
        self._hasher = hashlib.new(algorithm)

    def update(self, data: bytes) -> None:
        self._hasher.update(data)

    @property
    def checksum(self) -> str:
        """Digest of everything seen so far, as 'algorithm:hexdigest'."""
        return f"{self._algorithm}:{self._hasher.hexdigest()}"


class TransferDirection(Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


@dataclass
class TransferSession:
    """
    Progress of one file transfer. Counters only ever grow.

    ``status`` starts as SUCCESS and becomes ERROR when a malformed chunk is
    received; callers must check it after a download.
    """
    direction: TransferDirection
    uri: str
    chunk_size: int = 0
    chunks_transferred: int = 0
    bytes_transferred: int = 0
    status: str = STATUS_SUCCESS
    _calculator: IncrementalChecksumCalculator = field(default_factory=IncrementalChecksumCalculator, repr=False)

    def record(self, data: bytes) -> None:
        self._calculator.update(data)
        self.chunks_transferred += 1
        self.bytes_transferred += len(data)

    def mark_error(self) -> None:
        self.status = STATUS_ERROR

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    @property
    def checksum(self) -> str:
        return self._calculator.checksum


def verify_checksum(expected: str, actual: str, name: str = '') -> None:
    """
    Raises:
        ChecksumMismatchError: If the digests differ
    """
    if expected != actual:
        raise ChecksumMismatchError(expected=expected, actual=actual, name=name)


class ChunkedTransfer:
    """
    Streams byte sources to, and byte sinks from, the file transfer service.
    """

    def __init__(self, session: SessionContext, channel: CallChannel, catalog: SchemaCatalog):
        self._session = session
        self._channel = channel
        self._catalog = catalog

    async def upload(
        self,
        source: BinaryIO,
        uri: str,
        chunk_size: Optional[int] = None,
    ) -> Tuple[TransferSession, FileUploadResponse]:
        """
        Upload everything readable from ``source`` to ``uri``.

        Args:
            source: Binary stream to read from
            uri: Destination URI on the server
            chunk_size: Maximum bytes per message; defaults to the session's

        Returns:
            (local transfer session, server's upload response)

        Raises:
            OSError: If reading the source fails
            InvalidInputError: If chunk_size is not positive
        """
        chunk_size = chunk_size if chunk_size is not None else self._session.chunk_size
        if chunk_size <= 0:
            raise InvalidInputError(f"Chunk size must be positive, got {chunk_size}")

        transfer = TransferSession(direction=TransferDirection.UPLOAD, uri=uri, chunk_size=chunk_size)

        async def next_message(message: Message) -> bool:
            data = source.read(chunk_size)
            if not data:
                return False
            transfer.record(data)
            message.update(FileChunk(uri=uri, data=data).to_dict())
            return True

        handler = ClientStreamProducer(next_message)
        try:
            await invoke_rpc(self._channel, self._catalog, self._session, UPLOAD_METHOD, handler)
        except OSError as e:
            # the stream is aborted before half-close, so the server keeps nothing
            logger.error(f"Failed reading upload source for {uri}: {e}")
            raise
        try:
            handler.raise_for_status()
        except RpcCallError as e:
            raise classify_rpc_error(e)

        response = FileUploadResponse.from_dict(handler.response or {})
        logger.info(f"Uploaded {transfer.bytes_transferred} bytes in {transfer.chunks_transferred} chunks to {uri}")
        return transfer, response

    async def download(self, uri: str, sink: BinaryIO) -> TransferSession:
        """
        Download ``uri`` into ``sink``.

        A malformed chunk marks the session ERROR without interrupting the
        stream; the remaining chunks are still consumed.

        Returns:
            The transfer session with counts, checksum and status
        """
        transfer = TransferSession(direction=TransferDirection.DOWNLOAD, uri=uri)

        def consume(message: Message) -> None:
            try:
                chunk = FileChunk.from_dict(message)
            except ValueError as e:
                logger.warning(f"Malformed chunk while downloading {uri}: {e}")
                transfer.mark_error()
                return
            sink.write(chunk.data)
            transfer.record(chunk.data)

        handler = DownloadConsumer(FileRequest(uri=uri).to_dict(), consume)
        await invoke_rpc(self._channel, self._catalog, self._session, DOWNLOAD_METHOD, handler)
        try:
            handler.raise_for_status()
        except RpcCallError as e:
            raise classify_rpc_error(e)

        logger.info(f"Downloaded {transfer.bytes_transferred} bytes in {transfer.chunks_transferred} chunks from {uri}")
        return transfer

    async def upload_file(
        self,
        local_path: Union[str, Path],
        uri: str,
        chunk_size: Optional[int] = None,
    ) -> Tuple[TransferSession, FileUploadResponse]:
        """
        Raises:
            InvalidInputError: If local_path is a URI or uri is not a file:// URI
        """
        if is_file_uri(str(local_path)):
            raise InvalidInputError("local_name argument should not be a uri")
        if not is_file_uri(uri):
            raise InvalidInputError("uri argument should be a file:// uri")
        with open(local_path, 'rb') as f:
            return await self.upload(f, uri, chunk_size)

    async def download_file(self, uri: str, local_path: Union[str, Path]) -> TransferSession:
        """
        Raises:
            InvalidInputError: If local_path is a URI or uri is not a file:// URI
        """
        if is_file_uri(str(local_path)):
            raise InvalidInputError("local_name argument should not be a uri")
        if not is_file_uri(uri):
            raise InvalidInputError("uri argument should be a file:// uri")
        with open(local_path, 'wb') as f:
            return await self.download(uri, f)
