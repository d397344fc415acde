"""Tests for chunked upload/download and checksum handling."""

import io

import grpc
import pytest

from modelclient.exceptions import (
    ChecksumMismatchError,
    InvalidInputError,
    ModelNotFoundError,
    PermissionDeniedError,
    TransferError,
)
from modelclient.transfer import (
    STATUS_ERROR,
    STATUS_SUCCESS,
    ChunkedTransfer,
    IncrementalChecksumCalculator,
    TransferDirection,
    verify_checksum,
)
from fakes import sha256_checksum


class FailingReader(io.RawIOBase):
    """Returns one chunk, then fails."""

    def __init__(self):
        self.reads = 0

    def read(self, size=-1):
        self.reads += 1
        if self.reads == 1:
            return b"abc"
        raise OSError("disk went away")


@pytest.fixture
def transfer(session, channel, catalog):
    return ChunkedTransfer(session, channel, catalog)


class TestChecksum:

    def test_incremental_matches_whole(self):
        calculator = IncrementalChecksumCalculator()
        calculator.update(b"ABC")
        calculator.update(b"DEF")
        assert calculator.checksum == sha256_checksum(b"ABCDEF")

    def test_verify_checksum(self):
        verify_checksum("sha256:aa", "sha256:aa")
        with pytest.raises(ChecksumMismatchError) as exc_info:
            verify_checksum("sha256:aa", "sha256:bb", name="backup.tar")

        assert isinstance(exc_info.value, TransferError)
        assert str(exc_info.value) == "backup.tar: checksum mismatch (actual=sha256:bb, expected=sha256:aa)"


class TestUpload:

    @pytest.mark.asyncio
    async def test_counts_and_digest(self, transfer, server):
        session, response = await transfer.upload(io.BytesIO(b"ABCDEF"), "file:///tmp/x", chunk_size=3)

        assert session.direction == TransferDirection.UPLOAD
        assert session.chunks_transferred == 2
        assert session.bytes_transferred == 6
        assert session.checksum == sha256_checksum(b"ABCDEF")
        assert response.checksum == session.checksum
        assert response.chunks_received == 2
        assert server.files["file:///tmp/x"] == b"ABCDEF"

    @pytest.mark.asyncio
    async def test_uneven_last_chunk(self, transfer, server):
        session, response = await transfer.upload(io.BytesIO(b"ABCDEFG"), "file:///tmp/x", chunk_size=3)

        assert session.chunks_transferred == 3
        assert server.calls_to("/xos.filetransfer/Upload") == [{"chunks": 3}]

    @pytest.mark.asyncio
    async def test_default_chunk_size_from_session(self, transfer, session):
        data = b"x" * (session.chunk_size + 1)
        result, _ = await transfer.upload(io.BytesIO(data), "file:///tmp/x")
        assert result.chunks_transferred == 2
        assert result.chunk_size == session.chunk_size

    @pytest.mark.asyncio
    async def test_invalid_chunk_size(self, transfer, server):
        with pytest.raises(InvalidInputError):
            await transfer.upload(io.BytesIO(b"ABC"), "file:///tmp/x", chunk_size=0)
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_read_error_is_raised(self, transfer, server):
        with pytest.raises(OSError, match="disk went away"):
            await transfer.upload(FailingReader(), "file:///tmp/x", chunk_size=3)

        assert "file:///tmp/x" not in server.files
        assert server.cancelled == ["/xos.filetransfer/Upload"]

    @pytest.mark.asyncio
    async def test_upload_file(self, transfer, server, sample_file):
        session, _ = await transfer.upload_file(sample_file, "file:///var/run/xos/backup/local/b1", chunk_size=5)

        assert server.files["file:///var/run/xos/backup/local/b1"] == sample_file.read_bytes()
        assert session.bytes_transferred == len(sample_file.read_bytes())

    @pytest.mark.asyncio
    @pytest.mark.parametrize("local,uri,message", [
        ("file:///tmp/a", "file:///tmp/b", "local_name argument should not be a uri"),
        ("a.tar", "http://host/b", "uri argument should be a file:// uri"),
    ])
    async def test_upload_file_validates_uris(self, transfer, server, local, uri, message):
        with pytest.raises(InvalidInputError) as exc_info:
            await transfer.upload_file(local, uri)
        assert str(exc_info.value) == message
        assert server.calls == []


class TestDownload:

    @pytest.mark.asyncio
    async def test_counts_and_digest(self, transfer, server):
        server.files["file:///tmp/x"] = b"ABCDEF"
        server.download_chunk_size = 3
        sink = io.BytesIO()

        session = await transfer.download("file:///tmp/x", sink)

        assert sink.getvalue() == b"ABCDEF"
        assert session.direction == TransferDirection.DOWNLOAD
        assert session.chunks_transferred == 2
        assert session.bytes_transferred == 6
        assert session.checksum == sha256_checksum(b"ABCDEF")
        assert session.status == STATUS_SUCCESS

    @pytest.mark.asyncio
    async def test_malformed_chunk_marks_error_and_continues(self, transfer, server):
        server.files["file:///tmp/x"] = b"ABCDEFGH"
        server.malformed_download_chunks = [1]
        sink = io.BytesIO()

        session = await transfer.download("file:///tmp/x", sink)

        assert session.status == STATUS_ERROR
        assert not session.ok
        assert sink.getvalue() == b"ABCDEFGH"
        assert session.chunks_transferred == 2

    @pytest.mark.asyncio
    async def test_missing_file(self, transfer):
        with pytest.raises(ModelNotFoundError):
            await transfer.download("file:///tmp/none", io.BytesIO())

    @pytest.mark.asyncio
    async def test_stream_failure_is_classified(self, transfer, server):
        server.files["file:///tmp/x"] = b"ABCDEF"
        server.fail_next("/xos.filetransfer/Download", grpc.StatusCode.PERMISSION_DENIED, "denied")

        with pytest.raises(PermissionDeniedError):
            await transfer.download("file:///tmp/x", io.BytesIO())

    @pytest.mark.asyncio
    async def test_download_file(self, transfer, server, tmp_path):
        server.files["file:///var/run/xos/backup/local/b1"] = b"payload"
        target = tmp_path / "out.tar"

        session = await transfer.download_file("file:///var/run/xos/backup/local/b1", target)

        assert target.read_bytes() == b"payload"
        assert session.checksum == sha256_checksum(b"payload")

    @pytest.mark.asyncio
    async def test_download_file_validates_uri(self, transfer, tmp_path):
        with pytest.raises(InvalidInputError):
            await transfer.download_file("/not/a/uri", tmp_path / "out.tar")
