"""Backup create and restore workflows built on models, polling and transfers."""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from common.constants import BACKUP_LOCAL_DIR_URI, BACKUP_NAME_PREFIX
from common.logging_config import get_logger
from common.types import Convergence
from modelclient.exceptions import InternalError, ObjectReference
from modelclient.models import ModelResourceClient
from modelclient.transfer import ChunkedTransfer, verify_checksum

logger = get_logger(__name__)

BACKUP_OPERATION_MODEL = "BackupOperation"
BACKUP_FILE_MODEL = "BackupFile"


@dataclass(frozen=True)
class BackupResult:
    status: str
    checksum: str
    chunks: int
    bytes: int


def default_restore_uri(now: Optional[datetime] = None) -> Tuple[str, str]:
    """
    Generate (remote name, file:// URI) for a file uploaded for restore.
    """
    now = now or datetime.now(timezone.utc)
    remote_name = f"{BACKUP_NAME_PREFIX}-restore-{now.strftime('%Y%m%dT%H%M%SZ')}"
    return remote_name, BACKUP_LOCAL_DIR_URI + remote_name


class BackupManager:
    """
    Drives the server-side backup operations and the matching file transfers.
    """

    def __init__(
        self,
        models: ModelResourceClient,
        uri_factory: Callable[[], Tuple[str, str]] = default_restore_uri,
        timeout: Optional[float] = None,
    ):
        """
        Args:
            models: Client used for BackupOperation/BackupFile models
            uri_factory: Produces (remote name, URI) for restore uploads
            timeout: Deadline for each wait on a backup operation; None waits indefinitely
        """
        self._models = models
        self._uri_factory = uri_factory
        self._timeout = timeout

    async def _transfer(self) -> ChunkedTransfer:
        return ChunkedTransfer(self._models.session, await self._models.channel(), self._models.catalog)

    async def create_backup(self, local_path: Union[str, Path]) -> BackupResult:
        """
        Ask the server for a backup and download it to ``local_path``.

        Raises:
            InternalError: If the operation does not end in status 'created' or has no file
            ChecksumMismatchError: If the downloaded file does not match the server's checksum
        """
        ref = await self._models.create(BACKUP_OPERATION_MODEL, {'operation': 'create'})
        logger.info(f"Created backup-create operation id={ref.id} uuid={ref.uuid}")

        operation = await self._models.wait_for(
            BACKUP_OPERATION_MODEL,
            Convergence(until_found=True, until_enacted=True),
            id=ref.id,
            timeout=self._timeout,
        )
        obj = ObjectReference(BACKUP_OPERATION_MODEL, id=ref.id)
        status = operation.raw.get('status')
        logger.info(f"Backup operation {ref.id} status: {status}")
        if status != 'created':
            raise InternalError(f"BackupOp status is {status}", obj)

        file_id = int(operation.raw.get('file_id') or 0)
        if file_id == 0:
            raise InternalError("BackupOp.file_id is not set", obj)

        backup_file = await self._models.get(BACKUP_FILE_MODEL, file_id)
        uri = backup_file.raw.get('uri', '')
        logger.info(f"Downloading {uri} to {local_path}")

        transfer = await (await self._transfer()).download_file(uri, local_path)
        verify_checksum(expected=backup_file.raw.get('checksum', ''), actual=transfer.checksum, name=str(local_path))

        return BackupResult(
            status=transfer.status,
            checksum=transfer.checksum,
            chunks=transfer.chunks_transferred,
            bytes=transfer.bytes_transferred,
        )

    async def restore_backup(self, local_path: Union[str, Path], chunk_size: Optional[int] = None) -> BackupResult:
        """
        Upload ``local_path`` and ask the server to restore from it.

        Returns:
            Result whose status is SUCCESS when the server reports 'restored',
            FAILURE otherwise

        Raises:
            InternalError: If the upload does not succeed
            ChecksumMismatchError: If the server's checksum of the upload differs from ours
        """
        remote_name, uri = self._uri_factory()

        transfer, response = await (await self._transfer()).upload_file(local_path, uri, chunk_size)
        if response.status != 'SUCCESS':
            raise InternalError(f"Upload status was {response.status}")
        verify_checksum(expected=transfer.checksum, actual=response.checksum, name=str(local_path))

        backup_file = await self._models.create(
            BACKUP_FILE_MODEL,
            {'name': remote_name, 'uri': uri, 'checksum': transfer.checksum},
        )
        logger.info(f"Created backup file {backup_file.id}")

        ref = await self._models.create(
            BACKUP_OPERATION_MODEL,
            {'operation': 'restore', 'file_id': backup_file.id},
        )
        logger.info(f"Created backup-restore operation id={ref.id} uuid={ref.uuid}")
        if not ref.uuid:
            raise InternalError("BackupOp.uuid is not set", ObjectReference(BACKUP_OPERATION_MODEL, id=ref.id))

        operation = await self._models.wait_for(
            BACKUP_OPERATION_MODEL,
            Convergence(until_found=True, until_enacted=True, until_status=True),
            queries={'uuid': f"={ref.uuid}"},
            timeout=self._timeout,
        )

        return BackupResult(
            status='SUCCESS' if operation.raw.get('status') == 'restored' else 'FAILURE',
            checksum=response.checksum,
            chunks=response.chunks_received,
            bytes=response.bytes_received,
        )
