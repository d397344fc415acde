"""Subsystem status and dynamically loaded service listings."""

from typing import List

from common.constants import DATABASE_COMPONENT_NAME, DYNAMICLOAD_SERVICE, UTILITY_SERVICE
from common.logging_config import get_logger
from common.protocol import ComponentStatus, ServiceStatus
from modelclient.bridge import UnaryBridge, invoke_rpc
from modelclient.channel import CallChannel, Message
from modelclient.exceptions import RpcCallError, classify_rpc_error
from modelclient.schema import SchemaCatalog
from modelclient.session import SessionContext

logger = get_logger(__name__)

GET_LOAD_STATUS_METHOD = f"{DYNAMICLOAD_SERVICE}.GetLoadStatus"
GET_DATABASE_INFO_METHOD = f"{UTILITY_SERVICE}.GetDatabaseInfo"


async def _call(channel: CallChannel, catalog: SchemaCatalog, session: SessionContext, method: str) -> Message:
    handler = UnaryBridge()
    await invoke_rpc(channel, catalog, session, method, handler)
    try:
        handler.raise_for_status()
    except RpcCallError as e:
        raise classify_rpc_error(e)
    return handler.response or {}


async def list_services(channel: CallChannel, catalog: SchemaCatalog, session: SessionContext) -> List[ServiceStatus]:
    """
    List the services loaded into the core, in the order the server reports them.

    Raises:
        ModelCtlError: Classified transport failure
    """
    response = await _call(channel, catalog, session, GET_LOAD_STATUS_METHOD)
    services = [ServiceStatus.from_dict(item) for item in response.get('services', [])]
    logger.debug(f"Server reports {len(services)} loaded services")
    return services


def _wants(filter_text: str, component: str) -> bool:
    return not filter_text or component.lower() in filter_text.lower()


async def get_status(
    channel: CallChannel,
    catalog: SchemaCatalog,
    session: SessionContext,
    filter_text: str = '',
) -> List[ComponentStatus]:
    """
    Report the status of the server's subsystems.

    Args:
        channel: Connected call channel
        catalog: Catalog used to resolve the status methods
        session: Supplies the per-call timeout and credentials
        filter_text: Comma-separated component names; empty selects every component.
            A component is selected when its name occurs in the text, ignoring case

    Returns:
        One row per selected component

    Raises:
        ModelCtlError: Classified transport failure
    """
    components = []
    if _wants(filter_text, DATABASE_COMPONENT_NAME):
        info = await _call(channel, catalog, session, GET_DATABASE_INFO_METHOD)
        components.append(ComponentStatus.from_database_info(DATABASE_COMPONENT_NAME, info))
    return components
