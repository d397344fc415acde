"""Server version lookup and compatibility check."""

import operator
import re
from typing import Callable, List, Tuple

from common.constants import CORE_COMPONENT_NAME, CORE_VERSION_CONSTRAINT, UTILITY_SERVICE
from common.logging_config import get_logger
from common.protocol import ServerVersion
from modelclient.bridge import UnaryBridge, invoke_rpc
from modelclient.channel import CallChannel
from modelclient.exceptions import InvalidInputError, RpcCallError, VersionConstraintError, classify_rpc_error
from modelclient.schema import SchemaCatalog
from modelclient.session import SessionContext

logger = get_logger(__name__)

GET_VERSION_METHOD = f"{UTILITY_SERVICE}.GetVersion"

Version = Tuple[int, int, int]

_COMPARATORS = {
    '>=': operator.ge,
    '<=': operator.le,
    '!=': operator.ne,
    '>': operator.gt,
    '<': operator.lt,
    '=': operator.eq,
}

_CLAUSE_RE = re.compile(r'^\s*(>=|<=|!=|>|<|=)?\s*([0-9][0-9.]*)\s*$')


def parse_version(text: str) -> Version:
    """
    Parse 'major[.minor[.patch]]', ignoring a '-suffix' such as '-dev'.

    Raises:
        InvalidInputError: If the text is not a version
    """
    core = text.split('-', 1)[0].strip()
    parts = core.split('.')
    if not core or len(parts) > 3 or not all(p.isdigit() for p in parts):
        raise InvalidInputError(f"Malformed version {text!r}")
    numbers = [int(p) for p in parts] + [0] * (3 - len(parts))
    return numbers[0], numbers[1], numbers[2]


def parse_constraint(constraint: str) -> List[Tuple[Callable[[Version, Version], bool], Version]]:
    """
    Parse a comma-separated constraint such as '>= 3, < 5'; every clause must hold.

    Raises:
        InvalidInputError: If a clause is malformed
    """
    clauses = []
    for clause in constraint.split(','):
        match = _CLAUSE_RE.match(clause)
        if match is None:
            raise InvalidInputError(f"Malformed version constraint {constraint!r}")
        comparator = _COMPARATORS[match.group(1) or '=']
        clauses.append((comparator, parse_version(match.group(2))))
    return clauses


def satisfies(version: str, constraint: str) -> bool:
    parsed = parse_version(version)
    return all(compare(parsed, bound) for compare, bound in parse_constraint(constraint))


async def get_server_version(channel: CallChannel, catalog: SchemaCatalog, session: SessionContext) -> ServerVersion:
    handler = UnaryBridge()
    await invoke_rpc(channel, catalog, session, GET_VERSION_METHOD, handler)
    try:
        handler.raise_for_status()
    except RpcCallError as e:
        raise classify_rpc_error(e)
    return ServerVersion.from_dict(handler.response or {})


async def check_server_version(
    channel: CallChannel,
    catalog: SchemaCatalog,
    session: SessionContext,
    constraint: str = CORE_VERSION_CONSTRAINT,
) -> ServerVersion:
    """
    Fetch the server version and require it to satisfy ``constraint``.

    Returns:
        The server's version record

    Raises:
        VersionConstraintError: If the version is outside the supported range
    """
    server_version = await get_server_version(channel, catalog, session)
    if not satisfies(server_version.version, constraint):
        raise VersionConstraintError(CORE_COMPONENT_NAME, server_version.version, constraint)
    logger.debug(f"{CORE_COMPONENT_NAME} version {server_version.version} satisfies '{constraint}'")
    return server_version
