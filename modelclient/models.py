"""Schema-driven create/get/list/filter/update/delete of model resources."""

from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence

from common.constants import ID_MESSAGE, QUERY_MESSAGE, RAW_JSON_FIELD
from common.logging_config import get_logger
from common.protocol import IDRequest, Query
from common.types import (
    Convergence,
    FieldVisibility,
    OperationOutcome,
    ResourceInstance,
    ResourceRef,
    ResourceType,
)
from modelclient.bridge import UnaryBridge, invoke_rpc, load_raw_json
from modelclient.channel import CallChannel, GrpcCallChannel
from modelclient.coercion import build_predicates, coerce_fields, parse_query_set, predicate_to_element
from modelclient.exceptions import (
    AbortedError,
    FilterRequiredError,
    InvalidInputError,
    ModelCtlError,
    ModelNotFoundError,
    NoMatchError,
    ObjectReference,
    RpcCallError,
    UnknownModelStateError,
    classify_rpc_error,
)
from modelclient.poller import Connector, PollEvent, RetryPoller
from modelclient.schema import SchemaCatalog
from modelclient.session import SessionContext

logger = get_logger(__name__)

# Model state filter name -> Query kind
MODEL_STATES: Dict[str, str] = {
    'default': 'DEFAULT',
    'all': 'ALL',
    'dirty': 'SYNCHRONIZER_DIRTY_OBJECTS',
    'deleted': 'SYNCHRONIZER_DELETED_OBJECTS',
    'dirtypol': 'SYNCHRONIZER_DIRTY_POLICIES',
    'deletedpol': 'SYNCHRONIZER_DELETED_POLICIES',
}


class Prompter(Protocol):
    async def confirm(self, prompt: str) -> bool:
        ...


def model_state_kind(state: str) -> str:
    """
    Raises:
        UnknownModelStateError: If the state name is not recognized
    """
    try:
        return MODEL_STATES[state]
    except KeyError:
        raise UnknownModelStateError(state)


class ModelResourceClient:
    """
    Client for model resources described by a SchemaCatalog.

    Errors from the call channel are classified with the model/id/query they
    applied to and re-raised; nothing is downgraded.
    """

    def __init__(
        self,
        session: SessionContext,
        catalog: SchemaCatalog,
        channel: Optional[CallChannel] = None,
        connect: Optional[Connector] = None,
        prompter: Optional[Prompter] = None,
        observer: Optional[Callable[[PollEvent], None]] = None,
    ):
        self._session = session
        self._catalog = catalog
        self._channel = channel
        self._connect = connect if connect is not None else GrpcCallChannel.connect
        self._prompter = prompter
        self._observer = observer

    @property
    def catalog(self) -> SchemaCatalog:
        return self._catalog

    @property
    def session(self) -> SessionContext:
        return self._session

    async def channel(self) -> CallChannel:
        """The live channel, connecting lazily."""
        if self._channel is None:
            self._channel = await self._connect(self._session)
        return self._channel

    async def close(self) -> None:
        if self._channel is not None:
            channel, self._channel = self._channel, None
            await channel.close()

    async def _unary(
        self,
        channel: CallChannel,
        method: str,
        message_type: str,
        fields: Optional[Mapping[str, Any]],
        obj: ObjectReference,
    ) -> Dict[str, Any]:
        handler = UnaryBridge({message_type: fields} if fields is not None else None)
        await invoke_rpc(channel, self._catalog, self._session, method, handler)
        try:
            handler.raise_for_status()
        except RpcCallError as e:
            raise classify_rpc_error(e, obj)
        return handler.response or {}

    async def create(self, type_name: str, fields: Mapping[str, Any]) -> ResourceRef:
        """
        Create a model instance.

        Args:
            type_name: Model type, e.g. 'Slice'
            fields: Field values, as text or already typed

        Returns:
            Reference carrying the generated id (and uuid, when the model has one)
        """
        resource_type = self._catalog.resolve_type(type_name)
        typed = coerce_fields(resource_type, fields)
        response = await self._unary(
            await self.channel(),
            self._catalog.model_method('Create', type_name),
            resource_type.message_name,
            typed,
            ObjectReference(type_name),
        )
        ref = ResourceRef(model_name=type_name, id=int(response.get('id') or 0), uuid=response.get('uuid') or None)
        logger.info(f"Created {type_name} id={ref.id}")
        return ref

    async def _get_on(
        self,
        channel: CallChannel,
        resource_type: ResourceType,
        id: int,
        visibility: Optional[FieldVisibility],
    ) -> ResourceInstance:
        response = await self._unary(
            channel,
            self._catalog.model_method('Get', resource_type.name),
            ID_MESSAGE,
            IDRequest(id=id).to_dict(),
            ObjectReference(resource_type.name, id=id),
        )
        return ResourceInstance.from_message(resource_type, response, visibility)

    async def get(self, type_name: str, id: int, visibility: Optional[FieldVisibility] = None) -> ResourceInstance:
        """
        Raises:
            ModelNotFoundError: If no instance has this id
        """
        resource_type = self._catalog.resolve_type(type_name)
        return await self._get_on(await self.channel(), resource_type, id, visibility or FieldVisibility())

    async def _list_or_filter_on(
        self,
        channel: CallChannel,
        resource_type: ResourceType,
        queries: Mapping[str, str],
        visibility: Optional[FieldVisibility],
        kind: str,
    ) -> List[ResourceInstance]:
        type_name = resource_type.name
        if not queries and kind == 'DEFAULT':
            response = await self._unary(
                channel, self._catalog.model_method('List', type_name), '', None, ObjectReference(type_name)
            )
        else:
            predicates = build_predicates(resource_type, queries)
            query = Query(
                kind=kind,
                elements=[predicate_to_element(p, resource_type.find_field(p.name).kind) for p in predicates],
            )
            response = await self._unary(
                channel,
                self._catalog.model_method('Filter', type_name),
                QUERY_MESSAGE,
                query.to_dict(),
                ObjectReference(type_name, queries=dict(queries)),
            )
        return [ResourceInstance.from_message(resource_type, item, visibility) for item in response.get('items', [])]

    async def list_or_filter(
        self,
        type_name: str,
        queries: Optional[Mapping[str, str]] = None,
        visibility: Optional[FieldVisibility] = None,
        state: str = 'default',
    ) -> List[ResourceInstance]:
        """
        List every instance of a model, or those matching all of ``queries``.

        Args:
            type_name: Model type, e.g. 'Slice'
            queries: Field name -> '<operator><value>', e.g. {'id': '=1'}
            visibility: Which classified fields to project; repeated fields never are
            state: Model state filter, one of MODEL_STATES

        Returns:
            Instances in server order
        """
        kind = model_state_kind(state)
        resource_type = self._catalog.resolve_type(type_name)
        return await self._list_or_filter_on(
            await self.channel(), resource_type, queries or {}, visibility or FieldVisibility(), kind
        )

    async def _find_on(
        self,
        channel: CallChannel,
        resource_type: ResourceType,
        queries: Mapping[str, str],
        visibility: Optional[FieldVisibility],
    ) -> ResourceInstance:
        models = await self._list_or_filter_on(channel, resource_type, queries, visibility, 'DEFAULT')
        if not models:
            raise ModelNotFoundError(obj=ObjectReference(resource_type.name, queries=dict(queries)))
        return models[0]

    async def find(
        self,
        type_name: str,
        queries: Mapping[str, str],
        visibility: Optional[FieldVisibility] = None,
    ) -> ResourceInstance:
        """
        First instance matching ``queries``.

        Raises:
            ModelNotFoundError: If nothing matches
        """
        resource_type = self._catalog.resolve_type(type_name)
        return await self._find_on(await self.channel(), resource_type, queries, visibility or FieldVisibility())

    async def update(self, type_name: str, fields: Mapping[str, Any]) -> None:
        """
        Apply a partial field set to the instance named by ``fields['id']``.

        A '_json' entry carrying a serialized message is merged before the
        named fields are applied.
        """
        resource_type = self._catalog.resolve_type(type_name)
        typed = coerce_fields(resource_type, fields)
        merged = load_raw_json(typed[RAW_JSON_FIELD]) if RAW_JSON_FIELD in typed else {}
        merged.update((k, v) for k, v in typed.items() if k != RAW_JSON_FIELD)
        if 'id' not in merged:
            raise InvalidInputError(f"Update of {type_name} requires an id")
        id = int(merged['id'])
        await self._unary(
            await self.channel(),
            self._catalog.model_method('Update', type_name),
            resource_type.message_name,
            typed,
            ObjectReference(type_name, id=id),
        )
        logger.info(f"Updated {type_name} id={id}")

    async def delete(self, type_name: str, id: int) -> None:
        self._catalog.validate_resource_type(type_name)
        await self._unary(
            await self.channel(),
            self._catalog.model_method('Delete', type_name),
            ID_MESSAGE,
            IDRequest(id=id).to_dict(),
            ObjectReference(type_name, id=id),
        )
        logger.info(f"Deleted {type_name} id={id}")

    async def _confirm(self, prompt: str) -> bool:
        if self._session.assume_yes:
            return True
        if self._prompter is None:
            logger.warning(f"No prompter available to confirm: {prompt.strip()}")
            return False
        return await self._prompter.confirm(prompt)

    async def resolve_ids(
        self,
        type_name: str,
        ids: Optional[Sequence[int]] = None,
        filter_text: str = '',
        all: bool = False,
        verb: str = 'modify',
    ) -> List[int]:
        """
        Turn exactly one selector (explicit ids, a filter, or all) into ids.

        Selecting more than one instance through a filter or ``all`` asks for
        confirmation unless the session assumes yes.

        Raises:
            FilterRequiredError: Unless exactly one selector is given
            NoMatchError: If the filter selects nothing
            AbortedError: If the confirmation is declined
        """
        if sum((bool(ids), bool(filter_text), bool(all))) != 1:
            raise FilterRequiredError()

        if ids:
            self._catalog.validate_resource_type(type_name)
            return [int(i) for i in ids]

        queries = parse_query_set(filter_text, allow_inequality=True) if filter_text else {}
        models = await self.list_or_filter(type_name, queries)
        if not models:
            raise NoMatchError()
        if len(models) > 1:
            if not await self._confirm(f"Are you sure you want to {verb} {len(models)} models? [y/N] "):
                raise AbortedError()
        return [m.id for m in models]

    async def wait_for(
        self,
        type_name: str,
        convergence: Convergence,
        id: Optional[int] = None,
        queries: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        visibility: Optional[FieldVisibility] = None,
    ) -> ResourceInstance:
        """
        Poll an instance, selected by id or by queries, until it converges.

        Raises:
            InvalidInputError: Unless exactly one of id or queries is given
            DeadlineExceededError: If ``timeout`` expires first
        """
        if (id is None) == (not queries):
            raise InvalidInputError("Specify either an id or queries to wait for")

        resource_type = self._catalog.resolve_type(type_name)
        visibility = visibility or FieldVisibility()
        if id is not None:
            async def operation(channel: CallChannel) -> ResourceInstance:
                return await self._get_on(channel, resource_type, id, visibility)
        else:
            async def operation(channel: CallChannel) -> ResourceInstance:
                return await self._find_on(channel, resource_type, queries, visibility)

        poller = RetryPoller(self._session, self._connect, self._observer)
        channel, self._channel = self._channel, None
        self._channel, instance = await poller.poll(operation, convergence, timeout=timeout, channel=channel)
        return instance

    async def sync(self, type_name: str, ids: Sequence[int], timeout: Optional[float] = None) -> List[OperationOutcome]:
        """
        Wait for each instance to be enacted, reporting one outcome per id.
        """
        outcomes = []
        for id in ids:
            try:
                await self.wait_for(type_name, Convergence(until_enacted=True), id=id, timeout=timeout)
            except (ModelCtlError, RpcCallError) as e:
                outcomes.append(OperationOutcome(id=id, message=str(e), succeeded=False))
                continue
            outcomes.append(OperationOutcome(id=id, message='Enacted'))
        return outcomes

    async def update_many(
        self,
        type_name: str,
        ids: Sequence[int],
        fields: Mapping[str, Any],
    ) -> List[OperationOutcome]:
        """
        Apply the same field values to every id, reporting one outcome per id.
        """
        typed = coerce_fields(self._catalog.resolve_type(type_name), fields)
        outcomes = []
        for id in ids:
            try:
                await self.update(type_name, {**typed, 'id': id})
            except (ModelCtlError, RpcCallError) as e:
                outcomes.append(OperationOutcome(id=id, message=str(e), succeeded=False))
                continue
            outcomes.append(OperationOutcome(id=id, message='Updated'))
        return outcomes

    async def set_dirty_many(self, type_name: str, ids: Sequence[int]) -> List[OperationOutcome]:
        """
        Mark every id dirty so the synchronizers enact it again.

        An update carrying only the id changes no field but moves ``updated``
        past ``enacted`` on the server.
        """
        self._catalog.validate_resource_type(type_name)
        outcomes = []
        for id in ids:
            try:
                await self.update(type_name, {'id': id})
            except (ModelCtlError, RpcCallError) as e:
                outcomes.append(OperationOutcome(id=id, message=str(e), succeeded=False))
                continue
            outcomes.append(OperationOutcome(id=id, message='Dirtied'))
        return outcomes

    async def delete_many(self, type_name: str, ids: Sequence[int]) -> List[OperationOutcome]:
        outcomes = []
        for id in ids:
            try:
                await self.delete(type_name, id)
            except (ModelCtlError, RpcCallError) as e:
                outcomes.append(OperationOutcome(id=id, message=str(e), succeeded=False))
                continue
            outcomes.append(OperationOutcome(id=id, message='Deleted'))
        return outcomes
