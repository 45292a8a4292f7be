"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Memorygrams are stored as `Memorygram` vertices keyed by an `id` property. Relationships are edges
whose label is the relationship type and which carry their own `id` property, independent of the
backend's edge identity. Neptune cannot hold list properties, so embedding vectors are stored as
JSON strings and coerced back to float lists on read.
"""

import json
from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from ..models.core import ASSOCIATED_WITH, EmbeddingSpace, GraphRelationship, Memorygram, MemorygramType, new_id
from .config import NeptuneConfig
from .errors import MnemosyneError, StoreError
from .logging_config import get_logger
from .timestamp_utils import to_datetime, to_float_list, to_int, to_iso_str

logger = get_logger(__name__)

MEMORYGRAM_LABEL = 'Memorygram'

# Optional vertex properties; a None value removes the property on upsert
OPTIONAL_VERTEX_PROPERTIES = ('subtype', 'chat_id', 'previous_memorygram_id', 'next_memorygram_id', 'sequence')


class NeptuneError(StoreError):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except MnemosyneError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _value(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """Read a property from a value map, unwrapping the single-element lists vertices return."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return default if value is None else value


def _to_bool(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


def record_to_memorygram(data: Dict[Any, Any]) -> Memorygram:
    """Build a Memorygram from a vertex value map."""
    sequence = _value(data, 'sequence')
    return Memorygram(id=str(_value(data, 'id', '')),
                      content=_value(data, 'content', ''),
                      type=MemorygramType.parse(_value(data, 'type')),
                      subtype=_value(data, 'subtype'),
                      topical_embedding=to_float_list(_value(data, 'topical_embedding'), 'topical_embedding'),
                      content_embedding=to_float_list(_value(data, 'content_embedding'), 'content_embedding'),
                      context_embedding=to_float_list(_value(data, 'context_embedding'), 'context_embedding'),
                      metadata_embedding=to_float_list(_value(data, 'metadata_embedding'), 'metadata_embedding'),
                      source=_value(data, 'source', ''),
                      timestamp=to_int(_value(data, 'timestamp'), 0),
                      created_at=to_datetime(_value(data, 'created_at'), 'created_at'),
                      updated_at=to_datetime(_value(data, 'updated_at'), 'updated_at'),
                      chat_id=_value(data, 'chat_id'),
                      previous_memorygram_id=_value(data, 'previous_memorygram_id'),
                      next_memorygram_id=_value(data, 'next_memorygram_id'),
                      sequence=to_int(sequence) if sequence is not None else None)


def record_to_relationship(row: Dict[str, Any]) -> GraphRelationship:
    """Build a GraphRelationship from a projected edge row (label, props, from_id, to_id)."""
    props = row.get('props') or {}
    return GraphRelationship(id=str(_value(props, 'id', '')),
                             from_memorygram_id=str(row.get('from_id', '')),
                             to_memorygram_id=str(row.get('to_id', '')),
                             relationship_type=str(row.get('label', '')),
                             weight=float(_value(props, 'weight', 0.0)),
                             properties=_value(props, 'properties'),
                             is_active=_to_bool(_value(props, 'is_active'), True),
                             created_at=to_datetime(_value(props, 'created_at'), 'created_at'),
                             updated_at=to_datetime(_value(props, 'updated_at'), 'updated_at'))


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig, g=None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Optional pre-built traversal source; skips connecting when given
        """
        self.config = config
        self.connection = None
        self.g = g
        if self.g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        # Build WebSocket connection string
        scheme = 'wss' if self.config.use_iam else 'ws'
        conn_string = f'{scheme}://{self.config.endpoint}:{self.config.port}/gremlin'

        headers = None
        if self.config.use_iam:
            # Get AWS credentials
            credentials = Session().get_credentials()
            if credentials is None:
                raise NeptuneError('No AWS credentials found')
            creds = credentials.get_frozen_credentials()

            # Get region
            region = Session().region_name or self.config.region or 'us-east-1'

            # Create signed request for WebSocket connection
            request = AWSRequest(method='GET', url=conn_string, data=None)
            SigV4Auth(creds, 'neptune-db', region).add_auth(request)
            headers = request.headers.items()

        # Initialize Gremlin connection
        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=headers,
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))

        try:
            self.g = traversal().with_remote(self.connection)
        except Exception:
            self.g = traversal().withRemote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    def _memorygram(self, memorygram_id: str):
        return self.g.V().has(MEMORYGRAM_LABEL, 'id', memorygram_id)

    @staticmethod
    def _project_edges(edges):
        return edges.project('label', 'props', 'from_id', 'to_id')\
            .by(__.label())\
            .by(__.value_map())\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))

    # Memorygram vertices

    @retry_on_connection_error
    def upsert_memorygram(self, memorygram: Memorygram) -> Optional[Memorygram]:
        """
        Merge a memorygram vertex keyed by id.

        CreatedAt is only set when the vertex is first created; every other field is overwritten
        and UpdatedAt is refreshed on each call.

        Args:
            memorygram: Memorygram to persist

        Returns:
            The memorygram as read back from the graph, or None if it could not be read back
        """
        now = to_iso_str()

        t = self._memorygram(memorygram.id)\
            .fold()\
            .coalesce(__.unfold(),
                      __.add_v(MEMORYGRAM_LABEL).property('id', memorygram.id).property('created_at', now))\
            .property(Cardinality.single, 'content', memorygram.content)\
            .property(Cardinality.single, 'type', MemorygramType.parse(memorygram.type).value)\
            .property(Cardinality.single, 'source', memorygram.source or '')\
            .property(Cardinality.single, 'timestamp', int(memorygram.timestamp))\
            .property(Cardinality.single, 'updated_at', now)

        for space in EmbeddingSpace:
            t = t.property(Cardinality.single, space.field_name, json.dumps(list(memorygram.embedding(space))))

        unset = []
        for name in OPTIONAL_VERTEX_PROPERTIES:
            value = getattr(memorygram, name)
            if value is None:
                unset.append(name)
            else:
                t = t.property(Cardinality.single, name, value)

        t.iterate()
        if unset:
            self._memorygram(memorygram.id).properties(*unset).drop().iterate()
        logger.debug(f'Upserted memorygram vertex: {memorygram.id}')
        return self.get_memorygram(memorygram.id)

    @retry_on_connection_error
    def get_memorygram(self, memorygram_id: str) -> Optional[Memorygram]:
        """
        Load a memorygram vertex.

        Args:
            memorygram_id: Memorygram id

        Returns:
            Memorygram, or None if no vertex has the id
        """
        rows = self._memorygram(memorygram_id).value_map(True).to_list()
        if not rows:
            logger.debug(f'Memorygram not found: {memorygram_id}')
            return None
        return record_to_memorygram(rows[0])

    @retry_on_connection_error
    def memorygram_exists(self, memorygram_id: str) -> bool:
        return self._memorygram(memorygram_id).count().next() > 0

    @retry_on_connection_error
    def get_memorygrams_by_subtype(self, subtype: str) -> List[Memorygram]:
        rows = self.g.V().has(MEMORYGRAM_LABEL, 'subtype', subtype).value_map(True).to_list()
        return [record_to_memorygram(row) for row in rows]

    @retry_on_connection_error
    def get_chat_roots(self) -> List[Memorygram]:
        """
        Memorygrams that start a thread: a subtype is set and no previous memorygram is linked.

        Returns:
            Memorygrams ordered by Timestamp, most recent first
        """
        rows = self.g.V().has_label(MEMORYGRAM_LABEL)\
            .has('subtype')\
            .has_not('previous_memorygram_id')\
            .value_map(True).to_list()
        memorygrams = [record_to_memorygram(row) for row in rows]
        memorygrams.sort(key=lambda m: m.timestamp, reverse=True)
        return memorygrams

    # Relationship edges

    @retry_on_connection_error
    def create_relationship(self, relationship: GraphRelationship) -> Optional[GraphRelationship]:
        """
        Add a new edge between two existing memorygram vertices.

        Always adds a new edge, even when an edge of the same type already joins the same pair.

        Args:
            relationship: Relationship to create; its id becomes the edge's id property

        Returns:
            The relationship as read back from the graph
        """
        now = to_iso_str()
        t = self._memorygram(relationship.from_memorygram_id)\
            .add_e(relationship.relationship_type)\
            .to(__.V().has(MEMORYGRAM_LABEL, 'id', relationship.to_memorygram_id))\
            .property('id', relationship.id)\
            .property('weight', float(relationship.weight))\
            .property('is_active', bool(relationship.is_active))\
            .property('created_at', now)\
            .property('updated_at', now)

        if relationship.properties is not None:
            t = t.property('properties', relationship.properties)

        t.iterate()
        logger.debug(f'Created {relationship.relationship_type} relationship: {relationship.id}')
        return self.get_relationship(relationship.id)

    @retry_on_connection_error
    def upsert_association(self, from_id: str, to_id: str, weight: float) -> None:
        """
        Merge the single ASSOCIATED_WITH edge between two vertices, overwriting its weight.

        Args:
            from_id: Source memorygram id
            to_id: Target memorygram id
            weight: Association weight
        """
        now = to_iso_str()
        self._memorygram(from_id).as_('a')\
            .V().has(MEMORYGRAM_LABEL, 'id', to_id)\
            .coalesce(__.in_e(ASSOCIATED_WITH).where(__.out_v().as_('a')),
                      __.add_e(ASSOCIATED_WITH).from_('a')
                      .property('id', new_id())
                      .property('is_active', True)
                      .property('created_at', now))\
            .property('weight', float(weight))\
            .property('updated_at', now)\
            .iterate()
        logger.debug(f'Upserted association {from_id} -> {to_id} with weight {weight}')

    @retry_on_connection_error
    def get_relationship(self, relationship_id: str) -> Optional[GraphRelationship]:
        rows = self._project_edges(self.g.E().has('id', relationship_id)).to_list()
        if not rows:
            logger.debug(f'Relationship not found: {relationship_id}')
            return None
        return record_to_relationship(rows[0])

    @retry_on_connection_error
    def update_relationship(self,
                            relationship_id: str,
                            weight: Optional[float] = None,
                            properties: Optional[str] = None,
                            is_active: Optional[bool] = None) -> Optional[GraphRelationship]:
        """
        Partially update an edge. Only the supplied fields change.

        Returns:
            The updated relationship, or None if no edge has the id
        """
        if self.g.E().has('id', relationship_id).count().next() == 0:
            logger.debug(f'Relationship not found for update: {relationship_id}')
            return None

        t = self.g.E().has('id', relationship_id)
        if weight is not None:
            t = t.property('weight', float(weight))
        if properties is not None:
            t = t.property('properties', properties)
        if is_active is not None:
            t = t.property('is_active', bool(is_active))
        t.property('updated_at', to_iso_str()).iterate()

        logger.debug(f'Updated relationship: {relationship_id}')
        return self.get_relationship(relationship_id)

    @retry_on_connection_error
    def delete_relationship(self, relationship_id: str) -> bool:
        """
        Drop an edge.

        Returns:
            True if the edge existed and was dropped, False otherwise
        """
        if self.g.E().has('id', relationship_id).count().next() == 0:
            return False
        self.g.E().has('id', relationship_id).drop().iterate()
        logger.debug(f'Deleted relationship: {relationship_id}')
        return True

    @retry_on_connection_error
    def get_relationships_for_memorygram(self,
                                         memorygram_id: str,
                                         include_incoming: bool = True,
                                         include_outgoing: bool = True) -> List[GraphRelationship]:
        rows = []
        if include_outgoing:
            rows.extend(self._project_edges(self._memorygram(memorygram_id).out_e().has('id')).to_list())
        if include_incoming:
            rows.extend(self._project_edges(self._memorygram(memorygram_id).in_e().has('id')).to_list())

        relationships = []
        seen_ids = set()
        for row in rows:
            relationship = record_to_relationship(row)
            if relationship.id not in seen_ids:
                seen_ids.add(relationship.id)
                relationships.append(relationship)
        return relationships

    @retry_on_connection_error
    def get_relationships_by_type(self, relationship_type: str) -> List[GraphRelationship]:
        rows = self._project_edges(self.g.E().has_label(relationship_type).has('id')).to_list()
        return [record_to_relationship(row) for row in rows]

    @retry_on_connection_error
    def find_relationships(self,
                           from_id: Optional[str] = None,
                           to_id: Optional[str] = None,
                           relationship_type: Optional[str] = None,
                           min_weight: Optional[float] = None,
                           max_weight: Optional[float] = None,
                           is_active: Optional[bool] = None) -> List[GraphRelationship]:
        """
        Scan edges matching every supplied predicate.

        Returns:
            Matching relationships
        """
        t = self.g.E().has_label(relationship_type) if relationship_type else self.g.E()
        t = t.has('id')
        if from_id:
            t = t.where(__.out_v().has('id', from_id))
        if to_id:
            t = t.where(__.in_v().has('id', to_id))
        if min_weight is not None:
            t = t.has('weight', P.gte(float(min_weight)))
        if max_weight is not None:
            t = t.has('weight', P.lte(float(max_weight)))
        if is_active is not None:
            t = t.has('is_active', bool(is_active))

        rows = self._project_edges(t).to_list()
        return [record_to_relationship(row) for row in rows]

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        # Simple query to test connectivity
        self.g.V().limit(1).count().next()
        return True
