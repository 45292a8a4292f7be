"""
Shared fixtures: in-memory stand-ins for the Neptune and OpenSearch clients, plus fake Bedrock clients.
"""

import copy
import math
from datetime import timedelta
from typing import Dict, List, Optional

import pytest

from mnemosyne.models.core import ASSOCIATED_WITH, EmbeddingSpace, GraphRelationship, Memorygram, MemorygramType, new_id
from mnemosyne.services.chat_history import ChatHistoryService
from mnemosyne.services.graph_store import GraphStore
from mnemosyne.services.memory_service import MemoryService
from mnemosyne.services.pipelines_service import PipelinesService
from mnemosyne.utils.errors import UpstreamError
from mnemosyne.utils.pipeline_storage import FilePipelinesRepository
from mnemosyne.utils.timestamp_utils import utc_now

DIMENSION = 8


class _Clock:
    """Strictly increasing timestamps so audit-field ordering is deterministic."""

    def __init__(self):
        self.last = utc_now()

    def now(self):
        self.last = max(utc_now(), self.last + timedelta(microseconds=1))
        return self.last


class DummyNeptuneClient:
    """In-memory NeptuneClient with the same public methods; safe to call from worker threads."""

    def __init__(self):
        self.vertices: Dict[str, Memorygram] = {}
        self.edges: Dict[str, GraphRelationship] = {}
        self.clock = _Clock()
        self.healthy = True

    def upsert_memorygram(self, memorygram: Memorygram) -> Optional[Memorygram]:
        stored = copy.deepcopy(memorygram)
        now = self.clock.now()
        existing = self.vertices.get(memorygram.id)
        stored.created_at = existing.created_at if existing else now
        stored.updated_at = now
        self.vertices[stored.id] = stored
        return copy.deepcopy(stored)

    def get_memorygram(self, memorygram_id: str) -> Optional[Memorygram]:
        stored = self.vertices.get(memorygram_id)
        return copy.deepcopy(stored) if stored else None

    def memorygram_exists(self, memorygram_id: str) -> bool:
        return memorygram_id in self.vertices

    def get_memorygrams_by_subtype(self, subtype: str) -> List[Memorygram]:
        return [copy.deepcopy(m) for m in list(self.vertices.values()) if m.subtype == subtype]

    def get_chat_roots(self) -> List[Memorygram]:
        roots = [copy.deepcopy(m) for m in list(self.vertices.values()) if m.subtype and not m.previous_memorygram_id]
        return sorted(roots, key=lambda m: m.timestamp, reverse=True)

    def create_relationship(self, relationship: GraphRelationship) -> Optional[GraphRelationship]:
        stored = copy.deepcopy(relationship)
        stored.created_at = stored.updated_at = self.clock.now()
        self.edges[stored.id] = stored
        return copy.deepcopy(stored)

    def upsert_association(self, from_id: str, to_id: str, weight: float) -> None:
        for edge in list(self.edges.values()):
            if edge.relationship_type == ASSOCIATED_WITH and edge.from_memorygram_id == from_id and edge.to_memorygram_id == to_id:
                edge.weight = weight
                edge.updated_at = self.clock.now()
                return
        self.create_relationship(GraphRelationship(from_id, to_id, ASSOCIATED_WITH, weight))

    def get_relationship(self, relationship_id: str) -> Optional[GraphRelationship]:
        edge = self.edges.get(relationship_id)
        return copy.deepcopy(edge) if edge else None

    def update_relationship(self, relationship_id, weight=None, properties=None, is_active=None):
        edge = self.edges.get(relationship_id)
        if edge is None:
            return None
        if weight is not None:
            edge.weight = weight
        if properties is not None:
            edge.properties = properties
        if is_active is not None:
            edge.is_active = is_active
        edge.updated_at = self.clock.now()
        return copy.deepcopy(edge)

    def delete_relationship(self, relationship_id: str) -> bool:
        return self.edges.pop(relationship_id, None) is not None

    def get_relationships_for_memorygram(self, memorygram_id, include_incoming=True, include_outgoing=True):
        return [
            copy.deepcopy(e) for e in list(self.edges.values()) if (include_outgoing and e.from_memorygram_id == memorygram_id) or
            (include_incoming and e.to_memorygram_id == memorygram_id)
        ]

    def get_relationships_by_type(self, relationship_type: str) -> List[GraphRelationship]:
        return [copy.deepcopy(e) for e in list(self.edges.values()) if e.relationship_type == relationship_type]

    def find_relationships(self, from_id=None, to_id=None, relationship_type=None, min_weight=None, max_weight=None, is_active=None):
        matches = []
        for edge in list(self.edges.values()):
            if from_id and edge.from_memorygram_id != from_id:
                continue
            if to_id and edge.to_memorygram_id != to_id:
                continue
            if relationship_type and edge.relationship_type != relationship_type:
                continue
            if min_weight is not None and edge.weight < min_weight:
                continue
            if max_weight is not None and edge.weight > max_weight:
                continue
            if is_active is not None and edge.is_active != is_active:
                continue
            matches.append(copy.deepcopy(edge))
        return matches

    def health_check(self) -> bool:
        return self.healthy


def _cosine(a: List[float], b: List[float]) -> float:
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return sum(x * y for x, y in zip(a, b)) / norm if norm else 0.0


class DummyOpenSearchClient:
    """In-memory OpenSearchClient: one dict of documents per embedding space, brute-force cosine search."""

    def __init__(self):
        self.indexes: Dict[EmbeddingSpace, Dict[str, dict]] = {space: {} for space in EmbeddingSpace}
        self.searches: List[dict] = []
        self.healthy = True

    def ensure_indexes(self):
        return {space.value: 'exists' for space in EmbeddingSpace}

    def index_memorygram(self, memorygram: Memorygram) -> List[EmbeddingSpace]:
        indexed = []
        for space in EmbeddingSpace:
            vector = memorygram.embedding(space)
            if not vector:
                continue
            document = memorygram.to_dict()
            document['embedding'] = list(vector)
            self.indexes[space][memorygram.id] = document
            indexed.append(space)
        return indexed

    def vector_search(self, query_vector, space, top_k=20, exclude_chat_id=None):
        self.searches.append({'space': space, 'top_k': top_k, 'exclude_chat_id': exclude_chat_id})
        hits = []
        for doc_id, document in list(self.indexes[space].items()):
            if exclude_chat_id and document.get('chat_id') == exclude_chat_id:
                continue
            source = {k: v for k, v in document.items() if k != 'embedding'}
            hits.append({'id': doc_id, 'score': _cosine(query_vector, document['embedding']), 'document': source})
        hits.sort(key=lambda h: h['score'], reverse=True)
        return hits[:top_k]

    def health_check(self) -> bool:
        return self.healthy


def fake_vector(text: str) -> List[float]:
    """Deterministic bag-of-characters embedding."""
    vector = [0.0] * DIMENSION
    for ch in text.lower():
        if ch.isalnum():
            vector[ord(ch) % DIMENSION] += 1.0
    vector[0] += 0.001
    return vector


class FakeEmbed:
    def __init__(self):
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None

    def get_embedding(self, text: str, input_type: str = 'search_document') -> List[float]:
        self.calls.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        if not text or not text.strip():
            raise UpstreamError('Cannot embed empty text')
        return fake_vector(text)

    def get_query_embedding(self, text: str) -> List[float]:
        return self.get_embedding(text, input_type='search_query')

    def health_check(self) -> bool:
        return True


class FakeLLM:
    def __init__(self, reply: str = 'Hi there'):
        self.reply = reply
        self.calls: List[dict] = []

    def generate_completion(self, messages, role='master', system_prompt='', max_tokens=None, temperature=None) -> str:
        self.calls.append({'messages': messages, 'role': role, 'system_prompt': system_prompt})
        return self.reply

    def health_check(self) -> bool:
        return True


@pytest.fixture
def neptune():
    return DummyNeptuneClient()


@pytest.fixture
def opensearch():
    return DummyOpenSearchClient()


@pytest.fixture
def store(neptune, opensearch):
    return GraphStore(neptune=neptune, opensearch=opensearch)


@pytest.fixture
def embed():
    return FakeEmbed()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def memory_service(store, embed):
    return MemoryService(store=store, embed=embed, embedding_mode='shared')


@pytest.fixture
def chat_history(memory_service):
    return ChatHistoryService(memory_service)


@pytest.fixture
def pipelines(tmp_path):
    return PipelinesService(FilePipelinesRepository(str(tmp_path / 'pipelines')))


@pytest.fixture
def make_memorygram():

    def _make(content='Hello world', memorygram_type='UserInput', **fields):
        return Memorygram(content=content, type=MemorygramType.parse(memorygram_type), **fields)

    return _make


@pytest.fixture
def unknown_id():
    return new_id()


@pytest.fixture
def saved(store, make_memorygram):
    """Upsert a memorygram straight into the store with fake vectors in every space."""

    def _save(content='Hello world', memorygram_type='UserInput', **fields):
        memorygram = make_memorygram(content, memorygram_type, **fields)
        for space in EmbeddingSpace:
            memorygram.set_embedding(space, fake_vector(content))
        return store.upsert_memorygram(memorygram)

    return _save
