"""
Tests for the link graph.
"""

import os
import tempfile

import numpy as np
import pytest

from mams.errors import ValidationError
from mams.links import LinkGraph
from mams.models import LinkType
from mams.store import MemoryStore

DIM = 4


def _fresh():
    tmp = tempfile.mkdtemp()
    store = MemoryStore(os.path.join(tmp, "test.db"), dimension=DIM)
    graph = LinkGraph(store)
    a = store.add_chunk("semantic_stm", "cause", np.ones(DIM), np.ones(DIM), "test")
    b = store.add_chunk("semantic_stm", "effect", np.ones(DIM), np.ones(DIM), "test")
    return store, graph, a, b


def test_no_links_yields_empty_lists():
    store, graph, a, b = _fresh()
    links = graph.get_links(a.id)
    assert links.outgoing == []
    assert links.incoming == []
    assert graph.get_links(12345).outgoing == []


def test_link_shows_on_both_ends():
    store, graph, a, b = _fresh()
    link = graph.create_link(a.id, b.id, "causal", 0.6, {"reason": "a led to b"})

    assert link.id is not None
    assert link.link_type == LinkType.CAUSAL
    out = graph.get_links(a.id)
    inc = graph.get_links(b.id)
    assert [ln.target_id for ln in out.outgoing] == [b.id]
    assert out.incoming == []
    assert [ln.source_id for ln in inc.incoming] == [a.id]
    assert inc.incoming[0].strength == pytest.approx(0.6)
    assert inc.incoming[0].metadata == {"reason": "a led to b"}


def test_find_link_either_direction():
    store, graph, a, b = _fresh()
    assert graph.find_link(a.id, b.id) is None
    graph.create_link(a.id, b.id)
    assert graph.find_link(a.id, b.id) is not None
    assert graph.find_link(b.id, a.id) is not None


def test_create_link_does_not_deduplicate():
    store, graph, a, b = _fresh()
    graph.create_link(a.id, b.id)
    graph.create_link(a.id, b.id)
    assert graph.count() == 2


@pytest.mark.parametrize("kwargs", [
    {"link_type": "friendship"},
    {"strength": float("inf")},
    {"metadata": {"unexpected": 1}},
])
def test_create_link_validation(kwargs):
    store, graph, a, b = _fresh()
    with pytest.raises(ValidationError):
        graph.create_link(a.id, b.id, **kwargs)
    assert graph.count() == 0


def test_links_outlive_evicted_chunks():
    store, graph, a, b = _fresh()
    graph.create_link(a.id, b.id, "temporal")
    store.delete_chunk(a.id)
    assert len(graph.get_links(b.id).incoming) == 1
    assert store.stats()["total_links"] == 1
