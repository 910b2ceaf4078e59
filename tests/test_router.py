"""Wire-level tests: message decoding, reply envelopes and the worker loop."""

import json

import pytest

from marginalia.api import NO_REPLY, RequestRouter
from marginalia.domain.models import ComputeExcerptEmbeddingsRequest, request_adapter
from marginalia.worker import EmbeddingWorker, read_json_lines


@pytest.fixture
def router(engine) -> RequestRouter:
    return RequestRouter(engine)


async def send_all(router, *messages):
    return [await router.handle(message) for message in messages]


async def seed(router):
    await send_all(
        router,
        {"method": "processNewExcerpts", "excerpts": [{"id": "a", "bookId": "b1"}, {"id": "b", "bookId": "b2"}]},
        {"method": "computeExcerptEmbeddings", "targets": [["a", "a cat"], ["b", "a cat and a dog"]]},
    )


def test_numeric_ids_become_strings():
    request = request_adapter.validate_python(
        {"method": "computeExcerptEmbeddings", "targets": [[12, "text"]], "requestId": "r1"}
    )

    assert isinstance(request, ComputeExcerptEmbeddingsRequest)
    assert request.targets == [("12", "text")]
    assert request.request_id == "r1"


def test_search_threshold_is_optional():
    request = request_adapter.validate_python({"method": "semanticSearch", "query": "cats"})

    assert request.threshold is None


async def test_compute_reply_envelope(router):
    reply = await router.handle(
        {"method": "computeExcerptEmbeddings", "targets": [[1, "a cat"], [2, "a dog"]], "requestId": "r-7"}
    )

    assert reply == {"method": "computeExcerptEmbeddings", "requestId": "r-7", "result": ["1", "2"]}


async def test_process_new_excerpts_reply(router):
    await seed(router)

    reply = await router.handle({"method": "processNewExcerpts", "excerpts": [{"id": "c"}]})

    assert reply["result"] == ["a", "b"]
    assert reply["requestId"] is None


async def test_neighbor_reply_shape(router):
    await seed(router)

    reply = await router.handle({"method": "requestExcerptNeighbors", "target": "a", "k": 3})

    target, pairs = reply["result"]
    assert target == "a"
    assert [pair[0] for pair in pairs] == ["b"]
    assert isinstance(pairs[0][1], float)


async def test_semantic_search_reply_shape(router):
    await seed(router)

    reply = await router.handle({"method": "semanticSearch", "query": "cats", "threshold": 0.1})

    query, pairs = reply["result"]
    assert query == "cats"
    assert {pair[0] for pair in pairs} == {"a", "b"}


async def test_semantic_rank_reply_shape(router):
    await seed(router)
    await router.handle({"method": "computeBookEmbeddings", "targets": [["b1", ["a"]]]})

    reply = await router.handle({"method": "requestSemanticRank", "bookId": "b1", "excerptIds": ["a"]})

    book_id, pairs = reply["result"]
    assert book_id == "b1"
    assert pairs[0][0] == "a"
    assert pairs[0][1] == pytest.approx(1.0)


async def test_aggregate_computation_replies_with_null(router):
    await seed(router)

    book_reply = await router.handle({"method": "computeBookEmbeddings", "targets": [["b1", ["a"]]]})
    author_reply = await router.handle({"method": "computeAuthorEmbeddings", "targets": [["au", ["a", "b"]]]})

    assert book_reply == {"method": "computeBookEmbeddings", "requestId": None, "result": None}
    assert author_reply["result"] is None


async def test_deletes_send_no_reply(router, engine):
    await seed(router)

    delete_excerpt = {"method": "deleteExcerpt", "targetId": "a", "bookId": "b1", "bookExcerptIds": ["a"]}
    assert await router.handle(delete_excerpt) is None
    assert await router.handle({"method": "deleteBook", "bookId": "b2", "bookExcerptIds": ["b"]}) is None
    await engine.close()

    assert len(engine.store.excerpts) == 0


@pytest.mark.parametrize(
    "message",
    [
        {"method": "noSuchMethod"},
        {"targets": []},
        {"method": "requestExcerptNeighbors"},
        {"method": "requestBookNeighbors", "target": "x", "k": -1},
    ],
)
async def test_invalid_messages_are_dropped(router, message):
    assert await router.handle(message) is None


async def test_failed_dispatch_sends_nothing(router, monkeypatch):
    async def explode(*args):
        raise RuntimeError("boom")

    monkeypatch.setattr(router.engine, "semantic_search", explode)

    assert await router.dispatch(
        request_adapter.validate_python({"method": "semanticSearch", "query": "x"})
    ) is NO_REPLY


async def test_read_json_lines_skips_noise():
    async def lines():
        for line in ['{"method": "a"}\n', "\n", "not json\n", "[1, 2]\n", '{"method": "b"}']:
            yield line

    messages = [message async for message in read_json_lines(lines())]

    assert messages == [{"method": "a"}, {"method": "b"}]


async def test_worker_serves_until_channel_closes(engine):
    worker = EmbeddingWorker(engine)
    replies = []

    async def inbound():
        yield {"method": "computeExcerptEmbeddings", "targets": [["a", "a cat"]], "requestId": "1"}
        yield {"method": "deleteExcerpt", "targetId": "zzz"}
        yield {"method": "bogus"}

    async def send(reply):
        replies.append(json.loads(json.dumps(reply)))

    await worker.serve(inbound(), send)

    assert replies == [{"method": "computeExcerptEmbeddings", "requestId": "1", "result": ["a"]}]
    assert engine.model.is_ready
