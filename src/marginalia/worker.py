"""Embedding worker process.

Reads one JSON request per line on stdin and writes one JSON reply per line on
stdout. Requests are handled concurrently; replies carry the request's
``method`` and ``requestId`` so the host can match them up.
"""

from __future__ import annotations

import json
import sys
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

import anyio

from marginalia.api.router import RequestRouter
from marginalia.core.config import Settings, settings
from marginalia.core.logging import get_logger, setup_logging
from marginalia.infrastructure.embeddings.cache import KeyValueBackend
from marginalia.services.query_engine import QueryEngine

logger = get_logger(__name__)

SendReply = Callable[[dict[str, Any]], Awaitable[None]]


class EmbeddingWorker:
    """Single logical worker: one engine, one inbound channel."""

    def __init__(self, engine: QueryEngine, router: RequestRouter | None = None):
        self.engine = engine
        self.router = router or RequestRouter(engine)

    @classmethod
    def from_settings(cls, config: Settings | None = None, backend: KeyValueBackend | None = None) -> EmbeddingWorker:
        from marginalia.infrastructure.embeddings.backends import create_embedding_model

        config = config or settings
        model = create_embedding_model(config)
        return cls(QueryEngine.create(model, backend=backend, config=config))

    async def serve(self, inbound: AsyncIterable[Mapping[str, Any]], send: SendReply) -> None:
        """Handle every inbound message until the channel closes.

        Model initialization starts immediately but nothing waits on it here;
        only requests that need the model do.
        """
        self.engine.start()
        logger.info("worker_started")
        try:
            async with anyio.create_task_group() as tg:
                async for message in inbound:
                    tg.start_soon(self._handle_one, message, send)
        finally:
            await self.engine.close()
            logger.info("worker_stopped")

    async def _handle_one(self, message: Mapping[str, Any], send: SendReply) -> None:
        reply = await self.router.handle(message)
        if reply is not None:
            await send(reply)

    async def run_stdio(self) -> None:
        stdin = anyio.wrap_file(sys.stdin)
        stdout = anyio.wrap_file(sys.stdout)
        write_lock = anyio.Lock()

        async def send(reply: dict[str, Any]) -> None:
            async with write_lock:
                await stdout.write(json.dumps(reply) + "\n")
                await stdout.flush()

        await self.serve(read_json_lines(stdin), send)


async def read_json_lines(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Parse a stream of JSON lines, skipping blank and malformed ones."""
    async for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning("malformed_message", error=str(e))
            continue
        if not isinstance(message, dict):
            logger.warning("malformed_message", error="expected a JSON object")
            continue
        yield message


def main() -> None:
    setup_logging()
    worker = EmbeddingWorker.from_settings()
    anyio.run(worker.run_stdio)


if __name__ == "__main__":
    main()
