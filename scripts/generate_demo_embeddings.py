#!/usr/bin/env python3
"""Precompute embeddings for the demo corpus.

Reads ``demo.json`` (``{"excerpts": [{"id": ..., "text": ...}, ...]}``) and
writes the flat float32 blob the worker loads on ``setDemoEmbeddings``. The
excerpt order in the JSON file is the order of the vectors in the blob.
"""

import asyncio
import json
import sys
from pathlib import Path

from marginalia.core.config import settings
from marginalia.core.logging import get_logger, setup_logging
from marginalia.demo import DEMO_BATCH_SIZE, write_demo_embeddings
from marginalia.infrastructure.embeddings.backends import create_embedding_model

setup_logging()
logger = get_logger(__name__)


async def main() -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Precompute demo corpus embeddings")
    parser.add_argument(
        "--demo-file",
        type=Path,
        default=Path("assets/demo/demo.json"),
        help="JSON file with the demo excerpts",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=settings.demo_embeddings_path,
        help="Where to write the embedding blob",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=DEMO_BATCH_SIZE,
        help="Texts per model call",
    )
    args = parser.parse_args()

    try:
        excerpts = json.loads(args.demo_file.read_text(encoding="utf-8"))["excerpts"]
    except (OSError, KeyError, json.JSONDecodeError) as e:
        logger.error("demo_file_unreadable", path=str(args.demo_file), error=str(e))
        return 1

    model = create_embedding_model()
    args.output.parent.mkdir(parents=True, exist_ok=True)
    total = await write_demo_embeddings(
        model,
        [excerpt["text"] for excerpt in excerpts],
        args.output,
        batch_size=args.batch_size,
    )
    logger.info("demo_embeddings_done", excerpts=len(excerpts), vectors=total)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
