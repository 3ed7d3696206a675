#!/usr/bin/env python3
"""
Load pre-chunked clinical records into a running ChartRAG API.

Reads a JSON Lines file where every line is one chunk:

    {"chunk_id": "...", "artifact_id": "...", "patient_id": "...",
     "content": "...", "embedding": [...], "metadata": {...}}

and posts them to POST /api/v1/documents in batches.

Run: python scripts/load_chunks.py chunks.jsonl --url http://localhost:8000
"""

import argparse
import json
import logging
import sys
from collections.abc import Iterator
from pathlib import Path

import httpx

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


def read_chunks(path: Path) -> Iterator[dict]:
    """Yield chunk records, skipping blank lines. Bad JSON names the line."""
    with path.open(encoding="utf-8") as f:
        for line_no, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{line_no}: invalid JSON ({e.msg})") from e


def batched(records: Iterator[dict], size: int) -> Iterator[list[dict]]:
    batch: list[dict] = []
    for record in records:
        batch.append(record)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def load(path: Path, url: str, batch_size: int = DEFAULT_BATCH_SIZE, client: httpx.Client | None = None) -> int:
    """Post every batch and return the number of chunks indexed."""
    owns_client = client is None
    client = client or httpx.Client(base_url=url, timeout=60.0)
    total = 0
    try:
        for i, batch in enumerate(batched(read_chunks(path), batch_size), start=1):
            response = client.post("/api/v1/documents", json={"chunks": batch})
            response.raise_for_status()
            indexed = response.json()["indexed"]
            total += indexed
            logger.info("Batch %d: indexed %d chunks (total %d)", i, indexed, total)
    finally:
        if owns_client:
            client.close()
    return total


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0])
    parser.add_argument("path", type=Path, help="JSON Lines file of chunks")
    parser.add_argument("--url", default="http://localhost:8000")
    parser.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    args = parser.parse_args()

    print("=" * 60)
    print("ChartRAG Chunk Loader")
    print("=" * 60)
    try:
        total = load(args.path, args.url, args.batch_size)
    except (ValueError, httpx.HTTPError) as e:
        print(f"ERROR: {e}")
        return 1
    print(f"Indexed {total} chunks.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
