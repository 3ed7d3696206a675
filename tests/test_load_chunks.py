"""
Tests for the JSON Lines chunk loader script.
"""

import importlib.util
import json
from pathlib import Path

import httpx
import pytest

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "load_chunks.py"


@pytest.fixture(scope="module")
def loader():
    spec = importlib.util.spec_from_file_location("load_chunks", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def chunks_file(tmp_path):
    path = tmp_path / "chunks.jsonl"
    records = [
        {"chunk_id": f"c{i}", "artifact_id": "a1", "patient_id": "p1", "content": f"note {i}"}
        for i in range(5)
    ]
    path.write_text("\n".join(json.dumps(r) for r in records) + "\n\n", encoding="utf-8")
    return path


class TestReadChunks:
    @pytest.mark.unit
    def test_skips_blank_lines(self, loader, chunks_file):
        assert [r["chunk_id"] for r in loader.read_chunks(chunks_file)] == [
            "c0",
            "c1",
            "c2",
            "c3",
            "c4",
        ]

    @pytest.mark.unit
    def test_bad_line_reported(self, loader, tmp_path):
        path = tmp_path / "bad.jsonl"
        path.write_text('{"chunk_id": "ok"}\n{not json\n', encoding="utf-8")
        with pytest.raises(ValueError, match=":2:"):
            list(loader.read_chunks(path))

    @pytest.mark.unit
    def test_batched(self, loader):
        batches = list(loader.batched(iter(range(5)), 2))
        assert batches == [[0, 1], [2, 3], [4]]


class TestLoad:
    @pytest.mark.unit
    def test_posts_batches(self, loader, chunks_file):
        sizes = []

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/v1/documents"
            batch = json.loads(request.content)["chunks"]
            sizes.append(len(batch))
            return httpx.Response(201, json={"indexed": len(batch)})

        client = httpx.Client(base_url="http://chartrag", transport=httpx.MockTransport(handler))
        total = loader.load(chunks_file, "http://chartrag", batch_size=2, client=client)

        assert total == 5
        assert sizes == [2, 2, 1]

    @pytest.mark.unit
    def test_http_error_propagates(self, loader, chunks_file):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"detail": "vector index unavailable"})

        client = httpx.Client(base_url="http://chartrag", transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.HTTPStatusError):
            loader.load(chunks_file, "http://chartrag", client=client)
