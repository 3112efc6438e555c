"""Test model management and engine endpoints."""

import json

import pytest
from httpx import AsyncClient


def sse_payloads(body: str) -> list[dict]:
    return [
        json.loads(block[len("data: "):])
        for block in body.split("\n\n")
        if block.startswith("data: ")
    ]


async def download(client: AsyncClient, model_id: str = "test-model") -> list[dict]:
    response = await client.post(f"/api/models/{model_id}/download")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    return sse_payloads(response.text)


@pytest.mark.asyncio
async def test_list_models(client: AsyncClient):
    response = await client.get("/api/models")
    assert response.status_code == 200
    data = response.json()

    assert data["version"] == 2
    assert data["recommended_id"] == "test-model"
    assert data["selected_id"] == "test-model"
    model = data["models"][0]
    assert model["id"] == "test-model"
    assert model["name"] == "Test Model"
    assert model["downloaded"] is False
    assert model["loaded"] is False
    assert model["download_path"] is None


@pytest.mark.asyncio
async def test_download_streams_progress(client: AsyncClient, services, gguf_bytes):
    events = await download(client)

    statuses = [event["status"] for event in events]
    assert statuses[0] == "starting"
    assert statuses[-1] == "complete"
    assert "progress" in statuses
    progress = [event for event in events if event["status"] == "progress"]
    assert progress[-1]["downloaded_bytes"] == len(gguf_bytes)
    assert progress[-1]["total_bytes"] == len(gguf_bytes)
    assert events[-1]["selected"] is True

    path = services.store.path_for("test-model.gguf")
    assert path.read_bytes() == gguf_bytes

    data = (await client.get("/api/models")).json()
    assert data["models"][0]["downloaded"] is True
    assert data["models"][0]["download_path"] == str(path)

    status = (await client.get("/api/models/download")).json()
    assert status["state"] == "completed"
    assert status["model_id"] == "test-model"


@pytest.mark.asyncio
async def test_download_twice_conflicts(client: AsyncClient):
    await download(client)

    response = await client.post("/api/models/test-model/download")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_download_unknown_model(client: AsyncClient):
    response = await client.post("/api/models/nope/download")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_download_status_idle(client: AsyncClient):
    response = await client.get("/api/models/download")
    assert response.json()["state"] == "idle"

    response = await client.post("/api/models/download/cancel")
    assert response.json() == {"cancelled": False}


@pytest.mark.asyncio
async def test_select_requires_download(client: AsyncClient):
    response = await client.post("/api/models/test-model/select")
    assert response.status_code == 400

    await download(client)
    response = await client.post("/api/models/test-model/select")
    assert response.status_code == 200
    assert response.json()["status"] == "selected"


@pytest.mark.asyncio
async def test_load_and_unload(client: AsyncClient, services):
    response = await client.post("/api/engine/load")
    assert response.status_code == 400

    await download(client)
    response = await client.post("/api/engine/load", json={"model_id": "test-model"})
    assert response.status_code == 200
    data = response.json()
    assert data["phase"] == "ready"
    assert data["info"]["architecture"] == "llama"

    models = (await client.get("/api/models")).json()
    assert models["models"][0]["loaded"] is True

    # Loading the same model again is a no-op
    response = await client.post("/api/engine/load")
    assert response.status_code == 200
    assert len(services.engine.header.metadata) == 3

    response = await client.post("/api/engine/unload")
    assert response.json()["phase"] == "unloaded"

    status = (await client.get("/api/engine/status")).json()
    assert status["phase"] == "unloaded"
    assert status["model_path"] is None


@pytest.mark.asyncio
async def test_load_corrupt_file_is_server_error(client: AsyncClient, services):
    services.store.path_for("test-model.gguf").write_bytes(b"not a model")
    await services.get_catalog()

    response = await client.post("/api/engine/load")
    assert response.status_code == 500
    assert "Invalid model file" in response.json()["detail"]

    status = (await client.get("/api/engine/status")).json()
    assert status["phase"] == "error"


@pytest.mark.asyncio
async def test_delete_refused_while_loaded(client: AsyncClient):
    await download(client)
    await client.post("/api/engine/load")

    response = await client.delete("/api/models/test-model")
    assert response.status_code == 409

    await client.post("/api/engine/unload")
    response = await client.delete("/api/models/test-model")
    assert response.status_code == 200

    models = (await client.get("/api/models")).json()
    assert models["models"][0]["downloaded"] is False


@pytest.mark.asyncio
async def test_delete_missing_file(client: AsyncClient):
    response = await client.delete("/api/models/test-model")
    assert response.status_code == 404
