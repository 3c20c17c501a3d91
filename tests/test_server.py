"""Tests for storyvoice.server — FastAPI routes.

Uses httpx.AsyncClient with ASGITransport.  The transport does not run
the application lifespan, so the fixtures start the coordinator and load
the bundled sample story themselves.
"""

import asyncio
import json

import httpx
import pytest

from storyvoice import __version__
from storyvoice.config import SAMPLE_STORY_PATH
from storyvoice.events.types import EngineEventType, ErrorType
from storyvoice.server.app import create_app
from storyvoice.story.loader import load_story

from conftest import wait_until


@pytest.fixture
async def app(coordinator):
    await coordinator.load_story(load_story(SAMPLE_STORY_PATH))
    return create_app(coordinator=coordinator, story_path=SAMPLE_STORY_PATH)


@pytest.fixture
async def async_client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


class TestQueries:
    async def test_health(self, async_client: httpx.AsyncClient):
        body = (await async_client.get("/health")).json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["story_loaded"] is True
        assert body["tts_backend"] == "fake"
        assert body["stt_state"] == "active"
        assert "en-US" in body["stt_languages"]

    async def test_state(self, async_client: httpx.AsyncClient):
        body = (await async_client.get("/state")).json()
        assert body["story"]["title"] == "The Lighthouse at Gull Point"
        assert body["current_node"]["id"] == "shore"
        assert body["progress"]["visited_nodes"] == ["shore"]
        assert body["is_playing"] is False
        assert body["errors"] == []

    async def test_voices(self, async_client: httpx.AsyncClient, coordinator):
        await wait_until(lambda: coordinator.selected_voice is not None)
        body = (await async_client.get("/voices")).json()
        assert [v["name"] for v in body["voices"]] == ["Amelie", "Rachel", "Daniel"]
        assert body["selected"] == "en-1"


class TestNavigation:
    async def test_choice_by_id(self, async_client: httpx.AsyncClient):
        response = await async_client.post("/choice", json={"choice_id": "cottage"})
        assert response.json() == {"status": "ok", "node_id": "cottage"}

    async def test_choice_by_index(self, async_client: httpx.AsyncClient):
        response = await async_client.post("/choice", json={"index": 0})
        assert response.json() == {"status": "ok", "node_id": "lamp_room"}

    async def test_choice_index_out_of_range(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/choice", json={"index": 9})).json()
        assert body["status"] == "error"

    async def test_choice_index_must_be_int(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/choice", json={"index": "0"})).json()
        assert body["reason"] == "index must be an integer"

    async def test_unknown_choice(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/choice", json={"choice_id": "fly"})).json()
        assert body == {"status": "error", "reason": "unknown choice"}

    async def test_choice_requires_a_selector(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/choice", json={})).json()
        assert body["reason"] == "choice_id or index is required"

    async def test_goto_node(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/node", json={"node_id": "keeper"})).json()
        assert body == {"status": "ok", "node_id": "keeper"}

    async def test_goto_unknown_node_reports_error(
        self, async_client: httpx.AsyncClient, coordinator
    ):
        body = (await async_client.post("/node", json={"node_id": "moon"})).json()
        assert body["status"] == "error"
        state = (await async_client.get("/state")).json()
        assert state["errors"][-1]["type"] == "STORY_ERROR"
        assert state["errors"][-1]["message"] == "Node moon not found"

    async def test_restart_and_reset(self, async_client: httpx.AsyncClient):
        await async_client.post("/choice", json={"choice_id": "climb"})
        assert (await async_client.post("/restart")).json()["node_id"] == "shore"
        await async_client.post("/choice", json={"choice_id": "climb"})
        assert (await async_client.post("/reset")).json()["node_id"] == "shore"

    async def test_invalid_json(self, async_client: httpx.AsyncClient):
        response = await async_client.post(
            "/choice", content=b"not json", headers={"content-type": "application/json"}
        )
        assert response.json() == {"status": "error", "reason": "invalid json"}


class TestPlaybackAndListening:
    async def test_toggle_playback(self, async_client: httpx.AsyncClient, narration_backend):
        body = (await async_client.post("/playback/toggle")).json()
        assert body == {"status": "ok", "playing": True}
        await wait_until(lambda: narration_backend.current is not None)
        assert narration_backend.current.text.startswith("Rain lashes")

        body = (await async_client.post("/playback/toggle")).json()
        assert body == {"status": "ok", "playing": False}
        assert narration_backend.current is None

    async def test_toggle_listening(self, async_client: httpx.AsyncClient, recognition_backend):
        body = (await async_client.post("/listening/toggle")).json()
        assert body == {"status": "ok", "listening": True}
        assert len(recognition_backend.runs) == 1

    async def test_stop(self, async_client: httpx.AsyncClient, coordinator):
        await async_client.post("/playback/toggle")
        await async_client.post("/listening/toggle")
        body = (await async_client.post("/stop")).json()
        assert body["status"] == "ok"
        assert coordinator.is_playing is False
        assert coordinator.is_listening is False


class TestPreferencesAndVoices:
    async def test_patch_preferences(self, async_client: httpx.AsyncClient):
        body = (await async_client.patch("/preferences", json={"volume": 0.25})).json()
        assert body["status"] == "ok"
        assert body["preferences"]["volume"] == 0.25

    async def test_invalid_preferences(self, async_client: httpx.AsyncClient):
        body = (
            await async_client.patch("/preferences", json={"volume": 7, "bogus": True})
        ).json()
        assert body["status"] == "error"
        assert body["reason"] == "invalid preferences"
        assert set(body["fields"]) == {"volume", "bogus"}

    async def test_toggle_theme(self, async_client: httpx.AsyncClient):
        assert (await async_client.post("/theme/toggle")).json()["dark_mode"] is False

    async def test_select_voice(self, async_client: httpx.AsyncClient, coordinator):
        await wait_until(lambda: coordinator.voices)
        body = (await async_client.post("/voice", json={"voice_id": "en-2"})).json()
        assert body == {"status": "ok", "voice_id": "en-2"}
        assert coordinator.selected_voice.name == "Daniel"

    async def test_select_unknown_voice(self, async_client: httpx.AsyncClient, coordinator):
        await wait_until(lambda: coordinator.voices)
        body = (await async_client.post("/voice", json={"voice_id": "zz"})).json()
        assert body == {"status": "error", "reason": "unknown voice"}

    async def test_preview(self, async_client: httpx.AsyncClient, coordinator, narration_backend):
        await wait_until(lambda: coordinator.voices)
        await async_client.post("/playback/toggle")
        await wait_until(lambda: narration_backend.current is not None)

        async def _finish_preview():
            await wait_until(
                lambda: narration_backend.current is not None
                and narration_backend.current.text == "Bonjour"
            )
            narration_backend.finish()

        finisher = asyncio.create_task(_finish_preview())
        body = (
            await async_client.post("/preview", json={"voice_id": "fr-1", "text": "Bonjour"})
        ).json()
        await finisher
        assert body == {"status": "ok", "finished": True}
        preview = narration_backend.narrations[-1]
        assert (preview.text, preview.voice.name) == ("Bonjour", "Amelie")
        assert coordinator.is_playing is False


class TestErrors:
    async def test_record_error(self, async_client: httpx.AsyncClient, coordinator):
        body = (
            await async_client.post(
                "/errors",
                json={"type": "NETWORK_ERROR", "message": "Offline", "details": "fetch failed"},
            )
        ).json()
        assert body["status"] == "ok"
        error = coordinator.errors[-1]
        assert error.type == ErrorType.NETWORK_ERROR
        assert error.error_id == body["error_id"]

    async def test_unknown_error_type(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/errors", json={"type": "OOPS", "message": "x"})).json()
        assert body == {"status": "error", "reason": "unknown error type"}

    async def test_message_required(self, async_client: httpx.AsyncClient):
        body = (await async_client.post("/errors", json={"type": "TTS_ERROR"})).json()
        assert body["reason"] == "message is required"


class TestEventStream:
    """The SSE route itself is not streamed through ASGITransport; the bus
    mechanism it relies on is exercised directly."""

    async def test_bus_delivers_serialisable_events(self, app, coordinator):
        queue = app.state.event_bus.subscribe()
        await coordinator.select_choice(0)
        events = []
        while not queue.empty():
            events.append(queue.get_nowait())
        data = [json.loads(event.model_dump_json()) for event in events]
        assert data[0]["type"] == EngineEventType.CHOICE_MADE.value
        assert data[0]["next_node_id"] == "lamp_room"

    def test_events_route_registered(self, app):
        assert "/events" in [route.path for route in app.routes]
