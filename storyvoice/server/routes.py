"""HTTP routes for the Storyvoice server.

Endpoints
---------
GET   /health             Server health, version and speech engine state.
GET   /state              Current node, progress, preferences, flags,
                          last transcript and live errors.
GET   /voices             Narration voice catalog and the selected voice.
POST  /voice              Select a narration voice (``voice_id``).
POST  /preview            Speak a short sample with a voice.
POST  /node               Jump to a node (``node_id``).
POST  /choice             Apply a choice by ``choice_id`` or 0-based ``index``.
POST  /playback/toggle    Toggle narration of the current node.
POST  /listening/toggle   Toggle voice choice recognition.
POST  /stop               Stop narration and listening.
PATCH /preferences        Merge a partial preferences object.
POST  /theme/toggle       Flip the dark-mode preference.
POST  /restart            Restart the story at its start node.
POST  /reset              Same as /restart.
POST  /errors             Record an error caught by the client.
GET   /events             Engine events as Server-Sent Events (SSE).
"""

import asyncio
import logging

from fastapi import APIRouter, Request
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from storyvoice import __version__
from storyvoice.engine.coordinator import EngineCoordinator
from storyvoice.events.event_bus import EventBus
from storyvoice.events.types import ErrorType
from storyvoice.tts.types import NarrationError

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_coordinator(request: Request) -> EngineCoordinator:
    """Retrieve the engine coordinator from application state."""
    return request.app.state.coordinator


def _get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


async def _json_body(request: Request) -> dict | None:
    """Decode a JSON object body, or ``None`` when it is not one."""
    try:
        body = await request.json()
    except Exception:
        logger.warning("Failed to decode JSON body for %s", request.url.path)
        return None
    return body if isinstance(body, dict) else None


def _invalid_json() -> dict:
    return {"status": "error", "reason": "invalid json"}


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/health")
async def health(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    return {
        "status": "ok",
        "version": __version__,
        "subscribers": _get_event_bus(request).subscriber_count,
        "story_loaded": coordinator.story is not None,
        "tts_state": coordinator.narration.state.value,
        "tts_backend": coordinator.narration.backend_name,
        "stt_state": coordinator.recognition.state.value,
        "stt_backend": coordinator.recognition.backend_name,
        "stt_languages": coordinator.recognition.supported_languages(),
    }


@router.get("/state")
async def state(request: Request) -> dict:
    return _get_coordinator(request).snapshot()


@router.get("/voices")
async def voices(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    selected = coordinator.selected_voice
    return {
        "voices": [voice.model_dump(mode="json") for voice in coordinator.voices],
        "selected": selected.voice_id if selected else None,
    }


# ---------------------------------------------------------------------------
# Voice commands
# ---------------------------------------------------------------------------


@router.post("/voice")
async def select_voice(request: Request) -> dict:
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    voice_id = body.get("voice_id")
    if not voice_id:
        return {"status": "error", "reason": "voice_id is required"}

    selected = await _get_coordinator(request).select_voice(str(voice_id))
    if not selected:
        return {"status": "error", "reason": "unknown voice"}
    return {"status": "ok", "voice_id": voice_id}


@router.post("/preview")
async def preview_voice(request: Request) -> dict:
    """Speak a sample with ``voice_id`` (or the selected voice)."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    coordinator = _get_coordinator(request)
    voice = coordinator.selected_voice
    voice_id = body.get("voice_id")
    if voice_id:
        voice = next((v for v in coordinator.voices if v.voice_id == voice_id), None)
        if voice is None:
            return {"status": "error", "reason": "unknown voice"}

    try:
        finished = await coordinator.preview_voice(voice, body.get("text") or None)
    except NarrationError as exc:
        logger.warning("Voice preview failed", exc_info=True)
        return {"status": "error", "reason": str(exc)}
    return {"status": "ok", "finished": finished}


# ---------------------------------------------------------------------------
# Navigation commands
# ---------------------------------------------------------------------------


@router.post("/node")
async def goto_node(request: Request) -> dict:
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    node_id = body.get("node_id")
    if not node_id:
        return {"status": "error", "reason": "node_id is required"}

    coordinator = _get_coordinator(request)
    if not await coordinator.set_current_node(str(node_id)):
        return {"status": "error", "reason": f"cannot go to node {node_id}"}
    return {"status": "ok", "node_id": coordinator.current_node.id}


@router.post("/choice")
async def make_choice(request: Request) -> dict:
    body = await _json_body(request)
    if body is None:
        return _invalid_json()

    coordinator = _get_coordinator(request)
    node = coordinator.current_node
    if node is None:
        return {"status": "error", "reason": "no story loaded"}

    if "index" in body:
        index = body["index"]
        if not isinstance(index, int) or isinstance(index, bool):
            return {"status": "error", "reason": "index must be an integer"}
        applied = await coordinator.select_choice(index)
    elif body.get("choice_id"):
        choice = next((c for c in node.choices if c.id == body["choice_id"]), None)
        if choice is None:
            return {"status": "error", "reason": "unknown choice"}
        applied = await coordinator.make_choice(choice)
    else:
        return {"status": "error", "reason": "choice_id or index is required"}

    if not applied:
        return {"status": "error", "reason": "choice not applied"}
    return {"status": "ok", "node_id": coordinator.current_node.id}


@router.post("/restart")
async def restart(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    if not await coordinator.restart():
        return {"status": "error", "reason": "no story loaded"}
    return {"status": "ok", "node_id": coordinator.current_node.id}


@router.post("/reset")
async def reset(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    if not await coordinator.reset():
        return {"status": "error", "reason": "no story loaded"}
    return {"status": "ok", "node_id": coordinator.current_node.id}


# ---------------------------------------------------------------------------
# Playback / listening
# ---------------------------------------------------------------------------


@router.post("/playback/toggle")
async def toggle_playback(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    await coordinator.toggle_playback()
    return {"status": "ok", "playing": coordinator.is_playing}


@router.post("/listening/toggle")
async def toggle_listening(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    await coordinator.toggle_listening()
    return {"status": "ok", "listening": coordinator.is_listening}


@router.post("/stop")
async def stop_all(request: Request) -> dict:
    coordinator = _get_coordinator(request)
    await coordinator.stop_all()
    return {"status": "ok", "playing": False, "listening": False}


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


@router.patch("/preferences")
async def update_preferences(request: Request) -> dict:
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        preferences = await _get_coordinator(request).update_preferences(body)
    except ValidationError as exc:
        return {
            "status": "error",
            "reason": "invalid preferences",
            "fields": [".".join(str(part) for part in err["loc"]) for err in exc.errors()],
        }
    return {"status": "ok", "preferences": preferences.model_dump(mode="json")}


@router.post("/theme/toggle")
async def toggle_theme(request: Request) -> dict:
    dark_mode = await _get_coordinator(request).toggle_theme()
    return {"status": "ok", "dark_mode": dark_mode}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@router.post("/errors")
async def record_error(request: Request) -> dict:
    """Record an error the client caught (``type``, ``message``, ``details``)."""
    body = await _json_body(request)
    if body is None:
        return _invalid_json()
    try:
        error_type = ErrorType(body.get("type"))
    except ValueError:
        return {"status": "error", "reason": "unknown error type"}
    message = body.get("message")
    if not message:
        return {"status": "error", "reason": "message is required"}

    details = body.get("details")
    error = _get_coordinator(request).record_error(
        error_type, str(message), str(details) if details is not None else None
    )
    return {"status": "ok", "error_id": error.error_id}


# ---------------------------------------------------------------------------
# GET /events  (Server-Sent Events)
# ---------------------------------------------------------------------------


@router.get("/events")
async def event_stream(request: Request) -> EventSourceResponse:
    """Stream engine events as Server-Sent Events.

    Each SSE message has:
    * ``event``: the event type (e.g. ``node_entered``)
    * ``data``: the full event serialised as a JSON string
    """
    event_bus = _get_event_bus(request)

    async def _generate():
        queue = event_bus.subscribe()
        try:
            while True:
                if await request.is_disconnected():
                    logger.debug("SSE client disconnected")
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    yield {"comment": "ping"}
                    continue
                yield {
                    "event": event.type.value,
                    "data": event.model_dump_json(),
                }
        except asyncio.CancelledError:
            logger.debug("SSE stream cancelled")
        finally:
            event_bus.unsubscribe(queue)
            logger.debug("SSE subscriber cleaned up")

    return EventSourceResponse(_generate())
