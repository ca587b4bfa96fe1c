"""
Lumi — Gemini Live Transport

One LiveTransport per connection attempt, wrapping a google-genai Live
session:

  open()  → client.aio.live.connect(...) entered as an async context,
            then a receive task translates LiveServerMessage → ServerEvent
  send_*  → send_realtime_input / send_client_content / send_tool_response
  close() → cancel the receive task and exit the context (never raises)

Handler callbacks may be plain functions or coroutines.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Optional, Sequence

from google import genai
from google.genai import types

from ..core.interfaces import LiveConnectRequest, MediaBlob, TransportHandler
from ..core.models import FunctionCall, ServerEvent, ToolResponse

logger = logging.getLogger("lumi.transport")

# Websocket close code for a normal closure
_NORMAL_CLOSURE = 1000


def make_client(api_key: str) -> genai.Client:
    return genai.Client(api_key=api_key)


def build_live_config(request: LiveConnectRequest) -> types.LiveConnectConfig:
    speech_config = None
    if request.voice_name:
        speech_config = types.SpeechConfig(
            voice_config=types.VoiceConfig(
                prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=request.voice_name)
            )
        )
    return types.LiveConnectConfig(
        response_modalities=list(request.response_modalities),
        system_instruction=types.Content(parts=[types.Part(text=request.system_instruction)]),
        input_audio_transcription=(
            types.AudioTranscriptionConfig() if request.input_transcription else None
        ),
        output_audio_transcription=(
            types.AudioTranscriptionConfig() if request.output_transcription else None
        ),
        # Tools stay raw dicts: [{"function_declarations": [...]}]
        tools=list(request.tools) or None,
        speech_config=speech_config,
    )


def to_server_event(message: Any) -> ServerEvent:
    """Flatten a LiveServerMessage into the transport-neutral ServerEvent."""
    audio: list = []
    input_text: Optional[str] = None
    output_text: Optional[str] = None
    turn_complete = False
    interrupted = False

    sc = getattr(message, "server_content", None)
    if sc is not None:
        model_turn = getattr(sc, "model_turn", None)
        for part in (getattr(model_turn, "parts", None) or []):
            inline = getattr(part, "inline_data", None)
            if inline is not None and inline.data:
                audio.append(inline.data)
        if sc.input_transcription and sc.input_transcription.text:
            input_text = sc.input_transcription.text
        if sc.output_transcription and sc.output_transcription.text:
            output_text = sc.output_transcription.text
        turn_complete = bool(sc.turn_complete)
        interrupted = bool(sc.interrupted)

    calls: list = []
    tool_call = getattr(message, "tool_call", None)
    if tool_call is not None:
        for fc in tool_call.function_calls or []:
            calls.append(FunctionCall(id=fc.id or "", name=fc.name or "", args=dict(fc.args or {})))

    return ServerEvent(
        audio_chunks=tuple(audio),
        input_transcript=input_text,
        output_transcript=output_text,
        function_calls=tuple(calls),
        turn_complete=turn_complete,
        interrupted=interrupted,
    )


async def _invoke(callback: Any, *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


def _is_clean_close(exc: BaseException) -> bool:
    received = getattr(exc, "rcvd", None)
    return getattr(received, "code", None) == _NORMAL_CLOSURE


class GeminiLiveTransport:
    """LiveTransport over google-genai's async Live API."""

    def __init__(self, api_key: str, client: Optional[genai.Client] = None, log_prefix: str = "") -> None:
        self._client = client or make_client(api_key)
        self._log_prefix = log_prefix
        self._context: Any = None
        self._session: Any = None
        self._handler: Optional[TransportHandler] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        return self._session is not None and not self._closing

    async def open(self, request: LiveConnectRequest, handler: TransportHandler) -> None:
        self._handler = handler
        context = self._client.aio.live.connect(
            model=request.model, config=build_live_config(request),
        )
        session = await context.__aenter__()
        if self._closing:
            # close() ran while the handshake was in flight
            await context.__aexit__(None, None, None)
            return
        self._context = context
        self._session = session
        logger.info(f"{self._log_prefix}Live session opened ({request.model})")
        self._receive_task = asyncio.create_task(self._receive_loop())
        await _invoke(handler.on_open)

    async def _receive_loop(self) -> None:
        handler = self._handler
        try:
            while not self._closing:
                # receive() ends after each turn_complete; keep reading turns
                received = 0
                async for message in self._session.receive():
                    received += 1
                    await _invoke(handler.on_message, to_server_event(message))
                if received == 0 and not self._closing:
                    logger.info(f"{self._log_prefix}Live stream ended")
                    await _invoke(handler.on_close, "stream ended")
                    return
            return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._closing:
                return
            if _is_clean_close(e):
                logger.info(f"{self._log_prefix}Live session closed by server")
                await _invoke(handler.on_close, str(e))
            else:
                logger.warning(f"{self._log_prefix}Live session error: {e}")
                await _invoke(handler.on_error, e)

    async def send_realtime(self, blob: MediaBlob) -> None:
        if not self.is_open:
            return
        media = types.Blob(data=blob.data, mime_type=blob.mime_type)
        if blob.mime_type.startswith("audio/"):
            await self._session.send_realtime_input(audio=media)
        else:
            await self._session.send_realtime_input(video=media)

    async def send_text(self, text: str) -> None:
        if not self.is_open:
            return
        await self._session.send_client_content(
            turns=types.Content(role="user", parts=[types.Part(text=text)]),
            turn_complete=True,
        )

    async def send_tool_response(self, responses: Sequence[ToolResponse]) -> None:
        if not self.is_open:
            return
        await self._session.send_tool_response(
            function_responses=[
                types.FunctionResponse(id=r.id, name=r.name, response=r.response)
                for r in responses
            ],
        )

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        task = self._receive_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug(f"{self._log_prefix}Receive task ended with: {e}")
        self._receive_task = None
        if self._context is not None:
            try:
                await self._context.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"{self._log_prefix}Error closing live session: {e}")
        self._context = None
        self._session = None
        logger.info(f"{self._log_prefix}Live session closed")
