"""
Lumi — Tutor Session

================================================================================
REALTIME SESSION ORCHESTRATION
================================================================================

One TutorSession bridges a live model session with the UI:

  connect()
    → CONNECTING: acquire speaker + microphone, open the transport
    → on_open: retry counter reset, CONNECTED, microphone starts;
      after the handshake grace period the live flag flips (audio may
      stream) and the synthetic greeting turn is sent
  inbound events
    → audio chunks   → PlaybackScheduler
    → transcripts    → input/output accumulators (early commit of the
                       user turn as soon as the assistant starts answering)
    → tool calls     → ToolDispatcher → one ToolResponse per call id
    → turn_complete  → commit both accumulators
    → interrupted    → hard-stop playback, commit partial output + "..."
  failures
    → permission class → system message + ERROR (no retry)
    → transient        → teardown, fixed-delay retry while under budget,
                         ERROR once the budget is spent
  disconnect()
    → capture → playback → output → video sampler → transport, then
      transcripts cleared and DISCONNECTED

Every connection attempt carries a generation number. disconnect() and
failure handling bump it, so callbacks and suspended work from an older
attempt become no-ops instead of resurrecting torn-down resources.
================================================================================
"""

from __future__ import annotations

import asyncio
import base64
import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from ..audio.capture import CapturePipeline
from ..audio.chime import render_chime
from ..audio.playback import PlaybackScheduler
from ..core.config import (
    AudioConfig, ModelConfig, SessionConfig, VideoConfig,
    audio_cfg, model_cfg, session_cfg, video_cfg,
)
from ..core.errors import (
    DeviceUnavailableError, ErrorKind, MissingCredentialsError, classify_error,
)
from ..core.interfaces import (
    AudioInput, AudioOutput, FrameSource, ImageGenerator, LiveConnectRequest,
    LiveTransport, MediaBlob,
)
from ..core.latency import LatencyTracer
from ..core.models import (
    FunctionCall, LearningStats, Message, ServerEvent, SessionSnapshot, StudentProfile,
)
from ..core.state_machine import ConnectionState, ConnectionStateMachine
from ..video.sampler import VideoFrameSampler
from .prompts import build_system_instruction, director_instruction, greeting_for
from .tools import ToolDispatcher, default_tools, live_tools

logger = logging.getLogger("lumi.session")

EventListener = Callable[[str, Dict[str, Any]], None]

_TOGGLEABLE = {
    "is_favorite": "is_favorite",
    "isFavorite": "is_favorite",
    "is_flagged": "is_flagged",
    "isFlagged": "is_flagged",
}


class _AttemptHandler:
    """TransportHandler bound to one connection attempt."""

    def __init__(self, session: "TutorSession", attempt: int) -> None:
        self._session = session
        self._attempt = attempt

    async def on_open(self) -> None:
        self._session._handle_open(self._attempt)

    async def on_message(self, event: ServerEvent) -> None:
        self._session._handle_event(event, self._attempt)

    async def on_close(self, reason: str) -> None:
        await self._session._handle_close(reason, self._attempt)

    async def on_error(self, error: BaseException) -> None:
        await self._session._handle_failure(error, self._attempt)


class TutorSession:
    """
    Stateful session core. All mutation happens on the event loop; the UI
    reads immutable snapshots and receives events through `on_event`.

    Events: state, message, message_updated, stats, live_text, speaking
    """

    def __init__(
        self,
        session_id: str,
        profile: StudentProfile,
        transport_factory: Callable[[], LiveTransport],
        output_factory: Callable[[], AudioOutput],
        input_factory: Callable[[], AudioInput],
        camera_factory: Optional[Callable[[], FrameSource]] = None,
        image_generator: Optional[ImageGenerator] = None,
        api_key: Optional[str] = None,
        messages: Optional[Sequence[Message]] = None,
        stats: Optional[LearningStats] = None,
        on_event: Optional[EventListener] = None,
        config: SessionConfig = session_cfg,
        audio_config: AudioConfig = audio_cfg,
        video_config: VideoConfig = video_cfg,
        model_config: ModelConfig = model_cfg,
    ) -> None:
        self.session_id = session_id
        self.profile = profile
        self._transport_factory = transport_factory
        self._output_factory = output_factory
        self._input_factory = input_factory
        self._camera_factory = camera_factory
        self._api_key = model_config.api_key if api_key is None else api_key
        self._on_event = on_event
        self._cfg = config
        self._audio_cfg = audio_config
        self._video_cfg = video_config
        self._model_cfg = model_config
        self._log = f"[{session_id}] "

        self._sm = ConnectionStateMachine(on_transition=self._on_state_change, log_prefix=self._log)
        self._dispatcher = ToolDispatcher(
            default_tools(image_generator, model_config), log_prefix=self._log,
        )
        self._tracer = LatencyTracer(session_id)

        # Conversation
        self._messages: List[Message] = list(messages or [])
        self._stats = stats or LearningStats()
        self._input_buffer = ""
        self._output_buffer = ""

        # Flags
        self._live = False
        self._muted = False
        self._video_active = False
        self._speaking = False

        # Reconnect state
        self._retry_count = 0
        self._attempt = 0

        # Per-attempt resources
        self._transport: Optional[LiveTransport] = None
        self._output: Optional[AudioOutput] = None
        self._scheduler: Optional[PlaybackScheduler] = None
        self._capture: Optional[CapturePipeline] = None

        # Video (survives reconnects)
        self._camera: Optional[FrameSource] = None
        self._sampler: Optional[VideoFrameSampler] = None

        self._retry_task: Optional[asyncio.Task] = None
        self._grace_task: Optional[asyncio.Task] = None
        self._tool_tasks: Set[asyncio.Task] = set()

    # ══════════════════════════════════════════════════════════════════════
    # Read-only state
    # ══════════════════════════════════════════════════════════════════════

    @property
    def state(self) -> ConnectionState:
        return self._sm.state

    @property
    def state_history(self) -> List[Dict]:
        return self._sm.history

    @property
    def messages(self) -> tuple:
        return tuple(self._messages)

    @property
    def stats(self) -> LearningStats:
        return self._stats

    @property
    def is_live(self) -> bool:
        return self._live

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def is_video_active(self) -> bool:
        return self._video_active

    @property
    def is_ai_speaking(self) -> bool:
        return self._speaking

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def live_input(self) -> str:
        return self._input_buffer

    @property
    def live_output(self) -> str:
        return self._output_buffer

    @property
    def scheduler(self) -> Optional[PlaybackScheduler]:
        return self._scheduler

    @property
    def latency(self) -> Dict[str, Any]:
        return self._tracer.summary()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            state=self._sm.state.value,
            messages=tuple(self._messages),
            stats=self._stats,
            live_input=self._input_buffer,
            live_output=self._output_buffer,
            is_ai_speaking=self._speaking,
            is_muted=self._muted,
            is_video_active=self._video_active,
            reconnect_attempts=self._retry_count,
        )

    def levels(self) -> Dict[str, Any]:
        """Input/output analyser readings for visualization."""
        silent = {"rms": 0.0, "spectrum": [0.0] * self._audio_cfg.analyser_bins}
        capture_meter = self._capture.meter if self._capture else None
        output_meter = getattr(self._output, "meter", None)
        return {
            "input": capture_meter.snapshot() if capture_meter else silent,
            "output": output_meter.snapshot() if output_meter else silent,
        }

    # ══════════════════════════════════════════════════════════════════════
    # Connection lifecycle
    # ══════════════════════════════════════════════════════════════════════

    async def connect(self) -> None:
        """User-initiated connect. No-op unless DISCONNECTED or ERROR."""
        if not self._sm.begin_connect("user"):
            return
        self._retry_count = 0
        await self._establish()

    async def _establish(self) -> None:
        self._attempt += 1
        attempt = self._attempt
        self._live = False
        logger.info(f"{self._log}Connection attempt {self._retry_count + 1}")
        self._tracer.mark_connect_started()

        try:
            if not self._api_key:
                raise MissingCredentialsError("No API key configured")

            self._output = self._output_factory()
            self._scheduler = PlaybackScheduler(
                self._output,
                config=self._audio_cfg,
                on_speaking_change=self._set_speaking,
                log_prefix=self._log,
            )
            self._capture = CapturePipeline(
                self._input_factory(),
                send=self._send_media,
                is_live=lambda: self._live,
                is_muted=lambda: self._muted,
                config=self._audio_cfg,
                log_prefix=self._log,
            )
            self._capture.open()

            transport = self._transport_factory()
            self._transport = transport
            request = LiveConnectRequest(
                model=self._model_cfg.live_model,
                system_instruction=build_system_instruction(self.profile),
                tools=live_tools(),
                voice_name=self._model_cfg.voice_name,
            )
            await transport.open(request, _AttemptHandler(self, attempt))
        except Exception as e:
            if attempt != self._attempt:
                logger.debug(f"{self._log}Ignoring failure of superseded attempt: {e}")
                return
            logger.warning(f"{self._log}Connection setup failed: {e}")
            await self._handle_failure(e, attempt)
            return

        if attempt != self._attempt:
            # disconnect() ran while the transport was opening
            await transport.close()

    def _handle_open(self, attempt: int) -> None:
        if attempt != self._attempt:
            return
        self._retry_count = 0
        self._tracer.mark_handshake()
        self._sm.transition(ConnectionState.CONNECTED, "handshake complete")
        if self._capture is not None:
            self._capture.start()
        self._grace_task = asyncio.create_task(self._go_live(attempt))

    async def _go_live(self, attempt: int) -> None:
        await asyncio.sleep(self._cfg.handshake_grace)
        if attempt != self._attempt or self._sm.state is not ConnectionState.CONNECTED:
            return
        self._live = True
        self._tracer.mark_live()
        self._refresh_video()
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send_text(greeting_for(self.profile))
        except Exception as e:
            logger.warning(f"{self._log}Handshake greeting failed: {e}")

    async def _handle_close(self, reason: str, attempt: int) -> None:
        if attempt != self._attempt:
            return
        logger.info(f"{self._log}Transport closed: {reason or 'no reason'}")
        await self.disconnect()

    async def _handle_failure(self, error: BaseException, attempt: int) -> None:
        if attempt != self._attempt:
            return
        self._attempt += 1
        token = self._attempt
        self._live = False

        kind = classify_error(error)
        await self._teardown()
        self._reset_transcripts()
        if token != self._attempt:
            return  # disconnect() ran during teardown

        if kind is ErrorKind.PERMISSION:
            self.post_message("system", self._fatal_text(error))
            self._sm.transition(ConnectionState.ERROR, f"permission: {error}")
            return

        self._retry_count += 1
        if self._retry_count < self._cfg.max_retries:
            logger.info(
                f"{self._log}Connection error ({kind.value}). "
                f"Retrying {self._retry_count}/{self._cfg.max_retries} in {self._cfg.retry_delay}s"
            )
            self._sm.transition(ConnectionState.CONNECTING, f"retry {self._retry_count}")
            self._retry_task = asyncio.create_task(self._retry_after_delay(token))
        else:
            logger.error(f"{self._log}Retry budget exhausted after {self._retry_count} failures: {error}")
            reason = "microphone unavailable" if isinstance(error, DeviceUnavailableError) else "connection lost"
            self.post_message(
                "system", f"⚠️ Could not connect ({reason}). Please reconnect."
            )
            self._sm.transition(ConnectionState.ERROR, "retry budget exhausted")

    async def _retry_after_delay(self, token: int) -> None:
        await asyncio.sleep(self._cfg.retry_delay)
        if token != self._attempt:
            return
        self._retry_task = None
        await self._establish()

    @staticmethod
    def _fatal_text(error: BaseException) -> str:
        if isinstance(error, MissingCredentialsError):
            return "⚠️ API Key is missing! Set GEMINI_API_KEY in your .env file."
        return "⚠️ Permission Denied. Check API Key."

    async def disconnect(self) -> None:
        """Idempotent full teardown; safe from any state and during connect."""
        self._attempt += 1
        self._live = False

        retry = self._retry_task
        self._retry_task = None
        if retry is not None and retry is not asyncio.current_task() and not retry.done():
            retry.cancel()

        await self._teardown()
        self._reset_transcripts()
        self._sm.transition(ConnectionState.DISCONNECTED, "disconnect")

    async def close(self) -> None:
        """End of session: disconnect and release the camera."""
        await self.disconnect()
        await self._stop_video()

    def _reset_transcripts(self) -> None:
        # A partial turn never carries over into the next attempt
        self._input_buffer = ""
        self._output_buffer = ""
        self._emit_live_text()

    async def _teardown(self) -> None:
        """Release per-attempt resources in dependency order."""
        current = asyncio.current_task()

        grace = self._grace_task
        self._grace_task = None
        if grace is not None and grace is not current and not grace.done():
            grace.cancel()

        for task in list(self._tool_tasks):
            if task is not current:
                task.cancel()

        capture, self._capture = self._capture, None
        if capture is not None:
            await capture.close()

        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            await scheduler.close()

        output, self._output = self._output, None
        if output is not None:
            try:
                output.close()
            except Exception as e:
                logger.warning(f"{self._log}Audio output close error: {e}")

        if self._sampler is not None:
            self._sampler.cancel()

        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()

        self._set_speaking(False)

    # ══════════════════════════════════════════════════════════════════════
    # Inbound events
    # ══════════════════════════════════════════════════════════════════════

    def _handle_event(self, event: ServerEvent, attempt: int) -> None:
        if attempt != self._attempt:
            return

        # The assistant started answering: the user's turn is over
        if event.has_model_output and self._input_buffer.strip():
            self._commit_input()

        if event.audio_chunks and self._scheduler is not None:
            self._tracer.mark_first_audio()
            for chunk in event.audio_chunks:
                self._scheduler.enqueue(chunk)

        if event.function_calls:
            self._spawn_tools(event.function_calls, attempt)

        if event.input_transcript:
            self._tracer.mark_first_transcript()
            self._input_buffer += event.input_transcript
            self._emit_live_text()
        if event.output_transcript:
            self._tracer.mark_first_transcript()
            self._output_buffer += event.output_transcript
            self._emit_live_text()

        if event.turn_complete:
            self._commit_input()
            self._commit_output()

        if event.interrupted:
            logger.info(f"{self._log}Model interrupted")
            if self._scheduler is not None:
                self._scheduler.interrupt()
            self._set_speaking(False)
            self._commit_output(suffix=self._cfg.truncation_marker)

    def _commit_input(self) -> None:
        text = self._input_buffer.strip()
        self._input_buffer = ""
        if text:
            self.post_message("user", text)
        self._emit_live_text()

    def _commit_output(self, suffix: str = "") -> None:
        text = self._output_buffer.strip()
        self._output_buffer = ""
        if text:
            self.post_message("assistant", text + suffix)
        self._emit_live_text()

    def _spawn_tools(self, calls: Sequence[FunctionCall], attempt: int) -> None:
        task = asyncio.create_task(self._run_tools(calls, attempt))
        self._tool_tasks.add(task)
        task.add_done_callback(self._tool_tasks.discard)

    async def _run_tools(self, calls: Sequence[FunctionCall], attempt: int) -> None:
        responses = await self._dispatcher.dispatch_all(calls, self)
        transport = self._transport
        if attempt != self._attempt or transport is None:
            logger.info(f"{self._log}Dropping {len(responses)} tool response(s) for a closed session")
            return
        try:
            await transport.send_tool_response(responses)
        except Exception as e:
            logger.error(f"{self._log}Failed to send tool response: {e}")

    # ══════════════════════════════════════════════════════════════════════
    # ToolHost
    # ══════════════════════════════════════════════════════════════════════

    def post_message(self, role: str, text: str, image: Optional[str] = None) -> Message:
        message = Message(role=role, text=text, image=image)
        self._messages.append(message)
        self._emit("message", message.to_dict())
        return message

    def play_chime(self, kind: str) -> None:
        output = self._output
        if output is None or output.closed:
            return
        try:
            output.play(render_chime(kind, output.sample_rate), output.current_time)
        except Exception as e:
            logger.warning(f"{self._log}Could not play feedback sound: {e}")

    def replace_stats(self, stats: LearningStats) -> None:
        self._stats = stats
        logger.info(
            f"{self._log}Progress: {stats.understanding_score:.0f} "
            f"({stats.difficulty_level.value}) {stats.last_update_reason or ''}"
        )
        self._emit("stats", stats.to_dict())

    # ══════════════════════════════════════════════════════════════════════
    # UI commands
    # ══════════════════════════════════════════════════════════════════════

    async def send_text_message(self, text: str, mode: str = "chat") -> None:
        """mode "chat" is a user turn; "instruction" is a silent director note."""
        if not text or not text.strip():
            return
        if mode == "instruction":
            self.post_message("system", f"(Director) {text}")
            payload = director_instruction(text)
        elif mode == "chat":
            self.post_message("user", text)
            payload = text
        else:
            raise ValueError(f"Unknown text mode: {mode!r}")

        transport = self._transport
        if transport is None or self._sm.state is not ConnectionState.CONNECTED:
            logger.info(f"{self._log}Text not sent: session not connected")
            return
        try:
            await transport.send_text(payload)
        except Exception as e:
            logger.error(f"{self._log}Failed to send text message: {e}")

    async def send_uploaded_image(self, data: Union[bytes, str], mime_type: str) -> None:
        """Show an uploaded image in the chat and stream it to the model."""
        if not data:
            return
        if isinstance(data, str):
            encoded = data
            raw = base64.b64decode(data)
        else:
            raw = bytes(data)
            encoded = base64.b64encode(raw).decode("ascii")
        self.post_message(
            "user", "📄 Uploaded an image assignment", image=f"data:{mime_type};base64,{encoded}",
        )

        transport = self._transport
        if transport is None or self._sm.state is not ConnectionState.CONNECTED:
            logger.info(f"{self._log}Image not sent: session not connected")
            return
        try:
            await transport.send_realtime(MediaBlob(data=raw, mime_type=mime_type))
        except Exception as e:
            logger.error(f"{self._log}Failed to upload image: {e}")

    def toggle_message_property(self, message_id: str, prop: str) -> Optional[Message]:
        field_name = _TOGGLEABLE.get(prop)
        if field_name is None:
            raise ValueError(f"Unknown message property: {prop!r}")
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                updated = dataclasses.replace(
                    message, **{field_name: not getattr(message, field_name)}
                )
                self._messages[i] = updated
                self._emit("message_updated", updated.to_dict())
                return updated
        return None

    def set_muted(self, muted: bool) -> None:
        self._muted = bool(muted)
        logger.info(f"{self._log}Microphone {'muted' if self._muted else 'unmuted'}")

    async def set_video_active(self, active: bool) -> bool:
        """Returns the resulting video state (False when the camera failed)."""
        if active and not self._video_active:
            if self._camera_factory is None:
                self.post_message("system", "⚠️ No camera configured.")
                return False
            camera = self._camera_factory()
            try:
                await asyncio.get_running_loop().run_in_executor(None, camera.open)
            except DeviceUnavailableError as e:
                logger.warning(f"{self._log}Camera unavailable: {e}")
                self.post_message("system", "⚠️ Camera unavailable. Video mode turned off.")
                return False
            self._camera = camera
            self._sampler = VideoFrameSampler(
                camera,
                send=self._send_media,
                gate=self._video_gate,
                config=self._video_cfg,
                log_prefix=self._log,
            )
            self._video_active = True
            self._refresh_video()
        elif not active and self._video_active:
            await self._stop_video()
        return self._video_active

    async def _stop_video(self) -> None:
        self._video_active = False
        sampler, self._sampler = self._sampler, None
        if sampler is not None:
            await sampler.stop()
        camera, self._camera = self._camera, None
        if camera is not None:
            camera.close()

    # ══════════════════════════════════════════════════════════════════════
    # Internals
    # ══════════════════════════════════════════════════════════════════════

    def _video_gate(self) -> bool:
        return self._video_active and self._live and self._sm.state is ConnectionState.CONNECTED

    def _refresh_video(self) -> None:
        if self._sampler is not None:
            self._sampler.refresh()

    async def _send_media(self, blob: MediaBlob) -> None:
        transport = self._transport
        if transport is None or not self._live:
            return
        await transport.send_realtime(blob)

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._speaking:
            return
        self._speaking = speaking
        self._emit("speaking", {"is_ai_speaking": speaking})

    def _on_state_change(self, prev: ConnectionState, new: ConnectionState, reason: str) -> None:
        if new is not ConnectionState.CONNECTED:
            self._live = False
        self._refresh_video()
        self._emit("state", {
            "state": new.value,
            "previous": prev.value,
            "reason": reason,
            "reconnect_attempts": self._retry_count,
        })

    def _emit_live_text(self) -> None:
        self._emit("live_text", {"input": self._input_buffer, "output": self._output_buffer})

    def _emit(self, kind: str, data: Dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(kind, data)
        except Exception as e:
            logger.error(f"{self._log}Event listener error ({kind}): {e}")
