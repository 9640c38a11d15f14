"""
Conversation lifecycle state machine.

ConversationManager owns the single live Session and serializes user
commands against it:

    IDLE/ERROR --start--> STARTING --ok--> ACTIVE <--pause/resume--> PAUSED
                              |--fail--> ERROR
    any --stop--> STOPPING --> IDLE
    non-IDLE --restart--> stop + start

Mute is orthogonal to the state: outbound audio is transmitted only while
ACTIVE and not muted. Each start stamps a new generation; a newer start, a
restart or a stop cancels older in-flight negotiations, which then tear down
their own resources.

The manager is constructed once and passed by reference to every consumer.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from logging_setup import get_logger, Component
from voice_catalog import DEFAULT_VOICE_ID, VOICES, VoiceIdentity, get_voice, index_of, voice_at
from voice_errors import NegotiationCancelled, TransportError, classify_error
from .audio_levels import AudioLevelMonitor, LevelSubscription
from .cancellation import CancellationToken, GenerationCounter
from .config import ClientConfig
from .negotiator import Session, SessionNegotiator
from .pubsub import EventBus, StreamKind


class ConversationState(str, Enum):
    """Conversation lifecycle states."""
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class StateChange:
    """Published on StreamKind.STATE for every transition."""
    previous: ConversationState
    current: ConversationState
    generation: Optional[int] = None
    error: Optional[str] = None


class InvalidTransitionError(ValueError):
    """A command was issued in a state that does not allow it."""


_START_FROM = (ConversationState.IDLE, ConversationState.ERROR, ConversationState.STARTING)
_VOICE_RESTART_IN = (ConversationState.STARTING, ConversationState.ACTIVE, ConversationState.PAUSED)


class ConversationManager:
    """Owns the conversation lifecycle and the live Session."""

    def __init__(
        self,
        negotiator: SessionNegotiator,
        bus: EventBus,
        monitor: Optional[AudioLevelMonitor] = None,
        conversation_id: Optional[str] = None,
    ):
        self.conversation_id = conversation_id or f"conv_{uuid.uuid4().hex[:12]}"
        self.logger = get_logger(Component.CONVERSATION, session_id=self.conversation_id)
        self._negotiator = negotiator
        self._bus = bus
        self._monitor = monitor

        self.state = ConversationState.IDLE
        self.muted = False
        self.last_error: Optional[str] = None
        self.last_error_category: Optional[str] = None

        self._session: Optional[Session] = None
        self._generations = GenerationCounter()
        self._lock = asyncio.Lock()

        self._voices: Tuple[VoiceIdentity, ...] = ()
        self._voice_index = 0

        self._local_levels: Optional[LevelSubscription] = None
        self._remote_levels: Optional[LevelSubscription] = None

        bus.subscribe(StreamKind.TRANSPORT_ERROR, self._on_transport_error)

    # --- Observation ---

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def generation(self) -> Optional[int]:
        current = self._generations.current
        return current.generation if current else None

    @property
    def transmitting(self) -> bool:
        return self._session is not None and self._session.transmitting

    @property
    def voices(self) -> Tuple[VoiceIdentity, ...]:
        return self._voices

    @property
    def selected_index(self) -> int:
        return self._voice_index

    @property
    def current_voice(self) -> VoiceIdentity:
        if not self._voices:
            return get_voice(DEFAULT_VOICE_ID)
        return self._voices[self._voice_index]

    # --- Voice catalog ---

    def load_catalog(self, voices: Optional[Sequence[VoiceIdentity]] = None) -> None:
        """Initial catalog load. Selects the first voice; never restarts."""
        self._voices = tuple(voices if voices is not None else VOICES)
        self._voice_index = 0
        self.logger.debug("Voice catalog loaded", voice_count=len(self._voices))

    async def select_voice(self, voice: Union[int, str]) -> None:
        """
        Select a voice by catalog index or id.

        A change while a conversation is live restarts it with the new voice;
        a change while IDLE or ERROR only records the selection.
        """
        if not self._voices:
            raise InvalidTransitionError("voice catalog not loaded")

        if isinstance(voice, int):
            index = self._voices.index(voice_at(voice, self._voices))
        else:
            index = index_of(voice, self._voices)

        if index == self._voice_index:
            return
        self._voice_index = index
        self.logger.info("Voice selected", voice=self.current_voice.id, state=self.state.value)

        if self.state in _VOICE_RESTART_IN:
            self.logger.info("Voice changed, restarting conversation with new voice")
            await self.restart()

    async def next_voice(self) -> None:
        if self._voices:
            await self.select_voice(self._voice_index + 1)

    async def prev_voice(self) -> None:
        if self._voices:
            await self.select_voice(self._voice_index - 1)

    # --- Commands ---

    async def start(self) -> None:
        """
        Start a conversation with the selected voice.

        Valid from IDLE or ERROR; from STARTING it supersedes the in-flight
        attempt. Raises the negotiation error after moving to ERROR.
        """
        await self._start(check_state=True)

    async def restart(self) -> None:
        """Full stop then start with the selected voice. Valid from any non-IDLE state."""
        if self.state == ConversationState.IDLE:
            raise InvalidTransitionError("restart() requires a conversation; use start()")
        self.logger.info("Restarting conversation", voice=self.current_voice.id)
        await self.stop()
        await self._start(check_state=False)

    async def stop(self) -> None:
        """Release everything and return to IDLE. Idempotent."""
        async with self._lock:
            self._generations.cancel_current("stopped")
            if self.state == ConversationState.IDLE and self._session is None:
                return
            self._set_state(ConversationState.STOPPING)
            await self._teardown()
            self._set_state(ConversationState.IDLE)
            self.logger.info("Conversation stopped")

    async def pause(self) -> None:
        """Stop transmitting but keep the transport. ACTIVE only."""
        async with self._lock:
            self._require(ConversationState.ACTIVE, "pause")
            self._session.set_transmitting(False)
            self._detach_levels()
            self._set_state(ConversationState.PAUSED)
            self.logger.info("Conversation paused")

    async def resume(self) -> None:
        """Transmit again unless muted. PAUSED only."""
        async with self._lock:
            self._require(ConversationState.PAUSED, "resume")
            self._set_state(ConversationState.ACTIVE)
            self._apply_transmission()
            self._attach_remote_levels(self._session)
            self.logger.info("Conversation resumed", muted=self.muted)

    def set_muted(self, muted: bool) -> None:
        """
        Set the mute flag. Applies immediately while ACTIVE; while PAUSED it
        is applied on resume(). Never changes the conversation state.
        """
        self.muted = bool(muted)
        if self.state == ConversationState.ACTIVE:
            self._apply_transmission()
        self.logger.info("Mute changed", muted=self.muted, state=self.state.value)

    # --- Internals ---

    def _require(self, state: ConversationState, command: str) -> None:
        if self.state != state or self._session is None:
            raise InvalidTransitionError(f"{command}() is not valid in state {self.state.value}")

    async def _start(self, check_state: bool) -> None:
        async with self._lock:
            if check_state and self.state not in _START_FROM:
                raise InvalidTransitionError(f"start() is not valid in state {self.state.value}")
            token = self._generations.next_token()
            if self._session is not None:
                await self._teardown()
            voice = self.current_voice
            self._set_state(ConversationState.STARTING, generation=token.generation)
            self.logger.info("Starting conversation", voice=voice.id, generation=token.generation)

        try:
            session = await self._negotiator.establish(voice.provider_voice_name, token)
        except NegotiationCancelled:
            self.logger.info("Negotiation superseded", generation=token.generation)
            return
        except Exception as e:
            if await self._fail(token, e):
                raise
            return

        async with self._lock:
            if not self._generations.is_current(token):
                # stop() or a newer start() took over after the last check
                await session.close()
                self.logger.info("Discarded stale session", generation=token.generation)
                return
            self._session = session
            self.last_error = None
            self.last_error_category = None
            self._set_state(ConversationState.ACTIVE, generation=token.generation)
            self._apply_transmission()
            session.add_remote_audio_listener(lambda: self._attach_remote_levels(session))

    async def _fail(self, token: CancellationToken, error: Exception) -> bool:
        """Record a failed attempt; False when the attempt was already superseded."""
        async with self._lock:
            if not self._generations.is_current(token):
                self.logger.info(
                    "Ignoring failure of superseded attempt",
                    generation=token.generation,
                    error_type=type(error).__name__,
                )
                return False
            self.last_error = str(error)
            self.last_error_category = classify_error(error)
            self.logger.error(
                "Failed to start conversation",
                error=self.last_error,
                error_type=type(error).__name__,
                category=self.last_error_category,
                generation=token.generation,
            )
            self._set_state(ConversationState.ERROR, generation=token.generation, error=self.last_error)
            return True

    async def _teardown(self) -> None:
        local, remote = self._local_levels, self._remote_levels
        self._local_levels = self._remote_levels = None
        session, self._session = self._session, None
        for subscription in (local, remote):
            if subscription is not None:
                await self._monitor.detach(subscription)
        if session is not None:
            await session.close()

    def _apply_transmission(self) -> None:
        enabled = self.state == ConversationState.ACTIVE and not self.muted
        if self._session is not None:
            self._session.set_transmitting(enabled)
        if enabled:
            self._attach_local_levels()
        elif self._local_levels is not None:
            self._local_levels.cancel()
            self._local_levels = None

    def _attach_local_levels(self) -> None:
        if self._monitor is None or self._local_levels is not None or self._session is None:
            return
        self._local_levels = self._monitor.attach(
            self._session.capture.tap(),
            lambda sample: self._bus.publish(StreamKind.LOCAL_LEVEL, sample),
        )

    def _attach_remote_levels(self, session: Session) -> None:
        if (
            self._monitor is None
            or self._remote_levels is not None
            or self._session is not session
            or self.state != ConversationState.ACTIVE
        ):
            return
        track = session.playback.tap()
        if track is None:
            return
        self._remote_levels = self._monitor.attach(
            track,
            lambda sample: self._bus.publish(StreamKind.REMOTE_LEVEL, sample),
        )

    def _detach_levels(self) -> None:
        for subscription in (self._local_levels, self._remote_levels):
            if subscription is not None:
                subscription.cancel()
        self._local_levels = self._remote_levels = None

    def _on_transport_error(self, error: TransportError) -> None:
        if self._session is None:
            return
        # Reported only: no reconnection and no state change
        self.last_error = str(error)
        self.last_error_category = classify_error(error)
        self.logger.warning("Transport error reported", error=self.last_error, state=self.state.value)

    def _set_state(
        self,
        state: ConversationState,
        generation: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        previous, self.state = self.state, state
        if previous == state:
            return
        self.logger.debug("State changed", from_state=previous.value, to_state=state.value)
        self._bus.publish(
            StreamKind.STATE,
            StateChange(previous=previous, current=state, generation=generation, error=error),
        )


def build_conversation(config: ClientConfig, bus: Optional[EventBus] = None) -> ConversationManager:
    """Wire a ConversationManager with the default aiortc-backed negotiator."""
    from .observability import ConversationObserver

    bus = bus or EventBus()
    manager = ConversationManager(
        SessionNegotiator(config, bus),
        bus,
        monitor=AudioLevelMonitor(frame_rate=config.level_frame_rate),
    )
    ConversationObserver(bus, manager.conversation_id).attach()
    manager.load_catalog()
    return manager
