"""Audible alarm with an unlock state machine and two rendering paths.

The primary path replays a pre-synthesized siren buffer on a fixed interval;
the fallback path loops a pre-rendered WAV clip. Both are sent to injected
outputs, so the player itself never touches an audio device. Audio problems
are logged and never raised: sound is an enhancement, the alert state is not
affected by it.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional

import numpy as np

from . import tones
from .config import AlarmConfig, alarm_config

logger = logging.getLogger(__name__)


class UnlockState(str, Enum):
    LOCKED = "LOCKED"
    UNLOCKING = "UNLOCKING"
    UNLOCKED = "UNLOCKED"


def alarm_should_sound(unacknowledged_fall: bool, muted: bool, acknowledged: bool) -> bool:
    return unacknowledged_fall and not muted and not acknowledged


class AudioOutput(ABC):
    """Primary output: accepts synthesized buffers."""

    @abstractmethod
    async def resume(self) -> None:
        ...

    @abstractmethod
    async def emit_silence(self, seconds: float) -> None:
        ...

    @abstractmethod
    def play_buffer(self, samples: np.ndarray, sample_rate: int) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class ClipOutput(ABC):
    """Fallback output: loops a pre-rendered clip."""

    @abstractmethod
    def load(self, wav: bytes, loop: bool = True) -> None:
        ...

    @abstractmethod
    def play(self) -> None:
        ...

    @abstractmethod
    def pause(self) -> None:
        ...

    @abstractmethod
    def rewind(self) -> None:
        ...

    @abstractmethod
    def release(self) -> None:
        ...


class EventAudioOutput(AudioOutput, ClipOutput):
    """Forwards alarm commands to dashboard clients, which own the speakers."""

    def __init__(self, publish: Callable[[Dict[str, Any]], None], clip_url: str = "/alarm/clip.wav"):
        self._publish = publish
        self.clip_url = clip_url
        self.clip: Optional[bytes] = None
        self.clip_playing = False
        self.loop = True

    def _send(self, action: str, **extra: Any) -> None:
        self._publish({"type": "alarm", "action": action, **extra})

    async def resume(self) -> None:
        self._send("resume")

    async def emit_silence(self, seconds: float) -> None:
        self._send("silence", seconds=seconds)

    def play_buffer(self, samples: np.ndarray, sample_rate: int) -> None:
        self._send("tone", seconds=round(len(samples) / sample_rate, 3), sample_rate=sample_rate)

    async def close(self) -> None:
        self._send("close")

    def load(self, wav: bytes, loop: bool = True) -> None:
        self.clip = wav
        self.loop = loop

    def play(self) -> None:
        self.clip_playing = True
        self._send("clip_play", url=self.clip_url, loop=self.loop)

    def pause(self) -> None:
        if self.clip_playing:
            self.clip_playing = False
            self._send("clip_pause")

    def rewind(self) -> None:
        # Clients restart the clip from zero on every clip_play.
        if self.clip_playing:
            self._send("clip_rewind")

    def release(self) -> None:
        self.clip = None
        self.clip_playing = False


class AlarmPlayer:
    """The one alarm of a session.

    ``unlock()`` is driven by the first user interaction; ``play()`` and
    ``stop()`` are idempotent and ``dispose()`` may be called repeatedly.
    """

    def __init__(
        self,
        output: AudioOutput,
        clip_output: ClipOutput,
        config: AlarmConfig = alarm_config,
        on_unlock: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._output = output
        self._clip_output = clip_output
        self._config = config
        self._on_unlock = on_unlock
        self._buffer: Optional[np.ndarray] = None
        self._task: Optional[asyncio.Task] = None
        self._disposed = False
        self.unlock_state = UnlockState.LOCKED
        self.playing = False
        self.path: Optional[str] = None

        self.clip = tones.fallback_clip(config)
        self._clip_ready = True
        try:
            self._clip_output.load(self.clip, loop=True)
        except Exception:  # noqa: BLE001 - output implementations vary
            logger.warning("Fallback alarm clip could not be loaded", exc_info=True)
            self._clip_ready = False

    @property
    def unlocked(self) -> bool:
        return self.unlock_state is UnlockState.UNLOCKED

    async def unlock(self) -> bool:
        """Open the primary path; failures leave the player locked for a retry."""
        if self._disposed:
            return False
        if self.unlock_state is not UnlockState.LOCKED:
            return self.unlocked

        self.unlock_state = UnlockState.UNLOCKING
        try:
            await self._output.resume()
            await self._output.emit_silence(0.01)
            self._buffer = tones.primary_buffer(self._config)
        except Exception:  # noqa: BLE001 - output implementations vary
            logger.warning("Audio unlock failed; will retry on next interaction", exc_info=True)
            self._buffer = None
            self.unlock_state = UnlockState.LOCKED
            return False

        self.unlock_state = UnlockState.UNLOCKED
        logger.info("Audio unlocked, alarm ready")
        if self._on_unlock:
            try:
                self._on_unlock(True)
            except Exception:  # noqa: BLE001
                logger.warning("Unlock callback failed", exc_info=True)
        return True

    def drive(self, should_sound: bool) -> None:
        if should_sound:
            self.play()
        else:
            self.stop()

    def play(self) -> None:
        if self.playing or self._disposed:
            return
        self.playing = True
        logger.info("Alarm playing")

        if self.unlocked and self._buffer is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No event loop for the siren; using fallback clip")
            else:
                self.path = "primary"
                self._task = loop.create_task(self._siren_loop())
                return
        self._play_fallback()

    async def _siren_loop(self) -> None:
        while self.playing:
            try:
                self._output.play_buffer(self._buffer, self._config.sample_rate)
            except Exception:  # noqa: BLE001 - output implementations vary
                logger.warning("Siren playback failed; switching to fallback clip", exc_info=True)
                self._task = None
                self._play_fallback()
                return
            await asyncio.sleep(self._config.retrigger_interval_s)

    def _play_fallback(self) -> None:
        if not self._clip_ready:
            self.path = None
            return
        self.path = "fallback"
        try:
            self._clip_output.rewind()
            self._clip_output.play()
        except Exception:  # noqa: BLE001 - output implementations vary
            logger.warning("Fallback alarm clip failed to play", exc_info=True)
            self.path = None

    def stop(self) -> None:
        was_playing = self.playing
        self.playing = False
        self.path = None

        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

        if self._clip_ready:
            try:
                self._clip_output.pause()
                self._clip_output.rewind()
            except Exception:  # noqa: BLE001 - output implementations vary
                logger.warning("Fallback alarm clip failed to stop", exc_info=True)

        if was_playing:
            logger.info("Alarm stopped")

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        try:
            self.stop()
        finally:
            try:
                await self._output.close()
            except Exception:  # noqa: BLE001
                logger.warning("Audio output did not close cleanly", exc_info=True)
            try:
                self._clip_output.release()
            except Exception:  # noqa: BLE001
                logger.warning("Alarm clip did not release cleanly", exc_info=True)
            self._buffer = None
            self._clip_ready = False
