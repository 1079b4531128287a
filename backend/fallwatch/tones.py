"""Two-tone siren synthesis."""
from __future__ import annotations

import io
import wave

import numpy as np

from .config import AlarmConfig, alarm_config


def siren(
    sample_rate: int,
    duration_s: float,
    amplitude: float,
    config: AlarmConfig = alarm_config,
    taper_s: float = 0.0,
) -> np.ndarray:
    """Hard-clipped wave alternating between the high and low tone.

    Each half-cycle gets a linear attack and release so the frequency switch
    does not click. ``taper_s`` fades the final stretch of the buffer out.
    """
    half = config.half_cycle_s
    t = np.arange(int(sample_rate * duration_s), dtype=np.float64) / sample_rate
    freq = np.where(np.mod(t, 2 * half) < half, config.high_hz, config.low_hz)
    wave_ = np.where(np.sin(2 * np.pi * freq * t) > 0, amplitude, -amplitude)

    beep = np.mod(t, half)
    envelope = np.ones_like(t)
    envelope = np.where(beep < config.attack_s, beep / config.attack_s, envelope)
    envelope = np.where(
        beep > half - config.release_s, (half - beep) / config.release_s, envelope
    )
    if taper_s > 0:
        envelope = envelope * np.where(
            t > duration_s - taper_s, (duration_s - t) / taper_s, 1.0
        )
    return np.clip(wave_ * envelope, -1.0, 1.0).astype(np.float32)


def primary_buffer(config: AlarmConfig = alarm_config) -> np.ndarray:
    # Whole half-cycles only, so the buffer ends on a release ramp.
    half_cycles = max(1, int(config.buffer_s / config.half_cycle_s))
    return siren(config.sample_rate, half_cycles * config.half_cycle_s, config.amplitude, config)


def to_wav_bytes(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples in [-1, 1] as mono 16-bit PCM WAV."""
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype("<i2")
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as out:
        out.setnchannels(1)
        out.setsampwidth(2)
        out.setframerate(sample_rate)
        out.writeframes(pcm.tobytes())
    return buffer.getvalue()


def fallback_clip(config: AlarmConfig = alarm_config) -> bytes:
    samples = siren(
        config.clip_sample_rate,
        config.buffer_s,
        config.clip_amplitude,
        config,
        taper_s=config.taper_s,
    )
    return to_wav_bytes(samples, config.clip_sample_rate)
