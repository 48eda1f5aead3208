"""
Audio Analyser Module

In-process stand-in for the browser's Web Audio graph: an AudioContext that owns
the sample rate (and, for speaker playback, checks that an output device exists)
and a FrequencyAnalyser that produces the same byte magnitude bins as an
AnalyserNode's getByteFrequencyData().

Analyser pipeline per call (matches the Web Audio definition):
1. Take the newest fft_size time-domain samples (zero-padded at the front)
2. Apply a Blackman window
3. Real FFT, magnitude scaled by 1/fft_size
4. Temporal smoothing against the previous call (smoothing_time_constant)
5. Convert to dB and map [min_decibels, max_decibels] linearly onto 0..255
"""

import logging
from typing import Optional, Tuple

import numpy as np

log = logging.getLogger(__name__)

MIN_FFT_SIZE = 32
MAX_FFT_SIZE = 32768
DEFAULT_MIN_DECIBELS = -100.0
DEFAULT_MAX_DECIBELS = -30.0


class AudioContextUnavailableError(RuntimeError):
    """Raised when an audio context cannot be created in this environment."""


def _blackman_window(size: int) -> np.ndarray:
    # Web Audio uses the "exact" Blackman coefficients with alpha = 0.16
    alpha = 0.16
    a0 = 0.5 * (1 - alpha)
    a1 = 0.5
    a2 = 0.5 * alpha
    n = np.arange(size, dtype=np.float64)
    return a0 - a1 * np.cos(2 * np.pi * n / size) + a2 * np.cos(4 * np.pi * n / size)


class FrequencyAnalyser:
    """
    Byte-valued frequency analyser equivalent to a Web Audio AnalyserNode.

    Usage:
        analyser = FrequencyAnalyser(fft_size=2048, smoothing_time_constant=0.8)
        bins = analyser.get_byte_frequency_data(latest_samples)
    """

    def __init__(
        self,
        fft_size: int = 2048,
        smoothing_time_constant: float = 0.8,
        min_decibels: float = DEFAULT_MIN_DECIBELS,
        max_decibels: float = DEFAULT_MAX_DECIBELS,
    ):
        fft_size = int(fft_size)
        if fft_size < MIN_FFT_SIZE or fft_size > MAX_FFT_SIZE or fft_size & (fft_size - 1):
            raise ValueError(f"fft_size must be a power of two in [{MIN_FFT_SIZE}, {MAX_FFT_SIZE}], got {fft_size}")
        if not 0.0 <= float(smoothing_time_constant) <= 1.0:
            raise ValueError("smoothing_time_constant must be within [0, 1]")
        if min_decibels >= max_decibels:
            raise ValueError("min_decibels must be lower than max_decibels")
        self.fft_size = fft_size
        self.smoothing_time_constant = float(smoothing_time_constant)
        self.min_decibels = float(min_decibels)
        self.max_decibels = float(max_decibels)
        self._window = _blackman_window(fft_size)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float64)

    @property
    def frequency_bin_count(self) -> int:
        return self.fft_size // 2

    def reset(self) -> None:
        """Forget the smoothing history (e.g. when playback restarts)."""
        self._smoothed[:] = 0.0

    def get_float_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        """
        Compute smoothed magnitudes in dB for the newest fft_size samples.

        Args:
            samples: 1-D float array in [-1, 1]; only the last fft_size values are used

        Returns:
            Array of frequency_bin_count dB values
        """
        block = np.zeros(self.fft_size, dtype=np.float64)
        tail = np.asarray(samples, dtype=np.float64).ravel()[-self.fft_size:]
        if tail.size:
            block[-tail.size:] = tail
        spectrum = np.fft.rfft(block * self._window)[: self.frequency_bin_count]
        magnitude = np.abs(spectrum) / self.fft_size
        tau = self.smoothing_time_constant
        self._smoothed = tau * self._smoothed + (1.0 - tau) * magnitude
        with np.errstate(divide="ignore"):
            return 20.0 * np.log10(self._smoothed)

    def get_byte_frequency_data(self, samples: np.ndarray) -> np.ndarray:
        """
        Compute byte magnitude bins (0..255) for the newest fft_size samples.

        Args:
            samples: 1-D float array in [-1, 1]

        Returns:
            uint8 array of frequency_bin_count values
        """
        db = self.get_float_frequency_data(samples)
        scale = 255.0 / (self.max_decibels - self.min_decibels)
        scaled = np.floor(scale * (db - self.min_decibels))
        scaled[~np.isfinite(scaled)] = 0.0
        return np.clip(scaled, 0, 255).astype(np.uint8)

    def band_bins(self, sample_rate: float, min_hz: float, max_hz: float) -> Tuple[int, int]:
        """
        Inclusive bin range covering [min_hz, max_hz], truncated to the bin count.

        Returns:
            (min_bin, max_bin); max_bin < min_bin means the band is empty
        """
        min_bin = int(np.floor(min_hz * self.fft_size / sample_rate))
        max_bin = int(np.floor(max_hz * self.fft_size / sample_rate))
        max_bin = min(max_bin, self.frequency_bin_count - 1)
        return max(0, min_bin), max_bin


class AudioContext:
    """
    Minimal audio context: sample rate, running state and analyser factory.

    Use AudioContext.open() rather than the constructor so that environments
    without an audio backend are reported through AudioContextUnavailableError.
    """

    RUNNING = "running"
    SUSPENDED = "suspended"
    CLOSED = "closed"

    def __init__(self, sample_rate: float, output_device: Optional[int] = None):
        self.sample_rate = float(sample_rate)
        self.output_device = output_device
        self.state = self.SUSPENDED

    @classmethod
    def open(cls, sample_rate: float, require_output: bool = False, device: Optional[int] = None) -> "AudioContext":
        """
        Create an audio context.

        Args:
            sample_rate: Sample rate of the signal that will be analysed
            require_output: When True, a speaker output device must be available
            device: Optional sounddevice output device index

        Raises:
            AudioContextUnavailableError: Invalid rate, no audio backend or no output device
        """
        if not sample_rate or float(sample_rate) <= 0:
            raise AudioContextUnavailableError(f"Invalid sample rate: {sample_rate}")
        if require_output:
            try:
                import sounddevice as sd
            except (ImportError, OSError) as e:
                raise AudioContextUnavailableError(f"Audio backend not available: {e}") from e
            try:
                sd.query_devices(device, kind="output")
            except Exception as e:
                raise AudioContextUnavailableError(f"No audio output device: {e}") from e
        return cls(sample_rate, output_device=device)

    def create_analyser(self, fft_size: int = 2048, smoothing_time_constant: float = 0.8) -> FrequencyAnalyser:
        if self.state == self.CLOSED:
            raise AudioContextUnavailableError("AudioContext is closed")
        return FrequencyAnalyser(fft_size=fft_size, smoothing_time_constant=smoothing_time_constant)

    def resume(self) -> None:
        if self.state == self.SUSPENDED:
            self.state = self.RUNNING

    def suspend(self) -> None:
        if self.state == self.RUNNING:
            self.state = self.SUSPENDED

    def close(self) -> None:
        self.state = self.CLOSED
