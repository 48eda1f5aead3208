"""
Audio Envelope Extractor Module

Turns a playing audio signal into one normalized loudness value per animation
frame, restricted to the human voice band. This value is the raw "mouth open"
target that the lip-sync animator smooths.

Per tick:
1. Byte frequency bins from the analyser (see utils.audio_analyser)
2. Average of the bins whose frequency falls inside frequency_range
3. Divide by the normalization ceiling, cap at 1
4. Zero the value when it does not exceed the threshold

If the audio context cannot be created the extractor disables itself
permanently and reports it once (exception + optional callback).
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

import config
from utils.audio_analyser import AudioContext, AudioContextUnavailableError, FrequencyAnalyser
from utils.audio_playback import AudioSignalSource

log = logging.getLogger(__name__)


class AudioAnalysisUnavailableError(RuntimeError):
    """Raised once when lip-sync analysis cannot run in this environment."""


@dataclass
class FrequencyRange:
    min: float = 300.0
    max: float = 3400.0


@dataclass
class EnvelopeConfig:
    """Envelope extractor settings (defaults match the conversation avatar)."""
    fft_size: int = 2048
    smoothing_time_constant: float = 0.8
    frequency_range: FrequencyRange = field(default_factory=FrequencyRange)
    threshold: float = 0.01
    normalization_ceiling: float = 180.0  # empirical; 128 is the other value in use

    @classmethod
    def from_config(cls, smoothing: Optional[float] = None, threshold: Optional[float] = None) -> "EnvelopeConfig":
        """Build from config.py, optionally overriding smoothing/threshold (reply preset)."""
        return cls(
            fft_size=config.LIPSYNC_FFT_SIZE,
            smoothing_time_constant=config.LIPSYNC_SMOOTHING if smoothing is None else smoothing,
            frequency_range=FrequencyRange(config.LIPSYNC_FREQ_MIN_HZ, config.LIPSYNC_FREQ_MAX_HZ),
            threshold=config.LIPSYNC_THRESHOLD if threshold is None else threshold,
            normalization_ceiling=config.LIPSYNC_NORMALIZATION_CEILING,
        )


@dataclass(frozen=True)
class AudioEnvelopeSample:
    """Normalized voice-band energy in [0, 1] and the time it was computed."""
    value: float
    timestamp_ms: float


def envelope_from_bins(
    bins: np.ndarray,
    min_bin: int,
    max_bin: int,
    normalization_ceiling: float,
    threshold: float,
) -> float:
    """
    Reduce byte frequency bins to one envelope value.

    Args:
        bins: Byte magnitudes (0..255)
        min_bin, max_bin: Inclusive voice-band bin range
        normalization_ceiling: Average magnitude that maps to 1.0
        threshold: Values not above this are reported as 0

    Returns:
        float in [0, 1]
    """
    band = np.asarray(bins, dtype=np.float64)[min_bin:max_bin + 1]
    average = float(band.mean()) if band.size else 0.0
    normalized = min(average / normalization_ceiling, 1.0)
    return normalized if normalized > threshold else 0.0


class AudioEnvelopeExtractor:
    """
    Computes AudioEnvelopeSample values from an attached AudioSignalSource.

    Usage:
        extractor = AudioEnvelopeExtractor(EnvelopeConfig.from_config())
        extractor.attach(player)          # may raise AudioAnalysisUnavailableError once
        sample = extractor.sample(now_ms) # call once per animation frame
    """

    def __init__(
        self,
        envelope_config: Optional[EnvelopeConfig] = None,
        context_factory: Optional[Callable[[float], AudioContext]] = None,
        require_output: bool = False,
        on_unavailable: Optional[Callable[[Exception], None]] = None,
    ):
        self.config = envelope_config or EnvelopeConfig()
        self._context_factory = context_factory or (
            lambda rate: AudioContext.open(rate, require_output=require_output)
        )
        self._on_unavailable = on_unavailable
        self._disabled = False
        self.unavailable_reason: Optional[str] = None
        self._source: Optional[AudioSignalSource] = None
        self._context: Optional[AudioContext] = None
        self._analyser: Optional[FrequencyAnalyser] = None
        self._min_bin = 0
        self._max_bin = -1

    @property
    def is_available(self) -> bool:
        return not self._disabled

    @property
    def is_attached(self) -> bool:
        return self._source is not None

    @property
    def context(self) -> Optional[AudioContext]:
        return self._context

    def attach(self, source: AudioSignalSource) -> bool:
        """
        Bind the extractor to an audio source and build its analyser.

        Returns:
            True when attached, False if the extractor was already disabled

        Raises:
            AudioAnalysisUnavailableError: the first time the context cannot be created
        """
        if self._disabled:
            return False
        if self._source is source:
            return True
        self.detach()
        try:
            context = self._context_factory(source.sample_rate)
            analyser = context.create_analyser(self.config.fft_size, self.config.smoothing_time_constant)
        except AudioContextUnavailableError as e:
            self._disabled = True
            self.unavailable_reason = str(e)
            log.error("Lip-sync analysis unavailable: %s", e)
            if self._on_unavailable:
                self._on_unavailable(e)
            raise AudioAnalysisUnavailableError(str(e)) from e
        band = self.config.frequency_range
        self._min_bin, self._max_bin = analyser.band_bins(source.sample_rate, band.min, band.max)
        self._source = source
        self._context = context
        self._analyser = analyser
        return True

    def detach(self) -> None:
        if self._context is not None:
            self._context.close()
        self._source = None
        self._context = None
        self._analyser = None

    def resume(self) -> None:
        """Resume a suspended context and drop stale smoothing (called when playback starts)."""
        if self._context is not None:
            self._context.resume()
        if self._analyser is not None:
            self._analyser.reset()

    def suspend(self) -> None:
        """Suspend the context while the source is paused or ended."""
        if self._context is not None:
            self._context.suspend()

    def sample(self, timestamp_ms: float) -> Optional[AudioEnvelopeSample]:
        """
        Compute the envelope for the current frame.

        Returns:
            AudioEnvelopeSample, with value 0 while the source is not playing;
            None when no source is attached
        """
        if self._source is None or self._analyser is None:
            return None
        if not self._source.is_active():
            return AudioEnvelopeSample(0.0, timestamp_ms)
        window = self._source.latest_window(self.config.fft_size)
        bins = self._analyser.get_byte_frequency_data(window)
        value = envelope_from_bins(
            bins,
            self._min_bin,
            self._max_bin,
            self.config.normalization_ceiling,
            self.config.threshold,
        )
        return AudioEnvelopeSample(value, timestamp_ms)
