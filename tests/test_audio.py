"""Tests for microphone buffering, endpointing and file loading."""

import numpy as np
import pytest

from dictate.audio import AudioMic, SpeechEndpointer, int16_to_float, load_audio


class TestAudioMic:
    def test_stop_without_start_is_empty(self):
        out = AudioMic().stop()
        assert out.size == 0
        assert out.dtype == np.float32

    def test_callback_buffers_blocks(self):
        mic = AudioMic(sample_rate=16000, max_seconds=1)
        seen = []
        mic.on_block = seen.append
        block = np.full((160, 1), 16384, dtype=np.int16)
        mic._callback(block, 160, None, None)
        mic._callback(block, 160, None, None)
        assert mic._filled == 320
        assert len(seen) == 2
        assert mic.level() == pytest.approx(0.5)

    def test_level_is_zero_before_audio(self):
        assert AudioMic().level() == 0.0

    def test_full_buffer_stops_recording(self):
        sd = pytest.importorskip("sounddevice")
        mic = AudioMic(sample_rate=100, max_seconds=1)
        mic._recording = True
        with pytest.raises(sd.CallbackStop):
            mic._callback(np.ones((150, 1), dtype=np.int16), 150, None, None)
        assert mic._filled == 100
        assert not mic.is_active()

    def test_int16_scaling(self):
        out = int16_to_float(np.array([-32768, 0, 16384], dtype=np.int16))
        np.testing.assert_allclose(out, [-1.0, 0.0, 0.5])


class FakeVad:
    def __init__(self, decisions):
        self.decisions = list(decisions)

    def is_speech(self, chunk, sample_rate):
        return self.decisions.pop(0)


class TestSpeechEndpointer:
    def test_rejects_bad_frame_size(self):
        with pytest.raises(ValueError):
            SpeechEndpointer(frame_ms=25)

    def test_rejects_bad_mode(self):
        with pytest.raises(ValueError):
            SpeechEndpointer(mode=4)

    def test_silence_after_speech_ends_utterance(self):
        pytest.importorskip("webrtcvad")
        ep = SpeechEndpointer(frame_ms=10, silence_ms=30)
        ep.vad = FakeVad([True, True, False, False, False])
        frame = np.zeros(ep.frame_samples, dtype=np.int16)
        results = [ep.update(frame) for _ in range(5)]
        assert results == [False, False, False, False, True]
        assert not ep.speech_detected

    def test_silence_alone_never_ends(self):
        pytest.importorskip("webrtcvad")
        ep = SpeechEndpointer(frame_ms=10, silence_ms=10)
        ep.vad = FakeVad([False] * 4)
        assert not ep.update(np.zeros(ep.frame_samples * 4, dtype=np.int16))
        assert ep.state == "silence"

    def test_real_vad_on_silence(self):
        pytest.importorskip("webrtcvad")
        ep = SpeechEndpointer(frame_ms=30)
        assert not ep.update(np.zeros(16000, dtype=np.int16))


class TestLoadAudio:
    def test_reads_and_mixes_to_mono(self, tmp_path):
        sf = pytest.importorskip("soundfile")
        path = tmp_path / "stereo.wav"
        data = np.stack([np.full(1600, 0.5), np.full(1600, -0.5)], axis=1)
        sf.write(str(path), data, 16000, subtype="FLOAT")
        out = load_audio(str(path))
        assert out.shape == (1600,)
        np.testing.assert_allclose(out, 0.0, atol=1e-6)

    def test_rejects_other_sample_rates(self, tmp_path):
        sf = pytest.importorskip("soundfile")
        path = tmp_path / "low.wav"
        sf.write(str(path), np.zeros(800), 8000)
        with pytest.raises(ValueError):
            load_audio(str(path))
