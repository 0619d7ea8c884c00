"""
Tests for chimedetect.fingerprint module.

Tests fingerprint construction:
- Preprocessing (high-pass, normalisation, windowing)
- Sliding-window fingerprints and the frame cap
- Composite fingerprints
- Reference loading from clips and saved JSON
"""
import json
import logging

import numpy as np
import pytest

from chimedetect.audio import INT16_MAX
from chimedetect.fingerprint import (
    EmptySourceError,
    FeatureFrame,
    Fingerprint,
    FingerprintMode,
    FingerprintParams,
    ReferenceLoadError,
    average_frames,
    build_composite,
    build_fingerprint,
    check_reference_pcm,
    highpass,
    load_fingerprint,
    load_reference,
    preprocess,
    save_fingerprint,
)

from tests.conftest import (
    TEST_SAMPLE_RATE,
    create_chime_samples,
    create_noise_samples,
    create_test_wav_file,
)

SR = TEST_SAMPLE_RATE


class TestPreprocess:
    """Test PCM conditioning."""

    def test_highpass_removes_dc(self):
        filtered = highpass(np.full(SR, 1000.0), SR, 50.0)
        assert abs(filtered[-1]) < 1.0

    def test_highpass_empty(self):
        assert highpass(np.array([]), SR).size == 0

    def test_normalises_peak(self):
        pcm = create_chime_samples(amplitude=0.1).astype(np.float64)
        out = preprocess(pcm, SR)
        assert np.max(np.abs(out)) <= 0.8 * INT16_MAX + 1e-6
        # Quiet input is scaled up towards the 80% target
        assert np.max(np.abs(out)) > np.max(np.abs(pcm))

    def test_input_not_modified(self):
        pcm = create_chime_samples().astype(np.float64)
        original = pcm.copy()
        preprocess(pcm, SR)
        assert np.array_equal(pcm, original)

    def test_silence_stays_silent(self):
        out = preprocess(np.zeros(4096), SR)
        assert np.all(out == 0.0)

    def test_hann_window_tapers_edges(self):
        out = preprocess(create_noise_samples(4096).astype(np.float64), SR)
        assert out[0] == 0.0
        assert out[-1] == 0.0


class TestBuildFingerprint:
    """Test sliding-window fingerprints."""

    def test_frame_cap(self):
        fp = build_fingerprint(create_chime_samples(), SR)
        # 1 s at 44.1 kHz has room for 83 windows; capped at 30
        assert len(fp) == 30
        assert fp.sample_rate == SR

    def test_frame_count_short_buffer(self):
        params = FingerprintParams()
        pcm = create_chime_samples(duration=0.1)[:4096]
        fp = build_fingerprint(pcm, SR, params)
        assert len(fp) == (4096 - params.window_size) // params.hop_size + 1

    def test_shorter_than_window_is_empty(self):
        fp = build_fingerprint(create_chime_samples(duration=0.01), SR)
        assert fp.is_empty

    def test_frame_shapes(self):
        fp = build_fingerprint(create_chime_samples(), SR)
        frame = fp.frames[0]
        assert frame.energy_bands.shape == (32,)
        assert frame.cepstrum.shape == (13,)
        assert np.all(np.isfinite(frame.energy_bands))
        assert np.all(frame.energy_bands >= -100.0)

    def test_deterministic(self):
        pcm = create_chime_samples()
        a = build_fingerprint(pcm, SR)
        b = build_fingerprint(pcm, SR)
        for fa, fb in zip(a.frames, b.frames):
            assert np.array_equal(fa.energy_bands, fb.energy_bands)
            assert np.array_equal(fa.cepstrum, fb.cepstrum)
            assert fa.spectral_centroid == fb.spectral_centroid
            assert fa.spectral_rolloff == fb.spectral_rolloff
            assert fa.spectral_flux == fb.spectral_flux

    def test_standard_mode_skips_preprocessing(self):
        """Without normalisation, a quieter copy gives lower band energies."""
        loud = create_chime_samples(amplitude=0.5)
        quiet = create_chime_samples(amplitude=0.05)
        std_loud = build_fingerprint(loud, SR, mode=FingerprintMode.STANDARD)
        std_quiet = build_fingerprint(quiet, SR, mode=FingerprintMode.STANDARD)
        assert std_loud.frames[0].energy_bands.max() > std_quiet.frames[0].energy_bands.max() + 10.0

    def test_enhanced_mode_is_gain_invariant(self):
        loud = create_chime_samples(amplitude=0.5).astype(np.float64)
        quiet = loud / 10.0
        a = build_fingerprint(loud, SR, mode=FingerprintMode.ENHANCED)
        b = build_fingerprint(quiet, SR, mode=FingerprintMode.ENHANCED)
        assert np.allclose(a.frames[3].energy_bands, b.frames[3].energy_bands, atol=1e-6)


class TestComposite:
    """Test composite fingerprints."""

    def test_single_frame_mean(self):
        sources = [create_chime_samples(duration=0.1), create_chime_samples(duration=0.1, amplitude=0.3)]
        composite = build_composite(sources, SR)
        assert len(composite) == 1

        pool = []
        for pcm in sources:
            pool.extend(build_fingerprint(pcm, SR, mode=FingerprintMode.HIGH_QUALITY).frames)
        expected = average_frames(pool)
        frame = composite.frames[0]
        assert np.allclose(frame.energy_bands, expected.energy_bands)
        assert np.allclose(frame.cepstrum, expected.cepstrum)
        assert frame.spectral_centroid == pytest.approx(expected.spectral_centroid)
        assert frame.spectral_flux == pytest.approx(expected.spectral_flux)

    def test_empty_pool_raises(self):
        with pytest.raises(EmptySourceError):
            build_composite([np.zeros(100), np.array([])], SR)

    def test_failing_source_skipped(self):
        good = create_chime_samples(duration=0.1)
        bad = np.full(4096, np.nan)
        composite = build_composite([bad, good], SR)
        assert len(composite) == 1

    def test_all_sources_failing(self):
        with pytest.raises(EmptySourceError):
            build_composite([np.full(4096, np.nan)], SR)

    def test_average_frames_empty(self):
        with pytest.raises(EmptySourceError):
            average_frames([])

    def test_average_frames_elementwise(self):
        a = FeatureFrame(np.zeros(4), np.zeros(2), 100.0, 200.0, 1.0)
        b = FeatureFrame(np.full(4, 10.0), np.full(2, 2.0), 300.0, 400.0, 3.0)
        avg = average_frames([a, b])
        assert np.array_equal(avg.energy_bands, np.full(4, 5.0))
        assert np.array_equal(avg.cepstrum, np.ones(2))
        assert (avg.spectral_centroid, avg.spectral_rolloff, avg.spectral_flux) == (200.0, 300.0, 2.0)


class TestReferenceChecks:
    """Test reference PCM validation."""

    def test_empty_rejected(self):
        with pytest.raises(ReferenceLoadError):
            check_reference_pcm(np.array([]))

    def test_all_zero_rejected(self):
        with pytest.raises(ReferenceLoadError):
            check_reference_pcm(np.zeros(1000))

    def test_quiet_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            check_reference_pcm(np.full(1000, 5.0), "quiet.wav")
        assert "low amplitude" in caplog.text


class TestFingerprintFile:
    """Test saving and loading fingerprints."""

    def test_save_and_load(self, tmp_path):
        fp = build_fingerprint(create_chime_samples(duration=0.1), SR)
        path = tmp_path / "fp.json"
        save_fingerprint(fp, path, FingerprintMode.ENHANCED)

        loaded, mode = load_fingerprint(path)
        assert mode is FingerprintMode.ENHANCED
        assert loaded.sample_rate == SR
        assert len(loaded) == len(fp)
        assert np.allclose(loaded.frames[0].energy_bands, fp.frames[0].energy_bands)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ReferenceLoadError):
            load_fingerprint(tmp_path / "missing.json")

    def test_no_frames(self, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"sample_rate": SR, "mode": "enhanced", "frames": []}))
        with pytest.raises(ReferenceLoadError):
            load_fingerprint(path)

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ReferenceLoadError):
            load_fingerprint(path)


class TestLoadReference:
    """Test reference selection at session start."""

    def test_from_clip(self, config, tmp_path):
        wav, _ = create_test_wav_file(samples=create_chime_samples(duration=0.2), directory=tmp_path)
        config["fingerprint"]["reference_files"] = [str(wav)]

        reference = load_reference(config)
        assert reference.mode is FingerprintMode.ENHANCED
        assert len(reference.sources) == 1
        assert not reference.fingerprint.is_empty

    def test_high_quality_builds_composite(self, config, tmp_path):
        wavs = [
            create_test_wav_file(samples=create_chime_samples(duration=0.2, amplitude=a), directory=tmp_path)[0]
            for a in (0.3, 0.6)
        ]
        config["fingerprint"]["mode"] = "high_quality"
        config["fingerprint"]["reference_files"] = [str(w) for w in wavs]

        reference = load_reference(config)
        assert len(reference.fingerprint) == 1
        assert len(reference.sources) == 2

    def test_from_fingerprint_file(self, config, tmp_path):
        path = tmp_path / "chime_fingerprint.json"
        save_fingerprint(build_fingerprint(create_chime_samples(duration=0.1), SR), path, FingerprintMode.ENHANCED)
        config["fingerprint"]["fingerprint_file"] = str(path)

        reference = load_reference(config)
        assert reference.sources == ()
        assert not reference.fingerprint.is_empty

    def test_mismatched_sample_rate_clip_skipped(self, config, tmp_path):
        wav, _ = create_test_wav_file(sample_rate=16000, duration=0.2, directory=tmp_path)
        config["fingerprint"]["reference_files"] = [str(wav)]
        config["fingerprint"]["fingerprint_file"] = str(tmp_path / "missing.json")

        with pytest.raises(ReferenceLoadError):
            load_reference(config)

    def test_nothing_available(self, config, tmp_path):
        config["fingerprint"]["fingerprint_file"] = str(tmp_path / "missing.json")
        with pytest.raises(ReferenceLoadError):
            load_reference(config)

    def test_silent_clip_rejected(self, config, tmp_path):
        wav, _ = create_test_wav_file(samples=np.zeros(8192, dtype=np.int16), directory=tmp_path)
        config["fingerprint"]["reference_files"] = [str(wav)]
        config["fingerprint"]["fingerprint_file"] = str(tmp_path / "missing.json")
        with pytest.raises(ReferenceLoadError):
            load_reference(config)

    def test_clip_too_short(self, config, tmp_path):
        wav, _ = create_test_wav_file(samples=create_chime_samples(duration=0.01), directory=tmp_path)
        config["fingerprint"]["reference_files"] = [str(wav)]
        with pytest.raises(ReferenceLoadError):
            load_reference(config)
