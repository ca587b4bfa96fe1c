"""
Unit Tests for the PCM codec and resampler.
"""

import base64
import math

import numpy as np
import pytest

from lumi.audio.pcm import PCM_MIME_TYPE, decode_pcm16, encode_pcm16, resample_linear


class TestResampleLinear:

    def test_same_rate_is_identity(self):
        x = np.random.default_rng(0).uniform(-1, 1, 777).astype(np.float32)
        np.testing.assert_array_equal(resample_linear(x, 16000, 16000), x)

    def test_upsampling_passes_through(self):
        x = np.linspace(-1, 1, 100, dtype=np.float32)
        np.testing.assert_array_equal(resample_linear(x, 8000), x)

    @pytest.mark.parametrize("rate", [22050, 24000, 44100, 48000])
    @pytest.mark.parametrize("length", [1, 1000, 4096])
    def test_downsampled_length(self, rate, length):
        x = np.zeros(length, dtype=np.float32)
        assert len(resample_linear(x, rate)) == math.ceil(length * 16000 / rate)

    def test_empty_input(self):
        out = resample_linear(np.zeros(0, dtype=np.float32), 48000)
        assert out.size == 0

    def test_interpolates_between_neighbours(self):
        x = np.arange(6, dtype=np.float32)
        # ratio 1.5 → source offsets 0, 1.5, 3, 4.5
        np.testing.assert_allclose(resample_linear(x, 24000), [0.0, 1.5, 3.0, 4.5])

    def test_zero_pads_past_the_end(self):
        x = np.ones(3, dtype=np.float32)
        # ratio 2.5 → offsets 0, 2.5; the second straddles the end
        np.testing.assert_allclose(resample_linear(x, 40000), [1.0, 0.5])


class TestEncodePcm16:

    def test_mime_and_scaling(self):
        blob = encode_pcm16(np.array([0.0, 0.5, -0.5, 1.0, -1.0, 2.0, -2.0], dtype=np.float32))
        assert blob.mime_type == PCM_MIME_TYPE == "audio/pcm;rate=16000"
        values = np.frombuffer(blob.data, dtype="<i2")
        assert values.tolist() == [0, 16384, -16384, 32767, -32768, 32767, -32768]

    def test_base64_transport_encoding(self):
        blob = encode_pcm16(np.array([0.25, -0.25], dtype=np.float32))
        assert blob.base64() == base64.b64encode(blob.data).decode("ascii")

    def test_empty_input(self):
        blob = encode_pcm16(np.zeros(0, dtype=np.float32))
        assert blob.data == b""


class TestDecodePcm16:

    def test_round_trip_within_quantization(self):
        x = np.linspace(-1.0, 0.999, 257, dtype=np.float32)
        decoded = decode_pcm16(encode_pcm16(x).data)
        assert decoded.shape == (1, x.size)
        np.testing.assert_allclose(decoded[0], x, atol=1 / 32768 + 1e-7)

    def test_accepts_base64_string(self):
        blob = encode_pcm16(np.array([0.1, -0.2, 0.3], dtype=np.float32))
        np.testing.assert_array_equal(decode_pcm16(blob.base64()), decode_pcm16(blob.data))

    def test_trailing_odd_byte_ignored(self):
        data = np.array([16384], dtype="<i2").tobytes() + b"\x7f"
        decoded = decode_pcm16(data)
        np.testing.assert_allclose(decoded, [[0.5]])

    def test_deinterleaves_channels(self):
        data = np.array([1000, -1000, 2000, -2000], dtype="<i2").tobytes()
        decoded = decode_pcm16(data, sample_rate=24000, channels=2)
        assert decoded.shape == (2, 2)
        np.testing.assert_allclose(decoded[0], [1000 / 32768, 2000 / 32768])
        np.testing.assert_allclose(decoded[1], [-1000 / 32768, -2000 / 32768])

    def test_empty_input(self):
        assert decode_pcm16(b"").shape == (1, 0)

    def test_invalid_base64_raises(self):
        with pytest.raises(ValueError):
            decode_pcm16("not base64!!")
