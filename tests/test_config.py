"""Tests for config.py environment variable parsing helpers and defaults."""

import logging
import os
from unittest import mock

import pytest

from config import (
    FAILED_DEBUG_BUCKET,
    FFMPEG_TIMEOUT_MAXIMUM,
    JOB_HEARTBEAT_INTERVAL,
    QUALITY_PRESETS,
    QUALITY_STALE_TIMEOUT,
    RAW_BUCKET,
    ENCODED_BUCKET,
    STALLED_JOB_TIMEOUT,
    THUMBNAIL_BUCKET,
    get_bool_env,
    get_float_env,
    get_int_env,
)


class TestGetIntEnv:
    """Tests for get_int_env."""

    def test_returns_default_when_env_not_set(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_int_env("REELHOUSE_TEST_INT", 42) == 42

    def test_parses_valid_integer(self):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_INT": "123"}):
            assert get_int_env("REELHOUSE_TEST_INT", 0) == 123

    @pytest.mark.parametrize("raw", ["abc", "3.14", ""])
    def test_invalid_value_falls_back(self, raw, caplog):
        """Should return the default and warn when the value is not an integer."""
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_INT": raw}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("REELHOUSE_TEST_INT", 42) == 42
        assert "using default 42" in caplog.text

    def test_range_enforced(self, caplog):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_INT": "0"}):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("REELHOUSE_TEST_INT", 10, min_val=1) == 10
        assert "below minimum" in caplog.text

        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_INT": "70000"}):
            assert get_int_env("REELHOUSE_TEST_INT", 9000, min_val=1, max_val=65535) == 9000

    def test_range_not_applied_to_default(self, caplog):
        """Should not validate or warn about a default that is outside the range."""
        with mock.patch.dict(os.environ, {}, clear=True):
            with caplog.at_level(logging.WARNING):
                assert get_int_env("REELHOUSE_TEST_INT", 0, min_val=1) == 0
        assert caplog.text == ""


class TestGetFloatEnv:
    """Tests for get_float_env."""

    def test_parses_integer_as_float(self):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_FLOAT": "2"}):
            assert get_float_env("REELHOUSE_TEST_FLOAT", 1.0) == 2.0

    @pytest.mark.parametrize("raw", ["inf", "-inf", "nan"])
    def test_rejects_special_values(self, raw, caplog):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_FLOAT": raw}):
            with caplog.at_level(logging.WARNING):
                assert get_float_env("REELHOUSE_TEST_FLOAT", 1.5) == 1.5
        assert "special float" in caplog.text

    def test_min_enforced(self):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_FLOAT": "0.01"}):
            assert get_float_env("REELHOUSE_TEST_FLOAT", 1.0, min_val=0.05) == 1.0


class TestGetBoolEnv:
    @pytest.mark.parametrize("raw", ["true", "1", "YES", " True "])
    def test_truthy(self, raw):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_BOOL": raw}):
            assert get_bool_env("REELHOUSE_TEST_BOOL", False) is True

    @pytest.mark.parametrize("raw", ["false", "0", "no", "maybe"])
    def test_falsy(self, raw):
        with mock.patch.dict(os.environ, {"REELHOUSE_TEST_BOOL": raw}):
            assert get_bool_env("REELHOUSE_TEST_BOOL", True) is False

    def test_default(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            assert get_bool_env("REELHOUSE_TEST_BOOL", True) is True


class TestDefaults:
    """Tests for the built-in quality presets and bucket names."""

    def test_buckets(self):
        assert (RAW_BUCKET, ENCODED_BUCKET, THUMBNAIL_BUCKET) == ("videos-raw", "videos-encoded", "thumbnails")
        assert FAILED_DEBUG_BUCKET == "videos-failed-debug"

    def test_stale_timeout_outlasts_longest_encode(self):
        assert QUALITY_STALE_TIMEOUT >= FFMPEG_TIMEOUT_MAXIMUM

    def test_heartbeat_well_inside_stall_window(self):
        assert JOB_HEARTBEAT_INTERVAL * 2 < STALLED_JOB_TIMEOUT

    def test_presets_highest_first_with_inverse_priority(self):
        assert [(p.name, p.height, p.retry_priority) for p in QUALITY_PRESETS] == [
            ("1080p", 1080, 4),
            ("720p", 720, 3),
            ("480p", 480, 2),
            ("360p", 360, 1),
        ]

    def test_bandwidth_includes_audio(self):
        preset = next(p for p in QUALITY_PRESETS if p.name == "360p")

        assert preset.bandwidth == 464_000
