"""Tests for layered configuration loading."""

import json

import pytest

from print_streamer.config import load_config, normalize_key, parse_command_line
from print_streamer.errors import ConfigError


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def write_settings(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestKeys:
    def test_normalize_key(self):
        assert normalize_key("YouTube__Polling__Base_Interval_Seconds") == ("youtube", "polling", "baseintervalseconds")
        assert normalize_key("YouTube:OAuth:ClientId") == ("youtube", "oauth", "clientid")

    def test_parse_command_line_forms(self):
        settings = parse_command_line(["--Mode=stream", "--Stream:Source", "http://cam/stream"])
        assert settings == {("mode",): "stream", ("stream", "source"): "http://cam/stream"}

    def test_missing_value(self):
        with pytest.raises(ConfigError):
            parse_command_line(["--Mode"])

    def test_positional_argument_rejected(self):
        with pytest.raises(ConfigError):
            parse_command_line(["stream"])


class TestLoadConfig:
    def test_defaults(self):
        config = load_config([], environ={})

        assert config.mode == "serve"
        assert config.serve.port == 8080
        assert config.polling.base_interval_seconds == 15.0
        assert config.polling.requests_per_minute == 100
        assert config.broadcast.privacy == "unlisted"
        assert config.reuse.window_hours == 24.0
        assert not config.oauth.configured

    def test_layer_precedence(self, isolated_cwd):
        write_settings(
            isolated_cwd / "appsettings.json",
            {
                "Mode": "stream",
                "Stream": {"Source": "http://printer.local/webcam/?action=stream"},
                "YouTube": {
                    "Polling": {"BaseIntervalSeconds": 20, "MaxRetries": 3},
                    "LiveBroadcast": {"Title": "From file"},
                },
            },
        )
        environ = {"YouTube__Polling__BaseIntervalSeconds": "25", "YouTube__LiveBroadcast__Privacy": "Private"}

        config = load_config([], environ=environ)
        assert config.mode == "stream"
        assert config.polling.base_interval_seconds == 25.0
        assert config.polling.max_retries == 3
        assert config.broadcast.title == "From file"
        assert config.broadcast.privacy == "private"

        config = load_config(["--YouTube:Polling:BaseIntervalSeconds=30"], environ=environ)
        assert config.polling.base_interval_seconds == 30.0

    def test_explicit_config_path(self, isolated_cwd):
        path = write_settings(isolated_cwd / "custom.json", {"Serve": {"Port": 9000}, "Logging": {"Level": "DEBUG"}})

        config = load_config(["--Config", str(path)], environ={})

        assert config.serve.port == 9000
        assert config.log_level == "DEBUG"

    def test_missing_explicit_config(self):
        with pytest.raises(ConfigError):
            load_config(["--Config=nope.json"], environ={})

    def test_boolean_and_optional_values(self):
        config = load_config(
            ["--YouTube:Reuse:Enabled=false", "--Stream:StartInServe=yes", "--YouTube:OAuth:RefreshToken="],
            environ={},
        )
        assert config.reuse.enabled is False
        assert config.stream.start_in_serve is True
        assert config.oauth.refresh_token is None

    @pytest.mark.parametrize(
        "argv",
        [
            ["--Mode=broadcast"],
            ["--Mode=stream"],
            ["--YouTube:LiveBroadcast:Privacy=secret"],
            ["--YouTube:LiveBroadcast:Transport=hls"],
            ["--YouTube:Polling:MinIntervalSeconds=30"],
            ["--YouTube:Polling:RequestsPerMinute=0"],
            ["--YouTube:Polling:MaxRetries=many"],
            ["--YouTube:OAuth:ClientId=only-id"],
            ["--Read:SaveEvery=0"],
        ],
    )
    def test_invalid_settings(self, argv):
        with pytest.raises(ConfigError):
            load_config(argv, environ={})

    def test_unreadable_settings_file(self, isolated_cwd):
        (isolated_cwd / "appsettings.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config([], environ={})
