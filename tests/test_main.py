"""Tests for process exit codes."""

import pytest

from print_streamer.main import EXIT_AUTH, EXIT_CONFIG, EXIT_UPSTREAM, main


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PRINT_STREAMER_CONFIG", raising=False)


class TestExitCodes:
    def test_invalid_configuration(self):
        assert main(["--Mode=bogus"]) == EXIT_CONFIG

    def test_missing_camera(self, tmp_path):
        missing = str(tmp_path / "video9")
        assert main(["--Mode=stream", f"--Stream:Source={missing}"]) == EXIT_UPSTREAM

    def test_no_credentials(self):
        assert main(["--Mode=poll"]) == EXIT_AUTH
