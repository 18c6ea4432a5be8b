"""Tests for mapping YouTube API responses onto streamer types."""

import json

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from print_streamer.errors import (
    AuthorizationError,
    DuplicateBroadcastError,
    InvalidTransitionError,
    NotFoundError,
    PlatformError,
    QuotaExceededError,
    RedundantTransitionError,
    TransientPlatformError,
)
from print_streamer.youtube_client import _broadcast_from, _stream_from, translate_error


def http_error(status, reason=None):
    errors = [{"reason": reason, "message": reason}] if reason else []
    content = json.dumps({"error": {"code": status, "message": reason or "error", "errors": errors}}).encode()
    return HttpError(httplib2.Response({"status": status}), content)


class TestTranslateError:
    @pytest.mark.parametrize(
        "status,reason,expected",
        [
            (403, "quotaExceeded", QuotaExceededError),
            (429, None, TransientPlatformError),
            (403, "rateLimitExceeded", TransientPlatformError),
            (500, "backendError", TransientPlatformError),
            (503, None, TransientPlatformError),
            (401, "authError", AuthorizationError),
            (403, "insufficientPermissions", AuthorizationError),
            (403, "redundantTransition", RedundantTransitionError),
            (403, "invalidTransition", InvalidTransitionError),
            (403, "errorStreamInactive", InvalidTransitionError),
            (404, "liveBroadcastNotFound", NotFoundError),
            (404, None, NotFoundError),
            (409, None, DuplicateBroadcastError),
            (400, "invalidDescription", PlatformError),
        ],
    )
    def test_http_errors(self, status, reason, expected):
        error = translate_error(http_error(status, reason))
        assert type(error) is expected

    def test_reason_and_status_are_kept(self):
        error = translate_error(http_error(403, "invalidTransition"))
        assert error.reason == "invalidTransition"
        assert error.status == 403
        assert not error.retryable

    def test_only_transient_errors_are_retryable(self):
        assert translate_error(http_error(503)).retryable
        assert not translate_error(http_error(403, "quotaExceeded")).retryable

    def test_refresh_error_is_authorization(self):
        assert isinstance(translate_error(RefreshError("invalid_grant")), AuthorizationError)

    def test_network_errors_are_transient(self):
        assert isinstance(translate_error(OSError("connection reset")), TransientPlatformError)
        assert isinstance(translate_error(httplib2.ServerNotFoundError("no dns")), TransientPlatformError)

    def test_unparseable_body(self):
        error = HttpError(httplib2.Response({"status": 400}), b"<html>bad request</html>")
        assert type(translate_error(error)) is PlatformError


class TestResourceMapping:
    def test_broadcast_from_item(self):
        broadcast = _broadcast_from(
            {
                "id": "bc1",
                "snippet": {"title": "Benchy", "description": "PLA"},
                "status": {"privacyStatus": "private", "lifeCycleStatus": "liveStarting"},
            }
        )
        assert broadcast.broadcast_id == "bc1"
        assert broadcast.privacy_status == "private"
        assert broadcast.is_live
        assert not broadcast.is_terminal

    def test_stream_uses_rtmps_address(self):
        item = {
            "id": "st1",
            "cdn": {
                "ingestionInfo": {
                    "ingestionAddress": "rtmp://a.rtmp.youtube.com/live2",
                    "rtmpsIngestionAddress": "rtmps://a.rtmps.youtube.com/live2",
                    "streamName": "abcd-efgh",
                }
            },
            "status": {"streamStatus": "active"},
        }

        rtmps = _stream_from(item, "rtmps")
        assert rtmps.ingestion_url == "rtmps://a.rtmps.youtube.com/live2/abcd-efgh"
        assert rtmps.redacted_url == "rtmps://a.rtmps.youtube.com/live2/****"
        assert rtmps.health == "active"

        assert _stream_from(item, "rtmp").ingestion_url == "rtmp://a.rtmp.youtube.com/live2/abcd-efgh"

    @pytest.mark.parametrize(
        "status,health",
        [("active", "active"), ("ready", "ready"), ("created", "inactive"), ("inactive", "inactive"), ("error", "bad")],
    )
    def test_stream_health(self, status, health):
        endpoint = _stream_from({"id": "st1", "status": {"streamStatus": status}}, "rtmp")
        assert endpoint.health == health
