"""Pytest configuration and shared fixtures for live-stats tests."""

import base64
import json
import os
import sys
import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

PATH_PREFIX = "/.netlify/functions/stats"


@pytest.fixture(autouse=True)
def set_env_vars(monkeypatch):
    """Set required environment variables for all tests."""
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("PATH_PREFIX", PATH_PREFIX)


@pytest.fixture(autouse=True)
def reset_store():
    """Drop the cached container store between tests."""
    import handler
    handler._store = None
    yield
    handler._store = None


@pytest.fixture
def make_event():
    """Build an API Gateway HTTP API (v2) event for a stats route."""

    def _make(method, suffix, body=None, raw_body=None, base64_body=False):
        event = {
            "version": "2.0",
            "routeKey": "$default",
            "rawPath": f"{PATH_PREFIX}{suffix}",
            "headers": {"content-type": "application/json"},
            "requestContext": {
                "http": {
                    "method": method,
                    "path": f"{PATH_PREFIX}{suffix}",
                }
            },
            "isBase64Encoded": False,
        }
        if raw_body is not None:
            event["body"] = raw_body
        elif body is not None:
            event["body"] = json.dumps(body)
        if base64_body and "body" in event:
            event["body"] = base64.b64encode(event["body"].encode("utf-8")).decode("ascii")
            event["isBase64Encoded"] = True
        return event

    return _make


@pytest.fixture
def sample_netlify_event():
    """Netlify Functions / API Gateway REST (v1) style event."""
    return {
        "httpMethod": "POST",
        "path": f"{PATH_PREFIX}/pageview",
        "headers": {"content-type": "application/json"},
        "body": json.dumps({"sessionId": "netlify-1", "page": "/docs", "referrer": "https://google.com/"}),
        "isBase64Encoded": False,
    }


@pytest.fixture
def sample_scheduled_event():
    """Sample EventBridge scheduled event."""
    return {
        "version": "0",
        "id": "53dc4d37-cffa-4f76-80c9-8b7d4a4d2eaa",
        "detail-type": "Scheduled Event",
        "source": "aws.events",
        "account": "123456789012",
        "time": "2024-01-15T12:10:00Z",
        "region": "us-west-2",
        "resources": ["arn:aws:events:us-west-2:123456789012:rule/live-stats-sweep"],
        "detail": {},
    }
