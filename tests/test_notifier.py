from types import SimpleNamespace

import pytest
import requests

from helpdesk import config, notifier
from helpdesk.notifier import (
    TICKET_CREATED,
    TICKET_UPDATED,
    GraphNotifier,
    NullNotifier,
    build_notifier,
    render_message,
)


class FakeMsalApp:
    instances = []

    def __init__(self, client_id, authority=None, client_credential=None):
        self.client_id = client_id
        self.calls = 0
        FakeMsalApp.instances.append(self)

    def acquire_token_for_client(self, scopes):
        self.calls += 1
        return {"access_token": "app-token", "expires_in": 3600}


@pytest.fixture
def graph(monkeypatch):
    FakeMsalApp.instances = []
    monkeypatch.setattr(notifier, "ConfidentialClientApplication", FakeMsalApp)
    return GraphNotifier(
        client_id="client",
        client_secret="secret",
        authority="https://login.microsoftonline.com/tenant",
        sender="helpdesk@example.com",
    )


def capture_posts(monkeypatch, status_code=202):
    posts = []

    def fake_post(url, headers=None, json=None, timeout=None):
        posts.append({"url": url, "headers": headers, "json": json})
        return SimpleNamespace(status_code=status_code, text="boom")

    monkeypatch.setattr(requests, "post", fake_post)
    return posts


def test_render_message_escapes_user_content():
    subject, body = render_message(
        TICKET_UPDATED,
        {"ticket_id": "t1", "subject": "<b>VPN</b>", "status": "resolved", "message": "line one\n<script>x</script>"},
    )

    assert subject == "Ticket Update: <b>VPN</b>"
    assert "&lt;b&gt;VPN&lt;/b&gt;" in body
    assert "<script>" not in body
    assert "line one<br>" in body


def test_render_message_rejects_unknown_kind():
    with pytest.raises(ValueError):
        render_message("password_reset", {})


def test_null_notifier_skips():
    result = NullNotifier().notify("a@example.com", TICKET_CREATED, {"ticket_id": "t1"})

    assert result.status == "skipped"
    assert result.reason == "email sending disabled"


def test_graph_notifier_sends_and_caches_token(graph, monkeypatch):
    posts = capture_posts(monkeypatch)

    first = graph.notify("owner@example.com", TICKET_CREATED, {"ticket_id": "t1", "subject": "Printer"})
    second = graph.notify("owner@example.com", TICKET_CREATED, {"ticket_id": "t2", "subject": "Scanner"})

    assert first.status == second.status == "sent"
    assert len(posts) == 2
    assert posts[0]["url"] == "https://graph.microsoft.com/v1.0/users/helpdesk%40example.com/sendMail"
    assert posts[0]["headers"]["Authorization"] == "Bearer app-token"
    message = posts[0]["json"]["message"]
    assert message["toRecipients"] == [{"emailAddress": {"address": "owner@example.com"}}]
    assert message["subject"] == "Ticket Created: Printer"
    assert FakeMsalApp.instances[0].calls == 1


def test_graph_failure_becomes_skipped(graph, monkeypatch):
    capture_posts(monkeypatch, status_code=500)

    result = graph.notify("owner@example.com", TICKET_CREATED, {"ticket_id": "t1"})

    assert result.status == "skipped"
    assert "500" in result.reason


def test_graph_transport_error_becomes_skipped(graph, monkeypatch):
    def refuse(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(requests, "post", refuse)

    result = graph.notify("owner@example.com", TICKET_CREATED, {"ticket_id": "t1"})

    assert result.status == "skipped"
    assert "connection refused" in result.reason


def test_graph_token_error_becomes_skipped(graph, monkeypatch):
    posts = capture_posts(monkeypatch)
    monkeypatch.setattr(
        FakeMsalApp,
        "acquire_token_for_client",
        lambda self, scopes: {"error": "invalid_client", "error_description": "bad secret"},
    )

    result = graph.notify("owner@example.com", TICKET_CREATED, {"ticket_id": "t1"})

    assert result.status == "skipped"
    assert "bad secret" in result.reason
    assert posts == []


def test_graph_without_recipient_or_sender_skips(graph, monkeypatch):
    posts = capture_posts(monkeypatch)

    no_recipient = graph.notify(None, TICKET_CREATED, {"ticket_id": "t1"})
    graph.sender = None
    no_sender = graph.notify("owner@example.com", TICKET_CREATED, {"ticket_id": "t1"})

    assert no_recipient.reason == "no recipient"
    assert no_sender.status == "skipped"
    assert posts == []


def test_build_notifier_falls_back_to_null(monkeypatch):
    monkeypatch.setattr(config, "MAIL_SENDER", None)
    assert isinstance(build_notifier(), NullNotifier)

    monkeypatch.setattr(config, "CLIENT_ID", "client")
    monkeypatch.setattr(config, "CLIENT_SECRET", "secret")
    monkeypatch.setattr(config, "AUTHORITY", "https://login.microsoftonline.com/tenant")
    monkeypatch.setattr(config, "MAIL_SENDER", "helpdesk@example.com")
    assert isinstance(build_notifier(), GraphNotifier)
