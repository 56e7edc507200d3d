"""
Property Works — Notification dispatcher tests.

Covers:
    1. Recipient selection for status changes and quote rejections
    2. Channel isolation (push / email failures never block in-app)
    3. Push gateway client via an injected session
    4. Async queue: worker delivery and drop-on-full
"""

import threading
from unittest.mock import MagicMock, patch

import pytest
import requests
from flask import Flask

from propworks.models.notification import Notification
from propworks.services.email_service import EmailService
from propworks.services.notification_dispatcher import (
    NotificationDispatcher,
    NotificationEvent,
    get_dispatcher,
)
from propworks.services.push_service import PushService


class TestRecipients:
    def test_status_change_reaches_creator_and_participants_except_actor(
        self, factory, dispatcher, manager, provider, tenant,
    ):
        iv = factory.intervention("approved", created_by=tenant)
        factory.assign(iv, manager, is_primary=True)
        factory.assign(iv, provider, is_primary=True)
        factory.assign(iv, tenant)

        dispatcher.notify_status_changed(iv, "approved", "cancelled", manager.id, "No budget")

        recipients = sorted(n.user_id for n in Notification.query.all())
        assert recipients == sorted([tenant.id, provider.id])
        note = Notification.query.filter_by(user_id=tenant.id).one()
        assert note.metadata_dict["to_status"] == "cancelled"
        assert note.metadata_dict["reason"] == "No budget"
        assert dispatcher.stats()["processed"] == 1

    def test_quote_rejected_targets_provider(self, dispatcher, provider):
        dispatcher.notify_quote_rejected({
            "quote_id": 5, "intervention_id": 9, "provider_id": provider.id,
            "reason": "Over budget", "rejected_by": 1,
        })
        note = Notification.query.one()
        assert note.user_id == provider.id
        assert note.entity_type == "quote"
        assert note.entity_id == 5

    def test_empty_recipient_list_is_ignored(self, dispatcher):
        dispatcher.notify_users([], "system", "Nothing", "Nobody to tell")
        assert dispatcher.stats()["processed"] == 0

    def test_get_dispatcher_returns_app_instance(self, app, dispatcher):
        assert get_dispatcher() is dispatcher


class TestChannelIsolation:
    def test_push_failure_keeps_in_app(self, dispatcher, provider):
        with patch.object(PushService, "send", side_effect=requests.ConnectionError("gateway down")):
            dispatcher.notify_users([provider.id], "quote_requested", "Quote please", "Details")

        assert Notification.query.filter_by(user_id=provider.id).count() == 1
        assert dispatcher.stats()["channel_failures"] == 1

    def test_email_failure_keeps_in_app(self, app, dispatcher, provider, monkeypatch):
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.example.test")
        with patch("propworks.services.email_service.smtplib.SMTP", side_effect=OSError("refused")):
            dispatcher.notify_users([provider.id], "quote_requested", "Quote please", "Details")

        assert Notification.query.filter_by(user_id=provider.id).count() == 1
        assert dispatcher.stats()["channel_failures"] == 1

    def test_in_app_failure_does_not_stop_push(self, dispatcher, provider):
        with patch("propworks.services.notification_dispatcher.NotificationService.create_for_users",
                   side_effect=RuntimeError("insert failed")), \
             patch.object(PushService, "send", return_value=True) as push:
            dispatcher.notify_users([provider.id], "quote_requested", "Quote please", "Details")

        push.assert_called_once()
        assert dispatcher.stats()["channel_failures"] == 1


class TestPushService:
    def test_log_only_without_gateway(self, app):
        session = MagicMock()
        assert PushService(session=session).send(tokens=["t1"], title="Hi", message="There") is False
        session.post.assert_not_called()

    def test_posts_to_gateway(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "PUSH_GATEWAY_URL", "https://push.example.test/send")
        session = MagicMock()
        session.post.return_value.raise_for_status.return_value = None

        sent = PushService(session=session).send(
            tokens=["t1", None, "t2"], title="Quote rejected", message="Sorry", data={"id": 3},
        )

        assert sent is True
        args, kwargs = session.post.call_args
        assert args[0] == "https://push.example.test/send"
        assert kwargs["json"]["tokens"] == ["t1", "t2"]
        assert kwargs["json"]["data"] == {"id": 3}
        assert kwargs["timeout"] == app.config["PUSH_GATEWAY_TIMEOUT"]

    def test_gateway_error_raises(self, app, monkeypatch):
        monkeypatch.setitem(app.config, "PUSH_GATEWAY_URL", "https://push.example.test/send")
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("503")
        with pytest.raises(requests.HTTPError):
            PushService(session=session).send(tokens=["t1"], title="x", message="y")

    def test_no_tokens(self, app):
        assert PushService(session=MagicMock()).send(tokens=[], title="x", message="y") is False


class TestEmailService:
    def test_user_text_is_escaped_in_html_body(self, app, factory):
        user = factory.user(name="<b>Ana</b>")
        with patch.object(EmailService, "send", return_value=True) as send:
            EmailService.send_notification(
                user=user,
                title="<script>alert(1)</script>",
                message="Leak & <img src=x>",
                entity_type="intervention",
                entity_id=4,
            )

        html = send.call_args.kwargs["html_body"]
        assert "<script>" not in html
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in html
        assert "Leak &amp; &lt;img src=x&gt;" in html
        assert "Hello &lt;b&gt;Ana&lt;/b&gt;," in html
        assert '<p style="color: #94a3b8; font-size: 12px;">intervention #4</p>' in html

    def test_subject_stays_plain_text(self, app, factory):
        user = factory.user()
        with patch.object(EmailService, "send", return_value=True) as send:
            EmailService.send_notification(user=user, title="Tap & sink", message="x")
        assert send.call_args.kwargs["subject"] == "[Property Works] Tap & sink"


# ═══════════════════════════════════════════════════════════════════════════
#  Async mode
# ═══════════════════════════════════════════════════════════════════════════


def _async_dispatcher(maxsize=10):
    flask_app = Flask("dispatcher-test")
    flask_app.config.update(NOTIFICATION_DISPATCH_MODE="async", NOTIFICATION_QUEUE_MAXSIZE=maxsize)
    return NotificationDispatcher(flask_app)


class TestAsyncQueue:
    def test_worker_delivers_in_background(self):
        d = _async_dispatcher()
        with patch.object(NotificationDispatcher, "_deliver") as deliver:
            d.notify_users([1, 2, 2], "system", "Hello", "World")
            d.flush()
            d.shutdown()

        deliver.assert_called_once()
        event = deliver.call_args.args[0]
        assert isinstance(event, NotificationEvent)
        assert event.user_ids == (1, 2)

    def test_full_queue_drops_event(self):
        d = _async_dispatcher(maxsize=1)
        with patch.object(NotificationDispatcher, "_ensure_worker"):
            d.notify_users([1], "system", "First", "kept")
            d.notify_users([1], "system", "Second", "dropped")

        stats = d.stats()
        assert stats["queued"] == 1
        assert stats["dropped"] == 1
        assert stats["mode"] == "async"

    def test_drop_counter_exact_under_concurrent_producers(self):
        d = _async_dispatcher(maxsize=1)
        producers, per_thread = 8, 50

        def produce():
            for _ in range(per_thread):
                d.notify_users([1], "system", "Burst", "x")

        with patch.object(NotificationDispatcher, "_ensure_worker"):
            threads = [threading.Thread(target=produce) for _ in range(producers)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        stats = d.stats()
        assert stats["queued"] == 1
        assert stats["dropped"] == producers * per_thread - 1
