import asyncio
from unittest.mock import AsyncMock, Mock, patch

import pytest

from sari.errors import PersistenceFailure, ProviderError
from sari.models import Message
from sari.services import polling_service
from sari.services.ingest_service import IngestResult, IngestStatus
from sari.services.polling_service import PollingLease, PollingSupervisor, PollingTarget, PollingWorker


def _target(connection):
    return PollingTarget(
        connection_id=connection.id,
        merchant_id=connection.merchant_id,
        instance_id=connection.instance_id,
        api_token=connection.api_token,
    )


def _worker(connection, session_factory, client=None, **kwargs):
    kwargs.setdefault("reply_handler", Mock())
    kwargs.setdefault("sleep_func", AsyncMock())
    return PollingWorker(
        _target(connection),
        client=client or Mock(),
        session_factory=session_factory,
        max_attempts=3,
        retry_backoff_seconds=0.5,
        **kwargs,
    )


class TestHandleNotification:
    @pytest.mark.asyncio
    async def test_accepted_is_stored_deleted_and_replied(self, db, session_factory, polling_connection, make_payload):
        worker = _worker(polling_connection, session_factory)

        outcome = await worker.handle_notification({"receiptId": 11, "body": make_payload(id_message="P-1")})

        assert outcome == "accepted"
        stored = db.query(Message).one()
        assert stored.provider_message_id == "P-1"
        worker.client.delete_notification.assert_called_once_with(11)
        worker.reply_handler.assert_called_once_with(stored.id, True)

    @pytest.mark.asyncio
    async def test_duplicate_is_deleted_without_reply(self, db, session_factory, polling_connection, make_payload):
        worker = _worker(polling_connection, session_factory)
        payload = make_payload(id_message="P-2")

        await worker.handle_notification({"receiptId": 1, "body": payload})
        worker.reply_handler.reset_mock()
        outcome = await worker.handle_notification({"receiptId": 2, "body": payload})

        assert outcome == "duplicate"
        worker.client.delete_notification.assert_called_with(2)
        worker.reply_handler.assert_not_called()
        assert db.query(Message).count() == 1

    @pytest.mark.asyncio
    async def test_malformed_is_dropped(self, session_factory, polling_connection, make_payload):
        worker = _worker(polling_connection, session_factory)
        payload = make_payload()
        del payload["idMessage"]

        outcome = await worker.handle_notification({"receiptId": 3, "body": payload})

        assert outcome == "malformed"
        worker.client.delete_notification.assert_called_once_with(3)

    @pytest.mark.asyncio
    async def test_wrongly_shaped_section_is_dropped(self, db, session_factory, polling_connection, make_payload):
        worker = _worker(polling_connection, session_factory)
        payload = make_payload()
        payload["messageData"] = ["not", "an", "object"]

        outcome = await worker.handle_notification({"receiptId": 8, "body": payload})

        assert outcome == "malformed"
        worker.client.delete_notification.assert_called_once_with(8)
        assert db.query(Message).count() == 0

    @pytest.mark.asyncio
    @patch("sari.services.polling_service.alert_error")
    async def test_unexpected_error_drops_item_and_alerts(self, mock_alert, session_factory, polling_connection):
        worker = _worker(polling_connection, session_factory)

        with patch.object(polling_service, "ingest", side_effect=AttributeError("boom")) as mock_ingest:
            outcome = await worker.handle_notification({"receiptId": 9, "body": {}})

        assert outcome == "dropped"
        assert mock_ingest.call_count == 1
        worker.client.delete_notification.assert_called_once_with(9)
        worker.reply_handler.assert_not_called()
        mock_alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_unknown_connection_is_dropped(self, session_factory, polling_connection, make_payload):
        worker = _worker(polling_connection, session_factory)

        outcome = await worker.handle_notification({"receiptId": 4, "body": make_payload(wid="966599999999")})

        assert outcome == "unknown_connection"
        worker.client.delete_notification.assert_called_once_with(4)

    @pytest.mark.asyncio
    async def test_status_event_is_ignored_and_deleted(self, session_factory, polling_connection):
        worker = _worker(polling_connection, session_factory)

        outcome = await worker.handle_notification(
            {"receiptId": 5, "body": {"typeWebhook": "outgoingMessageStatus", "status": "delivered"}}
        )

        assert outcome == "ignored"
        worker.client.delete_notification.assert_called_once_with(5)
        worker.reply_handler.assert_not_called()

    @pytest.mark.asyncio
    @patch("sari.services.polling_service.alert_error")
    async def test_persistent_failure_leaves_item_queued(self, mock_alert, session_factory, polling_connection):
        worker = _worker(polling_connection, session_factory)

        with patch.object(polling_service, "ingest", side_effect=PersistenceFailure("db down")) as mock_ingest:
            outcome = await worker.handle_notification({"receiptId": 6, "body": {}})

        assert outcome == "failed"
        assert mock_ingest.call_count == 3
        assert [c.args[0] for c in worker.sleep_func.await_args_list] == [0.5, 1.0]
        worker.client.delete_notification.assert_not_called()
        mock_alert.assert_called_once()

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, session_factory, polling_connection):
        worker = _worker(polling_connection, session_factory)
        message_id = object()
        accepted = IngestResult(status=IngestStatus.ACCEPTED, message_id=message_id)

        with patch.object(polling_service, "ingest", side_effect=[PersistenceFailure("db down"), accepted]):
            outcome = await worker.handle_notification({"receiptId": 7, "body": {}})

        assert outcome == "accepted"
        worker.client.delete_notification.assert_called_once_with(7)
        worker.reply_handler.assert_called_once_with(message_id, False)


class TestTick:
    @pytest.mark.asyncio
    async def test_drains_queue(self, db, session_factory, polling_connection, make_payload):
        client = Mock()
        client.receive_notification.side_effect = [
            {"receiptId": 1, "body": make_payload(id_message="T-1")},
            {"receiptId": 2, "body": make_payload(id_message="T-2")},
            None,
        ]
        worker = _worker(polling_connection, session_factory, client=client)

        handled = await worker.tick()

        assert handled == 2
        assert db.query(Message).count() == 2

    @pytest.mark.asyncio
    async def test_provider_error_ends_tick(self, session_factory, polling_connection):
        client = Mock()
        client.receive_notification.side_effect = ProviderError("Green API receiveNotification error: 502", 502, True)
        worker = _worker(polling_connection, session_factory, client=client)

        assert await worker.tick() == 0

    @pytest.mark.asyncio
    async def test_skips_when_lease_held_elsewhere(self, session_factory, polling_connection):
        redis_client = Mock()
        redis_client.set.return_value = False
        redis_client.get.return_value = "someone-else"
        client = Mock()
        worker = _worker(
            polling_connection,
            session_factory,
            client=client,
            lease=PollingLease(redis_client, polling_connection.id, 30),
        )

        assert await worker.tick() == 0
        client.receive_notification.assert_not_called()


class TestPollingLease:
    def test_acquire_and_renew(self):
        redis_client = Mock()
        lease = PollingLease(redis_client, "conn-1", 30)
        redis_client.set.return_value = True

        assert lease.acquire() is True
        redis_client.set.assert_called_once_with("sari:polling_lease:conn-1", lease.owner, nx=True, ex=30)

        redis_client.set.return_value = None
        redis_client.get.return_value = lease.owner
        assert lease.acquire() is True
        redis_client.expire.assert_called_once_with("sari:polling_lease:conn-1", 30)


class TestPollingSupervisor:
    @pytest.mark.asyncio
    async def test_reconcile_starts_and_stops_workers(self, db, session_factory, polling_connection):
        started = []

        def worker_factory(target):
            worker = Mock()

            async def run():
                started.append(target)
                await asyncio.Event().wait()

            worker.run = run
            return worker

        supervisor = PollingSupervisor(session_factory=session_factory, worker_factory=worker_factory)

        await supervisor.reconcile()
        await asyncio.sleep(0)
        assert [t.connection_id for t in started] == [polling_connection.id]
        assert len(supervisor.tasks) == 1

        polling_connection.is_active = False
        db.commit()
        await supervisor.reconcile()
        assert supervisor.tasks == {}

        await supervisor.stop()

    def test_polling_disabled_under_pytest(self):
        assert polling_service.is_polling_enabled() is False
