from sari.models import ChannelMode, WhatsAppConnection
from sari.services.connection_service import (
    get_active_connection,
    get_connection_by_phone,
    link_connection,
    list_polling_connections,
    normalize_phone,
    unlink_connection,
)


class TestNormalizePhone:
    def test_strips_chat_id_suffix(self):
        assert normalize_phone("966500000001@c.us") == "966500000001"

    def test_strips_formatting(self):
        assert normalize_phone("+966 50-000-0001") == "966500000001"

    def test_empty(self):
        assert normalize_phone(None) == ""
        assert normalize_phone("") == ""


class TestConnectionRegistry:
    def test_lookup_by_phone(self, db, connection):
        found = get_connection_by_phone(db, "966500000001@c.us")
        assert found.id == connection.id

    def test_unknown_phone(self, db, connection):
        assert get_connection_by_phone(db, "966599999999") is None

    def test_linking_invalidates_previous_connection(self, db, merchant, connection):
        replacement = link_connection(db, merchant.id, "+966 50 000 0002", "1101000002", "token-def")
        db.commit()

        db.refresh(connection)
        assert connection.is_active is False
        assert connection.unlinked_at is not None
        assert get_active_connection(db, merchant.id).id == replacement.id
        assert get_connection_by_phone(db, "966500000001") is None
        assert replacement.phone_number == "966500000002"

    def test_number_can_be_relinked_after_unlink(self, db, merchant, connection):
        assert unlink_connection(db, connection.id) is True
        db.commit()
        relinked = link_connection(db, merchant.id, "966500000001", "1101000003", "token-ghi")
        db.commit()

        assert get_connection_by_phone(db, "966500000001").id == relinked.id
        assert db.query(WhatsAppConnection).count() == 2

    def test_unlink_twice(self, db, connection):
        assert unlink_connection(db, connection.id) is True
        assert unlink_connection(db, connection.id) is False

    def test_list_polling_connections(self, db, polling_connection):
        polling = list_polling_connections(db)
        assert [c.id for c in polling] == [polling_connection.id]
        assert polling[0].channel_mode == ChannelMode.POLLING.value

    def test_webhook_connections_are_not_polled(self, db, connection):
        assert list_polling_connections(db) == []
