"""
Tests for the conversation repository (storage.py).

Tests cover:
- Atomic get-or-create of clients and open conversations under races
- Message idempotency on external_id
- Listing order, filters and pagination
- Stats and timestamp helpers
"""

import pytest

from supportdesk import models, storage

PHONE = "5511999990000"


def make_conversation(db, phone=PHONE, tenant_id="acme"):
    client = storage.get_or_create_client(db, phone)
    conversation, created = storage.get_or_create_open_conversation(db, client, phone, tenant_id)
    return client, conversation, created


class TestClients:

    def test_first_contact_creates_placeholder_client(self, db):
        client = storage.get_or_create_client(db, PHONE)

        assert client.name == "Cliente 5511999990000"
        assert client.notes
        assert client.created_at.endswith("Z")

    def test_existing_client_is_returned(self, db):
        first = storage.get_or_create_client(db, PHONE)
        second = storage.get_or_create_client(db, PHONE)

        assert first.id == second.id
        assert db.query(models.Client).count() == 1

    def test_concurrent_client_insert_recovers(self, db, monkeypatch):
        winner = storage.get_or_create_client(db, PHONE)

        real = storage.get_client_by_phone
        calls = []

        def stale_then_real(session, phone):
            calls.append(phone)
            if len(calls) == 1:
                return None
            return real(session, phone)

        monkeypatch.setattr(storage, "get_client_by_phone", stale_then_real)

        loser = storage.get_or_create_client(db, PHONE)

        assert loser.id == winner.id
        assert db.query(models.Client).count() == 1

    def test_backfill_only_replaces_placeholder(self, db):
        client, conversation, _ = make_conversation(db)

        assert storage.backfill_client_name(db, client, "Maria") is True
        assert storage.backfill_client_name(db, client, "Outra") is False
        assert storage.backfill_client_name(db, client, "   ") is False

        db.expire_all()
        assert client.name == "Maria"
        assert storage.get_conversation(db, conversation.id).contact_name == "Maria"


class TestOpenConversationUniqueness:

    def test_get_or_create_reuses_open_conversation(self, db):
        _, first, created_first = make_conversation(db)
        _, second, created_second = make_conversation(db)

        assert created_first is True
        assert created_second is False
        assert first.id == second.id

    def test_concurrent_insert_returns_winner(self, db, monkeypatch):
        client, winner, _ = make_conversation(db)

        real = storage.find_open_conversation
        calls = []

        def stale_then_real(session, phone, tenant_id):
            calls.append(phone)
            if len(calls) == 1:
                # Simulates a request that checked before the winner committed
                return None
            return real(session, phone, tenant_id)

        monkeypatch.setattr(storage, "find_open_conversation", stale_then_real)

        loser, created = storage.get_or_create_open_conversation(db, client, PHONE, "acme")

        assert created is False
        assert loser.id == winner.id
        assert db.query(models.Conversation).count() == 1

    def test_closed_conversations_do_not_block_a_new_one(self, db):
        client, first, _ = make_conversation(db)
        storage.set_conversation_status(db, first, "closed")

        second, created = storage.get_or_create_open_conversation(db, client, PHONE, "acme")

        assert created is True
        assert second.id != first.id

        storage.set_conversation_status(db, second, "completed")
        third, created = storage.get_or_create_open_conversation(db, client, PHONE, "acme")
        assert created is True
        assert db.query(models.Conversation).count() == 3

    def test_in_progress_counts_as_open(self, db):
        client, first, _ = make_conversation(db)
        storage.set_conversation_status(db, first, "in_progress")

        again, created = storage.get_or_create_open_conversation(db, client, PHONE, "acme")

        assert created is False
        assert again.id == first.id

    def test_set_conversation_status_reports_change(self, db):
        _, conversation, _ = make_conversation(db)

        assert storage.set_conversation_status(db, conversation, "in_progress") is True
        assert storage.set_conversation_status(db, conversation, "in_progress") is False

    def test_reopening_beside_an_open_conversation_conflicts(self, db):
        client, first, _ = make_conversation(db)
        storage.set_conversation_status(db, first, "closed")
        second, _ = storage.get_or_create_open_conversation(db, client, PHONE, "acme")

        with pytest.raises(storage.ConversationConflict):
            storage.set_conversation_status(db, first, "waiting")

        db.expire_all()
        assert db.get(models.Conversation, first.id).status == "closed"
        assert db.get(models.Conversation, second.id).status == "waiting"


class TestMessages:

    def test_duplicate_external_id_is_rejected(self, db):
        _, conversation, _ = make_conversation(db)

        message, dup = storage.create_message(db, conversation.id, "Olá", "incoming",
                                              "2025-01-15T10:00:00Z", external_id="X1")
        again, dup_again = storage.create_message(db, conversation.id, "Olá", "incoming",
                                                  "2025-01-15T10:00:00Z", external_id="X1")

        assert message is not None and dup is False
        assert again is None and dup_again is True
        assert db.query(models.Message).count() == 1

    def test_messages_without_external_id_never_conflict(self, db):
        _, conversation, _ = make_conversation(db)

        for _ in range(2):
            message, dup = storage.create_message(db, conversation.id, "resposta", "outgoing",
                                                  "2025-01-15T10:00:00Z", is_read=True)
            assert dup is False

        assert db.query(models.Message).count() == 2

    def test_find_message_by_external_id_is_tenant_scoped(self, db):
        _, acme_conv, _ = make_conversation(db, tenant_id="acme")
        storage.create_message(db, acme_conv.id, "Olá", "incoming", "2025-01-15T10:00:00Z", external_id="X1")

        assert storage.find_message_by_external_id(db, "acme", "X1") is not None
        assert storage.find_message_by_external_id(db, "globex", "X1") is None

    def test_get_messages_oldest_first(self, db):
        _, conversation, _ = make_conversation(db)
        storage.create_message(db, conversation.id, "segunda", "incoming", "2025-01-15T10:01:00Z", external_id="B")
        storage.create_message(db, conversation.id, "primeira", "incoming", "2025-01-15T10:00:00Z", external_id="A")
        storage.create_message(db, conversation.id, "terceira", "outgoing", "2025-01-15T10:02:00Z")

        messages, total = storage.get_messages(db, conversation.id)

        assert total == 3
        assert [m.content for m in messages] == ["primeira", "segunda", "terceira"]

        page, total = storage.get_messages(db, conversation.id, limit=1, offset=1)
        assert total == 3
        assert [m.content for m in page] == ["segunda"]

    def test_touch_conversation(self, db):
        _, conversation, _ = make_conversation(db)

        storage.touch_conversation(db, conversation, "um", "2025-01-15T10:00:00Z")
        storage.touch_conversation(db, conversation, "dois", "2025-01-15T10:01:00Z")
        storage.touch_conversation(db, conversation, "resposta", "2025-01-15T10:02:00Z", incoming=False)

        db.expire_all()
        stored = storage.get_conversation(db, conversation.id)
        assert stored.unread_count == 2
        assert stored.last_message == "resposta"
        assert stored.last_message_at == "2025-01-15T10:02:00Z"


class TestListConversations:

    def _seed(self, db):
        rows = [
            ("5511900000001", "acme", "2025-01-15T10:00:00Z", "waiting"),
            ("5511900000002", "acme", "2025-01-15T12:00:00Z", "in_progress"),
            ("5511900000003", "globex", "2025-01-15T11:00:00Z", "waiting"),
        ]
        for phone, tenant_id, ts, status in rows:
            _, conversation, _ = make_conversation(db, phone=phone, tenant_id=tenant_id)
            storage.touch_conversation(db, conversation, "msg", ts)
            storage.set_conversation_status(db, conversation, status)

    def test_most_recent_first(self, db):
        self._seed(db)

        conversations, total = storage.list_conversations(db)

        assert total == 3
        assert [c.contact_phone for c in conversations] == [
            "5511900000002", "5511900000003", "5511900000001",
        ]

    def test_filters(self, db):
        self._seed(db)

        acme, acme_total = storage.list_conversations(db, tenant_id="acme")
        waiting, waiting_total = storage.list_conversations(db, status="waiting")

        assert acme_total == 2
        assert {c.whatsapp_connection_id for c in acme} == {"acme"}
        assert waiting_total == 2
        assert {c.status for c in waiting} == {"waiting"}

    def test_pagination_keeps_total(self, db):
        self._seed(db)

        page, total = storage.list_conversations(db, limit=1, offset=2)

        assert total == 3
        assert [c.contact_phone for c in page] == ["5511900000001"]


class TestConnections:

    def test_upsert_connection(self, db):
        created = storage.upsert_connection(db, "acme", "Acme", "evolution", "qr_ready", qr_code="QR")
        updated = storage.upsert_connection(db, "acme", "Acme Support", "evolution", "connecting")

        assert created.id == updated.id
        assert updated.name == "Acme Support"
        assert updated.qr_code is None
        assert db.query(models.WhatsAppConnection).count() == 1

    def test_update_connection_status(self, db):
        connection = storage.upsert_connection(db, "acme", "Acme", "evolution", "disconnected")

        storage.update_connection_status(db, connection, "qr_ready", qr_code="QR")
        assert connection.qr_code == "QR"

        storage.update_connection_status(db, connection, "connected")
        assert connection.connection_status == "connected"
        assert connection.qr_code is None


class TestStatsAndHelpers:

    def test_stats(self, db):
        _, conversation, _ = make_conversation(db)
        storage.create_message(db, conversation.id, "Olá", "incoming", "2025-01-15T10:00:00Z", external_id="A")
        storage.create_message(db, conversation.id, "Oi!", "outgoing", "2025-01-15T10:00:03Z", is_read=True)
        storage.set_conversation_status(db, conversation, "closed")
        make_conversation(db, phone="5511900000009")

        stats = storage.get_stats(db)

        assert stats == {
            "total_conversations": 2,
            "conversations_by_status": {"closed": 1, "waiting": 1},
            "total_messages": 2,
            "messages_by_direction": {"incoming": 1, "outgoing": 1},
            "unread_messages": 1,
        }

    def test_stats_empty(self, db):
        stats = storage.get_stats(db)

        assert stats["total_conversations"] == 0
        assert stats["total_messages"] == 0
        assert stats["unread_messages"] == 0

    @pytest.mark.parametrize("epoch,expected", [
        (1736935200, "2025-01-15T10:00:00Z"),
        ("1736935200", "2025-01-15T10:00:00Z"),
        (1736935200000, "2025-01-15T10:00:00Z"),
    ])
    def test_epoch_to_iso(self, epoch, expected):
        assert storage.epoch_to_iso(epoch) == expected

    @pytest.mark.parametrize("epoch", [None, "", "soon", 10**20, -10**20, "inf", "nan"])
    def test_epoch_to_iso_falls_back_to_now(self, epoch):
        value = storage.epoch_to_iso(epoch)

        assert value.endswith("Z")
        assert len(value) == len("2025-01-15T10:00:00Z")

    def test_db_health(self, db):
        assert storage.check_db_health() is True
