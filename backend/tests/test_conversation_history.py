"""
Unit tests for ConversationHistory.
"""

from voicechat.orchestration.conversation_history import ConversationHistory


class TestConversationHistory:

    def test_messages_kept_in_order(self):
        history = ConversationHistory()
        history.add("user", "bütçe ne kadar")
        history.add("assistant", "İki milyon.")

        messages = history.get_messages()
        assert [(m.role, m.text) for m in messages] == [
            ("user", "bütçe ne kadar"),
            ("assistant", "İki milyon."),
        ]
        assert messages[0].timestamp <= messages[1].timestamp

    def test_get_messages_returns_copy(self):
        history = ConversationHistory()
        history.add("user", "merhaba")

        history.get_messages().clear()

        assert len(history) == 1
