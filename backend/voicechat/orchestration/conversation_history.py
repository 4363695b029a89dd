"""
Conversation history for the voice chat.

Stores user/assistant chat messages in the order they happened.
"""

from typing import List, Literal

from voicechat.models import ChatMessage


class ConversationHistory:
    """
    Chronological list of chat messages.

    Unbounded: a meeting Q&A session is short.
    """

    def __init__(self) -> None:
        self._messages: List[ChatMessage] = []

    def add(self, role: Literal["user", "assistant"], text: str) -> ChatMessage:
        """
        Append a message.

        Args:
            role: "user" or "assistant"
            text: Message text

        Returns:
            The stored message
        """
        message = ChatMessage(role=role, text=text)
        self._messages.append(message)
        return message

    def get_messages(self) -> List[ChatMessage]:
        """Copy of all messages in order."""
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)
