"""
Channel capability interface.

A channel is one mail provider (Gmail, Outlook). The pipeline only ever
talks to a provider through this interface, so tests swap in fakes and
new providers plug in by registering another implementation.

Contract:
    list_messages  page of provider message ids, newest first
    get_message    full raw provider payload
    parse_message  raw payload -> NormalizedMessage
    send_reply     threaded reply; returns SendResult, never raises for
                   provider rejections
    apply_label    tag a message (Gmail label / Outlook category)

list_messages, get_message and apply_label raise ChannelError on failure.
"""

from typing import Optional, Protocol

from autopilot.agent.schemas import MessagePage, NormalizedMessage, ReplyRequest, SendResult
from autopilot.errors import ChannelError


class ChannelClient(Protocol):
    provider: str

    def list_messages(
        self,
        token: str,
        max_results: int = 50,
        page_token: Optional[str] = None,
        query: Optional[str] = None,
    ) -> MessagePage:
        ...

    def get_message(self, token: str, message_id: str) -> dict:
        ...

    def parse_message(self, raw: dict) -> NormalizedMessage:
        ...

    def send_reply(self, token: str, request: ReplyRequest, from_address: str = "") -> SendResult:
        ...

    def apply_label(self, token: str, message_id: str, label: str) -> None:
        ...


class ChannelRegistry:
    """Maps a connection's provider name to its ChannelClient."""

    def __init__(self, clients: Optional[dict[str, ChannelClient]] = None):
        self._clients: dict[str, ChannelClient] = dict(clients or {})

    def register(self, client: ChannelClient) -> None:
        self._clients[client.provider] = client

    def get(self, provider: str) -> ChannelClient:
        client = self._clients.get(provider)
        if client is None:
            raise ChannelError(f"Unsupported provider: {provider}")
        return client

    def close(self) -> None:
        for client in self._clients.values():
            close = getattr(client, "close", None)
            if close:
                close()


def reply_subject(subject: Optional[str]) -> str:
    """'Re: <subject>' unless the subject already starts with 'Re:'."""
    subject = subject or ""
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"
