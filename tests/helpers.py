from __future__ import annotations

import json
from email.message import EmailMessage

from email_chatbot import InboundMessage, Settings


def make_settings(
    *,
    openai_model: str | None = None,
    openai_timeout_seconds: float = 20.0,
) -> Settings:
    return Settings(
        imap_host="imap.example.test",
        imap_port=993,
        imap_username="bot@example.test",
        imap_password="imap-password",
        smtp_host="smtp.example.test",
        smtp_port=587,
        smtp_username="bot@example.test",
        smtp_password="smtp-password",
        openai_endpoint="https://llm.example.test/chat/completions",
        openai_key="test-api-key",
        openai_model=openai_model,
        openai_timeout_seconds=openai_timeout_seconds,
        mail_timeout_seconds=60.0,
        imap_folder="INBOX",
    )


def make_inbound_message(
    *,
    uid: str = "100",
    from_addresses: tuple[str, ...] = ("asker@example.test",),
    subject: str = "Help",
    text_body: str | None = "What is six times seven?",
    html_body: str | None = None,
) -> InboundMessage:
    sender = f"Asker <{from_addresses[0]}>" if from_addresses else ""
    return InboundMessage(
        uid=uid,
        sender=sender,
        from_addresses=from_addresses,
        subject=subject,
        message_id=f"<msg-{uid}@example.test>",
        text_body=text_body,
        html_body=html_body,
    )


def make_raw_email(
    *,
    sender: str | None = "Asker <asker@example.test>",
    subject: str = "Help",
    text_body: str | None = "What is six times seven?",
    html_body: str | None = None,
) -> bytes:
    message = EmailMessage()
    if sender is not None:
        message["From"] = sender
    message["To"] = "bot@example.test"
    message["Subject"] = subject
    message["Message-ID"] = "<msg-100@example.test>"
    if text_body is not None:
        message.set_content(text_body)
        if html_body is not None:
            message.add_alternative(html_body, subtype="html")
    elif html_body is not None:
        message.set_content(html_body, subtype="html")
    return message.as_bytes()


def completion_payload(content: object) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class FakeHTTPResponse:
    def __init__(self, payload: object, status: int = 200) -> None:
        if isinstance(payload, bytes):
            self._raw = payload
        else:
            self._raw = json.dumps(payload).encode("utf-8")
        self.status = status

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> "FakeHTTPResponse":
        return self

    def __exit__(self, *_args) -> None:
        return None


class FakeIMAP:
    """In-memory stand-in for the IMAP4_SSL calls the pipeline makes."""

    def __init__(
        self,
        *,
        messages: dict[str, bytes] | None = None,
        unseen: list[str] | None = None,
        select_status: str = "OK",
        search_status: str = "OK",
        store_status: str = "OK",
    ) -> None:
        self.messages = dict(messages or {})
        self.unseen = list(unseen if unseen is not None else self.messages)
        self.select_status = select_status
        self.search_status = search_status
        self.store_status = store_status
        self.seen: set[str] = set()
        self.store_calls: list[str] = []
        self.fetch_calls: list[tuple[str, str]] = []
        self.select_calls: list[tuple[str, bool]] = []
        self.state = "AUTH"
        self.closed = False
        self.logged_out = False

    def select(self, mailbox: str, readonly: bool = False):
        self.select_calls.append((mailbox, readonly))
        if self.select_status == "OK":
            self.state = "SELECTED"
            return "OK", [str(len(self.messages)).encode("ascii")]
        return self.select_status, [b"no such mailbox"]

    def uid(self, command: str, *args):
        if command == "SEARCH":
            if self.search_status != "OK":
                return self.search_status, [b"search failed"]
            pending = [uid for uid in self.unseen if uid not in self.seen]
            return "OK", [" ".join(pending).encode("ascii")]
        if command == "FETCH":
            uid, query = str(args[0]), str(args[1])
            self.fetch_calls.append((uid, query))
            raw = self.messages.get(uid)
            if raw is None:
                return "OK", [None]
            meta = f"1 (UID {uid} BODY[] {{{len(raw)}}}".encode("ascii")
            return "OK", [(meta, raw), b")"]
        if command == "STORE":
            uid = str(args[0])
            self.store_calls.append(uid)
            if self.store_status != "OK":
                return self.store_status, [b"store failed"]
            self.seen.add(uid)
            return "OK", [b""]
        raise AssertionError(f"Unsupported UID command in test fake: {command}")

    def close(self):
        self.closed = True
        self.state = "AUTH"
        return "OK", [b""]

    def logout(self):
        self.logged_out = True
        self.state = "LOGOUT"
        return "BYE", [b""]


BASE_ENV = {
    "IMAP_Host": "imap.example.test",
    "IMAP_Username": "bot@example.test",
    "IMAP_Password": "imap-password",
    "SMTP_Host": "smtp.example.test",
    "SMTP_Username": "bot@example.test",
    "SMTP_Password": "smtp-password",
    "OPENAI_Endpoint": "https://llm.example.test/chat/completions",
    "OPENAI_Key": "test-api-key",
}
