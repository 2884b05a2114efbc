#!/usr/bin/env python3
"""EmailChatbot worker that answers unread IMAP messages with a completion endpoint."""

from __future__ import annotations

import argparse
import http.client
import imaplib
import json
import logging
import os
import smtplib
import ssl
import sys
import time
import urllib.error
import urllib.request
from dataclasses import asdict, dataclass, field
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import formatdate, getaddresses, make_msgid
from pathlib import Path
from typing import Iterable, Mapping


LOGGER_NAME = "email_chatbot"
DEFAULT_IMAP_PORT = 993
DEFAULT_SMTP_PORT = 587
DEFAULT_IMAP_FOLDER = "INBOX"
DEFAULT_OPENAI_TIMEOUT_SECONDS = 20.0
DEFAULT_MAIL_TIMEOUT_SECONDS = 60.0
DEFAULT_INTERVAL_SECONDS = 300
DEFAULT_LOG_LEVEL = "INFO"
FALLBACK_ANSWER = "Sorry, I couldn't generate a response at this time."
REPLY_SUBJECT_PREFIX = "Re: "
LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_IMAP_HOST = "IMAP_Host"
ENV_IMAP_PORT = "IMAP_Port"
ENV_IMAP_USERNAME = "IMAP_Username"
ENV_IMAP_PASSWORD = "IMAP_Password"
ENV_IMAP_FOLDER = "IMAP_Folder"
ENV_SMTP_HOST = "SMTP_Host"
ENV_SMTP_PORT = "SMTP_Port"
ENV_SMTP_USERNAME = "SMTP_Username"
ENV_SMTP_PASSWORD = "SMTP_Password"
ENV_OPENAI_ENDPOINT = "OPENAI_Endpoint"
ENV_OPENAI_KEY = "OPENAI_Key"
ENV_OPENAI_MODEL = "OPENAI_Model"
ENV_OPENAI_TIMEOUT_SECONDS = "OPENAI_Timeout_Seconds"
ENV_MAIL_TIMEOUT_SECONDS = "MAIL_Timeout_Seconds"
ENV_LOG_LEVEL = "LOG_LEVEL"
REQUIRED_ENV_VARS = (
    ENV_IMAP_HOST,
    ENV_IMAP_USERNAME,
    ENV_IMAP_PASSWORD,
    ENV_SMTP_HOST,
    ENV_SMTP_USERNAME,
    ENV_SMTP_PASSWORD,
    ENV_OPENAI_ENDPOINT,
    ENV_OPENAI_KEY,
)

SKIP_NO_SENDER = "no_sender"
SKIP_EMPTY_BODY = "empty_body"

ACTION_REPLIED = "REPLIED"
ACTION_SKIPPED = "SKIPPED"
ACTION_FETCH_FAILED = "FETCH_FAILED"
ACTION_SEND_FAILED = "SEND_FAILED"
ACTION_MARK_SEEN_FAILED = "MARK_SEEN_FAILED"
ACTION_DRY_RUN = "DRY_RUN"
ACTION_FAILED = "FAILED"


class ChatbotError(Exception):
    """Base class for failures raised by the mail side of the pipeline."""


class MailConnectionError(ChatbotError):
    pass


class MailAuthError(ChatbotError):
    pass


class MailboxError(ChatbotError):
    pass


class FetchError(ChatbotError):
    pass


class SendError(ChatbotError):
    pass


@dataclass(frozen=True)
class Settings:
    imap_host: str
    imap_port: int
    imap_username: str
    imap_password: str
    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    openai_endpoint: str
    openai_key: str
    openai_model: str | None = None
    openai_timeout_seconds: float = DEFAULT_OPENAI_TIMEOUT_SECONDS
    mail_timeout_seconds: float = DEFAULT_MAIL_TIMEOUT_SECONDS
    imap_folder: str = DEFAULT_IMAP_FOLDER


@dataclass(frozen=True)
class InboundMessage:
    uid: str
    sender: str
    from_addresses: tuple[str, ...]
    subject: str
    message_id: str
    text_body: str | None
    html_body: str | None


@dataclass(frozen=True)
class ExtractedQuestion:
    sender_email: str
    question_text: str
    skip_reason: str = ""

    @property
    def skipped(self) -> bool:
        return bool(self.skip_reason)


@dataclass(frozen=True)
class CompletionResult:
    answer: str | None
    reason: str
    status_code: int | None = None


@dataclass(frozen=True)
class OutboundReply:
    from_address: str
    to_address: str
    subject: str
    body: str


@dataclass
class MessageOutcome:
    uid: str
    sender_email: str
    subject: str
    action: str
    action_reason: str = ""
    used_fallback: bool = False
    completion_reason: str = ""


@dataclass
class RunReport:
    started_at: str
    folder: str
    unread_count: int = 0
    outcomes: list[MessageOutcome] = field(default_factory=list)
    aborted: bool = False
    error: str = ""


# ------------------ configuration ------------------


def configure_logging(level_name: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    level = getattr(logging, level_name.strip().upper(), None)
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stdout,
        force=True,
    )
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    return logger


def read_env_value(environ: Mapping[str, str], name: str) -> str:
    return (environ.get(name) or "").strip()


def parse_port_setting(raw_value: str, source: str, default: int) -> int:
    if not raw_value:
        return default
    try:
        port = int(raw_value)
    except ValueError as error:
        raise ValueError(f"{source} must be an integer.") from error
    if port < 1 or port > 65535:
        raise ValueError(f"{source} must be between 1 and 65535.")
    return port


def parse_positive_seconds_setting(raw_value: str, source: str, default: float) -> float:
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError as error:
        raise ValueError(f"{source} must be a number.") from error
    if value <= 0:
        raise ValueError(f"{source} must be > 0.")
    return value


def load_settings(environ: Mapping[str, str]) -> Settings:
    """Build the immutable run settings from an environment mapping.

    Every missing required variable is reported in a single ValueError so a
    misconfigured deployment can be fixed in one pass.
    """
    missing = [name for name in REQUIRED_ENV_VARS if not read_env_value(environ, name)]
    if missing:
        raise ValueError(f"Missing required environment variables: {', '.join(missing)}")

    return Settings(
        imap_host=read_env_value(environ, ENV_IMAP_HOST),
        imap_port=parse_port_setting(
            read_env_value(environ, ENV_IMAP_PORT),
            ENV_IMAP_PORT,
            DEFAULT_IMAP_PORT,
        ),
        imap_username=read_env_value(environ, ENV_IMAP_USERNAME),
        imap_password=read_env_value(environ, ENV_IMAP_PASSWORD),
        smtp_host=read_env_value(environ, ENV_SMTP_HOST),
        smtp_port=parse_port_setting(
            read_env_value(environ, ENV_SMTP_PORT),
            ENV_SMTP_PORT,
            DEFAULT_SMTP_PORT,
        ),
        smtp_username=read_env_value(environ, ENV_SMTP_USERNAME),
        smtp_password=read_env_value(environ, ENV_SMTP_PASSWORD),
        openai_endpoint=read_env_value(environ, ENV_OPENAI_ENDPOINT),
        openai_key=read_env_value(environ, ENV_OPENAI_KEY),
        openai_model=read_env_value(environ, ENV_OPENAI_MODEL) or None,
        openai_timeout_seconds=parse_positive_seconds_setting(
            read_env_value(environ, ENV_OPENAI_TIMEOUT_SECONDS),
            ENV_OPENAI_TIMEOUT_SECONDS,
            DEFAULT_OPENAI_TIMEOUT_SECONDS,
        ),
        mail_timeout_seconds=parse_positive_seconds_setting(
            read_env_value(environ, ENV_MAIL_TIMEOUT_SECONDS),
            ENV_MAIL_TIMEOUT_SECONDS,
            DEFAULT_MAIL_TIMEOUT_SECONDS,
        ),
        imap_folder=read_env_value(environ, ENV_IMAP_FOLDER) or DEFAULT_IMAP_FOLDER,
    )


# ------------------ mailbox session ------------------


def header_text(value: object) -> str:
    # policy.default has already decoded RFC 2047 words; a second pass would rewrite the text.
    if value is None:
        return ""
    return str(value).strip()


def decode_imap_response(data: object) -> str:
    if not isinstance(data, list):
        return ""
    parts: list[str] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        else:
            parts.append(str(item))
    return " | ".join(parts).strip()


def quote_mailbox_name(folder_name: str) -> str:
    escaped = folder_name.replace("\\", "\\\\").replace('"', r'\"')
    return f'"{escaped}"'


def open_mailbox(settings: Settings, logger: logging.Logger) -> imaplib.IMAP4_SSL:
    """Connect with TLS from the first byte and log in."""
    context = ssl.create_default_context()
    logger.info("Connecting to IMAP %s:%s", settings.imap_host, settings.imap_port)
    try:
        imap = imaplib.IMAP4_SSL(
            settings.imap_host,
            settings.imap_port,
            ssl_context=context,
            timeout=settings.mail_timeout_seconds,
        )
    except (OSError, imaplib.IMAP4.error) as error:
        raise MailConnectionError(
            f"Could not connect to IMAP {settings.imap_host}:{settings.imap_port}: {error}"
        ) from error

    try:
        imap.login(settings.imap_username, settings.imap_password)
    except imaplib.IMAP4.error as error:
        shutdown_quietly(imap)
        raise MailAuthError(f"IMAP login rejected for {settings.imap_username}: {error}") from error
    except OSError as error:
        shutdown_quietly(imap)
        raise MailConnectionError(f"IMAP connection lost during login: {error}") from error
    return imap


def shutdown_quietly(imap: imaplib.IMAP4_SSL) -> None:
    try:
        imap.shutdown()
    except OSError:
        pass


def select_folder(imap: imaplib.IMAP4_SSL, folder_name: str) -> None:
    try:
        status, data = imap.select(quote_mailbox_name(folder_name), readonly=False)
    except (imaplib.IMAP4.error, OSError) as error:
        raise MailboxError(f"Could not open {folder_name} read-write: {error}") from error
    if status != "OK":
        detail = decode_imap_response(data) or "select failed"
        raise MailboxError(f"Could not open {folder_name} read-write: {detail}")


def parse_uid_search_data(data: object) -> list[str]:
    if not isinstance(data, list) or not data or not data[0]:
        return []
    raw = data[0]
    if isinstance(raw, bytes):
        return [uid.decode("ascii", errors="ignore") for uid in raw.split()]
    if isinstance(raw, str):
        return [uid for uid in raw.split() if uid]
    return []


def search_unseen_uids(imap: imaplib.IMAP4_SSL) -> list[str]:
    try:
        status, data = imap.uid("SEARCH", None, "UNSEEN")
    except (imaplib.IMAP4.error, OSError) as error:
        raise MailboxError(f"UNSEEN search failed: {error}") from error
    if status != "OK":
        detail = decode_imap_response(data) or "search failed"
        raise MailboxError(f"UNSEEN search failed: {detail}")
    return parse_uid_search_data(data)


def parse_fetch_message_bytes(fetch_data: Iterable[object]) -> bytes | None:
    for part in fetch_data:
        if not isinstance(part, tuple) or len(part) < 2:
            continue
        _meta, body = part
        if isinstance(body, bytes):
            return body
    return None


def extract_part_text(message: EmailMessage, subtype: str) -> str | None:
    part = message.get_body(preferencelist=(subtype,))
    if part is None or part.get_content_type() != f"text/{subtype}":
        return None
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        content = payload.decode("utf-8", errors="replace")
    if not isinstance(content, str):
        return None
    return content


def extract_from_addresses(message: EmailMessage) -> tuple[str, tuple[str, ...]]:
    from_header = message["From"]
    if from_header is None:
        return "", ()
    sender = header_text(from_header)
    header_addresses = getattr(from_header, "addresses", None)
    if header_addresses is not None:
        addresses = [address.addr_spec for address in header_addresses]
    else:
        addresses = [address for _name, address in getaddresses([sender])]
    cleaned = tuple(
        address.strip()
        for address in addresses
        if address and address.strip() and address.strip() != "<>"
    )
    return sender, cleaned


def parse_inbound_message(uid: str, raw_message: bytes) -> InboundMessage:
    message = BytesParser(policy=policy.default).parsebytes(raw_message)
    sender, from_addresses = extract_from_addresses(message)
    return InboundMessage(
        uid=uid,
        sender=sender,
        from_addresses=from_addresses,
        subject=header_text(message.get("Subject")),
        message_id=header_text(message.get("Message-ID")),
        text_body=extract_part_text(message, "plain"),
        html_body=extract_part_text(message, "html"),
    )


def fetch_inbound_message(imap: imaplib.IMAP4_SSL, uid: str) -> InboundMessage:
    # BODY.PEEK leaves \Seen untouched until the reply has gone out.
    try:
        status, fetch_data = imap.uid("FETCH", uid, "(BODY.PEEK[])")
    except (imaplib.IMAP4.error, OSError) as error:
        raise FetchError(f"Fetch of UID {uid} failed: {error}") from error
    if status != "OK" or not fetch_data:
        detail = decode_imap_response(fetch_data) or "no data"
        raise FetchError(f"Fetch of UID {uid} failed: {detail}")

    raw_message = parse_fetch_message_bytes(fetch_data)
    if raw_message is None:
        raise FetchError(f"UID {uid} no longer exists (moved or deleted by another client).")
    try:
        return parse_inbound_message(uid, raw_message)
    except (LookupError, ValueError, TypeError, AttributeError, IndexError) as error:
        raise FetchError(f"UID {uid} could not be parsed: {error!r}") from error


def mark_seen(imap: imaplib.IMAP4_SSL, uid: str) -> None:
    try:
        status, data = imap.uid("STORE", uid, "+FLAGS.SILENT", r"(\Seen)")
    except (imaplib.IMAP4.error, OSError) as error:
        raise MailboxError(f"Could not mark UID {uid} seen: {error}") from error
    if status != "OK":
        detail = decode_imap_response(data) or "store failed"
        raise MailboxError(f"Could not mark UID {uid} seen: {detail}")


def close_mailbox(imap: imaplib.IMAP4_SSL, logger: logging.Logger) -> None:
    if getattr(imap, "state", "") == "SELECTED":
        try:
            imap.close()
        except (imaplib.IMAP4.error, OSError) as error:
            logger.warning("IMAP CLOSE failed: %s", error)
    try:
        imap.logout()
    except (imaplib.IMAP4.error, OSError) as error:
        logger.warning("IMAP LOGOUT failed: %s", error)


# ------------------ question extraction ------------------


def extract_question(message: InboundMessage) -> ExtractedQuestion:
    sender_email = message.from_addresses[0] if message.from_addresses else ""
    if not sender_email.strip():
        return ExtractedQuestion(sender_email="", question_text="", skip_reason=SKIP_NO_SENDER)

    for candidate in (message.text_body, message.html_body):
        if candidate and candidate.strip():
            return ExtractedQuestion(sender_email=sender_email, question_text=candidate)
    return ExtractedQuestion(sender_email=sender_email, question_text="", skip_reason=SKIP_EMPTY_BODY)


# ------------------ completion client ------------------


def build_completion_payload(question_text: str, model: str | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "messages": [
            {"role": "user", "content": question_text},
        ],
    }
    if model:
        payload["model"] = model
    return payload


def parse_completion_answer(payload: object) -> CompletionResult:
    """Walk ``choices[0].message.content`` and name the first step that fails."""
    if not isinstance(payload, dict):
        return CompletionResult(answer=None, reason="wrong_type:$")
    choices = payload.get("choices")
    if choices is None:
        return CompletionResult(answer=None, reason="missing_field:choices")
    if not isinstance(choices, list):
        return CompletionResult(answer=None, reason="wrong_type:choices")
    if not choices:
        return CompletionResult(answer=None, reason="missing_field:choices[0]")
    first = choices[0]
    if not isinstance(first, dict):
        return CompletionResult(answer=None, reason="wrong_type:choices[0]")
    message = first.get("message")
    if message is None:
        return CompletionResult(answer=None, reason="missing_field:choices[0].message")
    if not isinstance(message, dict):
        return CompletionResult(answer=None, reason="wrong_type:choices[0].message")
    content = message.get("content")
    if content is None:
        return CompletionResult(answer=None, reason="missing_field:choices[0].message.content")
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str):
                    parts.append(text)
        content = "".join(parts)
    if not isinstance(content, str):
        return CompletionResult(answer=None, reason="wrong_type:choices[0].message.content")

    answer = content.strip()
    if not answer:
        return CompletionResult(answer=None, reason="empty_content")
    return CompletionResult(answer=answer, reason="ok")


def request_completion(
    question_text: str,
    settings: Settings,
    logger: logging.Logger,
) -> CompletionResult:
    request_body = json.dumps(build_completion_payload(question_text, settings.openai_model)).encode("utf-8")
    request = urllib.request.Request(
        settings.openai_endpoint,
        data=request_body,
        headers={
            "Authorization": f"Bearer {settings.openai_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        },
        method="POST",
    )

    try:
        with urllib.request.urlopen(request, timeout=settings.openai_timeout_seconds) as response:
            status_code = getattr(response, "status", 200)
            response_body = response.read()
    except urllib.error.HTTPError as error:
        detail = error.read().decode("utf-8", errors="replace").strip()
        logger.warning("Completion endpoint returned status %s: %s", error.code, detail[:200])
        return CompletionResult(answer=None, reason=f"http_error:{error.code}", status_code=error.code)
    except urllib.error.URLError as error:
        logger.error("Completion request failed: %s", error.reason)
        return CompletionResult(answer=None, reason=f"network_error:{error.reason}")
    except TimeoutError:
        logger.error(
            "Completion request timed out after %.1f seconds",
            settings.openai_timeout_seconds,
        )
        return CompletionResult(answer=None, reason="timeout")
    except (OSError, http.client.HTTPException) as error:
        logger.error("Completion request failed: %s", error)
        return CompletionResult(answer=None, reason=f"network_error:{error}")
    except ValueError as error:
        logger.error("Completion endpoint %r is not usable: %s", settings.openai_endpoint, error)
        return CompletionResult(answer=None, reason=f"invalid_endpoint:{error}")

    if not 200 <= status_code < 300:
        logger.warning("Completion endpoint returned status %s", status_code)
        return CompletionResult(answer=None, reason=f"http_error:{status_code}", status_code=status_code)

    try:
        parsed_response = json.loads(response_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        logger.warning("Completion response is not valid JSON: %s", error)
        return CompletionResult(answer=None, reason=f"invalid_api_json:{error}", status_code=status_code)

    result = parse_completion_answer(parsed_response)
    if result.answer is None:
        logger.warning("Completion response had no usable answer: %s", result.reason)
    return CompletionResult(answer=result.answer, reason=result.reason, status_code=status_code)


# ------------------ reply dispatcher ------------------


def reply_subject(subject: str) -> str:
    return f"{REPLY_SUBJECT_PREFIX}{subject}"


def build_reply(settings: Settings, to_address: str, subject: str, body: str) -> OutboundReply:
    return OutboundReply(
        from_address=settings.imap_username,
        to_address=to_address,
        subject=reply_subject(subject),
        body=body,
    )


def compose_reply_message(reply: OutboundReply) -> EmailMessage:
    message = EmailMessage()
    message["From"] = reply.from_address
    message["To"] = reply.to_address
    message["Subject"] = reply.subject
    message["Date"] = formatdate(localtime=True)
    message["Message-ID"] = make_msgid()
    message.set_content(reply.body)
    return message


def send_reply(settings: Settings, reply: OutboundReply, logger: logging.Logger) -> None:
    try:
        message = compose_reply_message(reply)
    except ValueError as error:
        raise SendError(f"Could not compose reply to {reply.to_address!r}: {error}") from error

    context = ssl.create_default_context()
    try:
        # The context manager closes the socket even when login or send fails.
        with smtplib.SMTP_SSL(
            settings.smtp_host,
            settings.smtp_port,
            context=context,
            timeout=settings.mail_timeout_seconds,
        ) as smtp:
            smtp.login(settings.smtp_username, settings.smtp_password)
            smtp.send_message(message)
    except smtplib.SMTPAuthenticationError as error:
        raise SendError(f"SMTP login rejected for {settings.smtp_username}: {error}") from error
    except smtplib.SMTPException as error:
        raise SendError(f"SMTP delivery to {reply.to_address} failed: {error}") from error
    except OSError as error:
        raise SendError(
            f"Could not reach SMTP {settings.smtp_host}:{settings.smtp_port}: {error}"
        ) from error
    logger.info("Sent reply to %s", reply.to_address)


# ------------------ orchestration ------------------


def process_message(
    imap: imaplib.IMAP4_SSL,
    uid: str,
    settings: Settings,
    logger: logging.Logger,
    dry_run: bool = False,
) -> MessageOutcome:
    try:
        message = fetch_inbound_message(imap, uid)
    except FetchError as error:
        logger.error("Skipping UID %s: %s", uid, error)
        return MessageOutcome(
            uid=uid,
            sender_email="",
            subject="",
            action=ACTION_FETCH_FAILED,
            action_reason=str(error),
        )

    logger.info("Processing email from: %s Subject: %s", message.sender, message.subject)
    extracted = extract_question(message)
    if extracted.skipped:
        if extracted.skip_reason == SKIP_NO_SENDER:
            logger.warning("Email UID %s has no sender address, skipping.", uid)
        else:
            logger.warning("Email UID %s from %s has an empty body, skipping.", uid, extracted.sender_email)
        return MessageOutcome(
            uid=uid,
            sender_email=extracted.sender_email,
            subject=message.subject,
            action=ACTION_SKIPPED,
            action_reason=extracted.skip_reason,
        )

    completion = request_completion(extracted.question_text, settings, logger)
    answer = completion.answer
    used_fallback = answer is None
    if answer is None:
        logger.warning(
            "No answer for %s (subject %r): %s; sending fallback.",
            extracted.sender_email,
            message.subject,
            completion.reason,
        )
        answer = FALLBACK_ANSWER

    outcome = MessageOutcome(
        uid=uid,
        sender_email=extracted.sender_email,
        subject=message.subject,
        action=ACTION_REPLIED,
        used_fallback=used_fallback,
        completion_reason=completion.reason,
    )
    reply = build_reply(settings, extracted.sender_email, message.subject, answer)
    if dry_run:
        logger.info("Dry run: would reply to %s with subject %r", reply.to_address, reply.subject)
        outcome.action = ACTION_DRY_RUN
        outcome.action_reason = "reply not sent; message left unread"
        return outcome

    try:
        send_reply(settings, reply, logger)
    except SendError as error:
        # Leaving the message unread makes the next run try again.
        logger.error(
            "Failed to send reply to %s (subject %r): %s; message left unread.",
            reply.to_address,
            message.subject,
            error,
        )
        outcome.action = ACTION_SEND_FAILED
        outcome.action_reason = str(error)
        return outcome

    try:
        mark_seen(imap, uid)
    except MailboxError as error:
        logger.error("Replied to %s but %s", extracted.sender_email, error)
        outcome.action = ACTION_MARK_SEEN_FAILED
        outcome.action_reason = str(error)
        return outcome

    logger.info("Replied to %s", extracted.sender_email)
    return outcome


def process_unread_messages(
    imap: imaplib.IMAP4_SSL,
    settings: Settings,
    logger: logging.Logger,
    report: RunReport,
    dry_run: bool = False,
) -> RunReport:
    select_folder(imap, settings.imap_folder)
    uids = search_unseen_uids(imap)
    report.unread_count = len(uids)
    logger.info("Found %d unread messages.", len(uids))

    for uid in uids:
        try:
            outcome = process_message(imap, uid, settings, logger, dry_run=dry_run)
        except Exception as error:
            logger.exception("Unexpected failure processing UID %s; message left unread.", uid)
            outcome = MessageOutcome(
                uid=uid,
                sender_email="",
                subject="",
                action=ACTION_FAILED,
                action_reason=repr(error),
            )
        report.outcomes.append(outcome)
    return report


def run_once(settings: Settings, logger: logging.Logger, dry_run: bool = False) -> RunReport:
    report = RunReport(
        started_at=datetime.now().astimezone().isoformat(timespec="seconds"),
        folder=settings.imap_folder,
    )
    logger.info("EmailChatbot running at: %s", report.started_at)

    try:
        imap = open_mailbox(settings, logger)
    except ChatbotError as error:
        logger.error("Run aborted: %s", error)
        report.aborted = True
        report.error = str(error)
        return report

    try:
        process_unread_messages(imap, settings, logger, report, dry_run=dry_run)
    except MailboxError as error:
        logger.error("Run aborted: %s", error)
        report.aborted = True
        report.error = str(error)
    finally:
        close_mailbox(imap, logger)

    log_run_summary(report, logger)
    return report


def log_run_summary(report: RunReport, logger: logging.Logger) -> None:
    counts: dict[str, int] = {}
    for outcome in report.outcomes:
        counts[outcome.action] = counts.get(outcome.action, 0) + 1
    fallback_count = sum(1 for outcome in report.outcomes if outcome.used_fallback)
    counts_text = ", ".join(f"{action}={count}" for action, count in sorted(counts.items())) or "none"
    logger.info(
        "Run finished: %d unread, outcomes: %s, fallback answers: %d",
        report.unread_count,
        counts_text,
        fallback_count,
    )


def run_forever(
    settings: Settings,
    logger: logging.Logger,
    interval_seconds: float,
    dry_run: bool = False,
    json_output: Path | None = None,
) -> None:
    while True:
        started = time.monotonic()
        try:
            report = run_once(settings, logger, dry_run=dry_run)
        except Exception:
            logger.exception("Run failed unexpectedly; retrying at the next tick.")
            report = None
        if report is not None and json_output is not None:
            try:
                write_json_report(json_output, report)
            except OSError as error:
                logger.error("Could not write JSON output at %s: %s", json_output, error)
        elapsed = time.monotonic() - started
        time.sleep(max(0.0, interval_seconds - elapsed))


def write_json_report(path: Path, report: RunReport) -> None:
    path.write_text(json.dumps(asdict(report), indent=2), encoding="utf-8")


# ------------------ entry point ------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "EmailChatbot answers unread IMAP messages with a chat-completion endpoint "
            "and replies to the sender over SMTP. Settings come from the environment "
            f"({', '.join(REQUIRED_ENV_VARS)})."
        )
    )
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running, starting a new pass every --interval-seconds.",
    )
    parser.add_argument(
        "--interval-seconds",
        default=DEFAULT_INTERVAL_SECONDS,
        type=int,
        help=f"Seconds between run starts in --loop mode (default: {DEFAULT_INTERVAL_SECONDS}).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Generate answers but do not send replies or mark messages seen.",
    )
    parser.add_argument(
        "--json-output",
        default="",
        help="Optional path to write the run report as JSON.",
    )
    parser.add_argument(
        "--log-level",
        default="",
        help=f"Logging level (default: ${ENV_LOG_LEVEL} or {DEFAULT_LOG_LEVEL}).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logger = configure_logging(args.log_level or os.environ.get(ENV_LOG_LEVEL, DEFAULT_LOG_LEVEL))

    if args.interval_seconds < 1:
        logger.error("--interval-seconds must be >= 1.")
        return 2

    try:
        settings = load_settings(os.environ)
    except ValueError as error:
        logger.error("Invalid configuration: %s", error)
        return 2

    json_output = Path(args.json_output) if args.json_output else None

    if args.loop:
        logger.info("Looping every %d seconds.", args.interval_seconds)
        try:
            run_forever(
                settings,
                logger,
                args.interval_seconds,
                dry_run=args.dry_run,
                json_output=json_output,
            )
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping.")
        return 0

    try:
        report = run_once(settings, logger, dry_run=args.dry_run)
    except Exception:
        logger.exception("Run failed unexpectedly.")
        return 1
    if json_output is not None:
        try:
            write_json_report(json_output, report)
            logger.info("Wrote JSON output to %s", json_output)
        except OSError as error:
            logger.error("Could not write JSON output at %s: %s", json_output, error)
            return 1

    return 1 if report.aborted else 0


if __name__ == "__main__":
    raise SystemExit(main())
