#!/usr/bin/env python3
"""
Outbound Telegram Bot API client used to deliver feed messages.
"""

from __future__ import annotations

import json
import mimetypes
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
from urllib import error as urllib_error
from urllib import request as urllib_request


DEFAULT_API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT_SECONDS = 15


class DeliveryError(Exception):
    """A message could not be handed to the Bot API."""


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text if text else None


def _error_description(body: bytes) -> str:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return body[:200].decode("utf-8", errors="replace")
    if isinstance(payload, dict) and payload.get("description"):
        return str(payload["description"])
    return str(payload)[:200]


def _header_safe(value: str) -> str:
    # Percent-encode quotes and line breaks, as browsers do for form filenames.
    return value.replace("\r", "%0D").replace("\n", "%0A").replace('"', "%22")


def encode_multipart(
    fields: Dict[str, str],
    files: Dict[str, Tuple[str, bytes]],
) -> Tuple[bytes, str]:
    """Build a multipart/form-data body; returns (body, content_type)."""
    boundary = uuid.uuid4().hex
    chunks = []
    for name, value in fields.items():
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for name, (filename, content) in files.items():
        mime = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{_header_safe(filename)}"\r\n'
                f"Content-Type: {mime}\r\n\r\n"
            ).encode("utf-8")
        )
        chunks.append(content)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"


class TelegramClient:
    def __init__(
        self,
        bot_token: str,
        api_base: str = DEFAULT_API_BASE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        token = _non_empty(bot_token)
        if not token:
            raise ValueError("bot_token must be a non-empty string")
        self.bot_token = token
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds if timeout_seconds > 0 else DEFAULT_TIMEOUT_SECONDS

    def send_text(self, chat_id: str, text: str) -> Dict[str, Any]:
        body = json.dumps(
            {
                "chat_id": chat_id,
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            }
        ).encode("utf-8")
        return self._post("sendMessage", body, "application/json")

    def send_photo(
        self,
        chat_id: str,
        photo_path: Union[str, Path],
        caption: Optional[str] = None,
    ) -> Dict[str, Any]:
        path = Path(photo_path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            raise DeliveryError(f"sendPhoto could not read {path}: {exc}") from exc

        fields = {"chat_id": str(chat_id)}
        if caption:
            fields["caption"] = caption
            fields["parse_mode"] = "HTML"
        body, content_type = encode_multipart(fields, {"photo": (path.name, content)})
        return self._post("sendPhoto", body, content_type)

    def _post(self, method: str, body: bytes, content_type: str) -> Dict[str, Any]:
        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        req = urllib_request.Request(
            url=url,
            data=body,
            method="POST",
            headers={"Content-Type": content_type},
        )
        try:
            with urllib_request.urlopen(req, timeout=self.timeout_seconds) as response:
                status = response.status
                raw = response.read()
        except urllib_error.HTTPError as exc:
            raise DeliveryError(f"{method} failed with HTTP {exc.code}: {_error_description(exc.read())}") from exc
        except urllib_error.URLError as exc:
            raise DeliveryError(f"{method} failed: {exc.reason}") from exc
        except OSError as exc:
            raise DeliveryError(f"{method} failed: {exc}") from exc

        if not 200 <= status < 300:
            raise DeliveryError(f"{method} failed with HTTP {status}: {_error_description(raw)}")
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DeliveryError(f"{method} returned a non-JSON body") from exc
        if not isinstance(payload, dict) or not payload.get("ok"):
            raise DeliveryError(f"{method} rejected: {_error_description(raw)}")
        return payload
