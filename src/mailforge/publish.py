"""Publishing collaborators - object store, render-test service and mail.

Each collaborator is a small request/response contract:

- ObjectStore.put(key, data, content_type) -> public URL
- RenderTestService.submit(subject, html) -> test location
- MailSender.send(subject, html, recipients)

Failures raise ExternalServiceError and are never retried.
"""

from __future__ import annotations

import asyncio
import datetime
import hashlib
import hmac
import logging
import mimetypes
import re
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from pathlib import Path
from urllib.parse import quote, urlparse
from xml.sax.saxutils import escape

import httpx

from mailforge.config import CREDENTIALS_FILE, AwsConfig, LitmusConfig, MailConfig
from mailforge.exceptions import ConfigurationError, ExternalServiceError

log = logging.getLogger(__name__)

IMAGE_URL = re.compile(r"=('|\")(/?assets/img)")

CACHE_CONTROL = "max-age=315360000, no-transform, public"
EMPTY_SHA256 = hashlib.sha256(b"").hexdigest()


def rewrite_image_urls(markup: str, base_url: str | None) -> str:
    """Point local image references at the public image host.

    Applied to submitted copies only; files on disk keep local paths.
    """
    if not base_url:
        return markup
    return IMAGE_URL.sub(lambda m: f"={m.group(1)}{base_url}", markup)


# -- object store -------------------------------------------------------------


class ObjectStore(ABC):
    """Remote object store contract."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        pass


def _sign(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


class S3ObjectStore(ObjectStore):
    """S3-compatible store over httpx with AWS Signature Version 4.

    Objects are uploaded public-read with a ten-year Cache-Control.
    """

    def __init__(self, config: AwsConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client
        self.endpoint = (
            config.endpoint or f"https://{config.bucket}.s3.{config.region}.amazonaws.com"
        ).rstrip("/")

    def public_url(self, key: str) -> str:
        base = (self.config.url or self.endpoint).rstrip("/")
        return f"{base}/{quote(key)}"

    def signed_headers(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: bytes,
        now: datetime.datetime | None = None,
    ) -> dict[str, str]:
        """Return headers plus the SigV4 Authorization for a request."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")
        parsed = urlparse(url)

        payload_hash = hashlib.sha256(payload).hexdigest() if payload else EMPTY_SHA256
        all_headers = {
            **{k.lower(): v.strip() for k, v in headers.items()},
            "host": parsed.netloc,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }
        signed = ";".join(sorted(all_headers))
        canonical_request = self.canonical_request(method, url, all_headers, payload_hash)
        scope = f"{date_stamp}/{self.config.region}/s3/aws4_request"
        string_to_sign = "\n".join(
            [
                "AWS4-HMAC-SHA256",
                amz_date,
                scope,
                hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
            ]
        )

        k_date = _sign(f"AWS4{self.config.secret}".encode("utf-8"), date_stamp)
        k_region = _sign(k_date, self.config.region)
        k_service = _sign(k_region, "s3")
        k_signing = _sign(k_service, "aws4_request")
        signature = hmac.new(
            k_signing, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        authorization = (
            f"AWS4-HMAC-SHA256 Credential={self.config.key}/{scope}, "
            f"SignedHeaders={signed}, Signature={signature}"
        )
        return {**all_headers, "authorization": authorization}

    @staticmethod
    def canonical_request(
        method: str, url: str, headers: dict[str, str], payload_hash: str
    ) -> str:
        """SigV4 canonical request. The URL path must already be percent-encoded."""
        parsed = urlparse(url)
        names = sorted(headers)
        return "\n".join(
            [
                method,
                parsed.path or "/",
                parsed.query,
                "".join(f"{name}:{headers[name]}\n" for name in names),
                ";".join(names),
                payload_hash,
            ]
        )

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        url = f"{self.endpoint}/{quote(key)}"
        headers = self.signed_headers(
            "PUT",
            url,
            {
                "content-type": content_type,
                "cache-control": CACHE_CONTROL,
                "x-amz-acl": "public-read",
            },
            data,
        )
        headers.pop("host")

        client = self.client or httpx.AsyncClient(timeout=60.0)
        try:
            response = await client.put(url, content=data, headers=headers)
        except httpx.HTTPError as e:
            raise ExternalServiceError("object store", f"{key}: {e}") from e
        finally:
            if self.client is None:
                await client.aclose()

        if response.status_code >= 300:
            raise ExternalServiceError(
                "object store", f"{key}: HTTP {response.status_code} {response.text[:200]}"
            )
        log.info(f"Uploaded {key}")
        return self.public_url(key)


async def upload_images(store: ObjectStore, image_dir: Path) -> list[str]:
    """Upload every file under image_dir, keyed by its relative path."""
    if not image_dir.is_dir():
        return []
    urls: list[str] = []
    for path in sorted(p for p in image_dir.rglob("*") if p.is_file()):
        key = path.relative_to(image_dir).as_posix()
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        data = await asyncio.to_thread(path.read_bytes)
        urls.append(await store.put(key, data, content_type))
    return urls


# -- render test service ------------------------------------------------------


class RenderTestService(ABC):
    """Render-test service contract."""

    @abstractmethod
    async def submit(self, subject: str, html: str) -> str:
        pass


class LitmusClient(RenderTestService):
    """Creates Litmus email tests through the emails.xml endpoint."""

    def __init__(self, config: LitmusConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = client

    def payload(self, subject: str, html: str) -> str:
        applications = "".join(
            f"<application><code>{escape(code)}</code></application>"
            for code in self.config.applications
        )
        return (
            '<?xml version="1.0"?>'
            "<test_set>"
            f'<applications type="array">{applications}</applications>'
            "<save_defaults>false</save_defaults>"
            "<use_defaults>false</use_defaults>"
            "<email_source>"
            f"<body><![CDATA[{html}]]></body>"
            f"<subject>{escape(subject)}</subject>"
            "</email_source>"
            "</test_set>"
        )

    async def submit(self, subject: str, html: str) -> str:
        url = self.config.url.rstrip("/") + "/emails.xml"
        client = self.client or httpx.AsyncClient(timeout=60.0)
        try:
            response = await client.post(
                url,
                content=self.payload(subject, html).encode("utf-8"),
                headers={"Content-Type": "application/xml", "Accept": "application/xml"},
                auth=(self.config.username, self.config.password),
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError("litmus", str(e)) from e
        finally:
            if self.client is None:
                await client.aclose()

        if response.status_code >= 300:
            raise ExternalServiceError(
                "litmus", f"HTTP {response.status_code} {response.text[:200]}"
            )
        location = response.headers.get("location", url)
        log.info(f"Litmus test created for '{subject}': {location}")
        return location


# -- mail ---------------------------------------------------------------------


class MailSender(ABC):
    """Sample e-mail sender contract."""

    @abstractmethod
    async def send(self, subject: str, html: str, recipients: list[str]) -> None:
        pass


class SmtpMailSender(MailSender):
    """Sends HTML messages over SMTP (blocking I/O runs in a worker thread)."""

    def __init__(self, config: MailConfig, credentials_path: str = CREDENTIALS_FILE):
        if config.smtp is None:
            raise ConfigurationError(credentials_path, "missing 'mail.smtp' section")
        self.config = config
        self.smtp = config.smtp

    def message(self, subject: str, html: str, recipients: list[str]) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.sender
        message["To"] = ", ".join(recipients)
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html, subtype="html")
        return message

    def _send(self, message: EmailMessage) -> None:
        factory = smtplib.SMTP_SSL if self.smtp.secure else smtplib.SMTP
        with factory(self.smtp.host, self.smtp.port, timeout=60) as server:
            if not self.smtp.secure and self.smtp.starttls:
                server.starttls()
            if self.smtp.auth is not None:
                server.login(self.smtp.auth.user, self.smtp.auth.password)
            server.send_message(message)

    async def send(self, subject: str, html: str, recipients: list[str]) -> None:
        if not recipients:
            raise ExternalServiceError("mail", "no recipients")
        message = self.message(subject, html, recipients)
        try:
            await asyncio.to_thread(self._send, message)
        except (smtplib.SMTPException, OSError) as e:
            raise ExternalServiceError("mail", str(e)) from e
        log.info(f"Sent '{subject}' to {', '.join(recipients)}")
