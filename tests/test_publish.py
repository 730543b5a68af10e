"""Tests for the publishing collaborators."""

import asyncio
import base64
import datetime
import smtplib

import httpx
import pytest

from mailforge.config import AwsConfig, LitmusConfig, MailConfig
from mailforge.exceptions import ConfigurationError, ExternalServiceError
from mailforge.publish import (
    CACHE_CONTROL,
    LitmusClient,
    MailSender,
    ObjectStore,
    RenderTestService,
    S3ObjectStore,
    SmtpMailSender,
    rewrite_image_urls,
    upload_images,
)

from conftest import write

AWS = AwsConfig(key="AKID", secret="SECRET", bucket="emails", region="eu-west-1", url="https://cdn.test")


class TestRewriteImageUrls:
    def test_rewrites_local_references(self):
        markup = "<img src=\"assets/img/a.png\"><img src='/assets/img/b.png'>"
        assert rewrite_image_urls(markup, "https://cdn.test") == (
            "<img src=\"https://cdn.test/a.png\"><img src='https://cdn.test/b.png'>"
        )

    def test_other_urls_untouched(self):
        markup = '<img src="https://x.test/assets/img/a.png"><a href="assets/doc.pdf">'
        assert rewrite_image_urls(markup, "https://cdn.test") == markup

    def test_no_base_url(self):
        assert rewrite_image_urls('<img src="assets/img/a.png">', None) == '<img src="assets/img/a.png">'


class TestS3ObjectStore:
    def test_put_sends_signed_public_upload(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                store = S3ObjectStore(AWS, client)
                return await store.put("hero image.png", b"png", "image/png")

        url = asyncio.run(scenario())

        assert url == "https://cdn.test/hero%20image.png"
        (request,) = seen
        assert request.method == "PUT"
        assert str(request.url) == "https://emails.s3.eu-west-1.amazonaws.com/hero%20image.png"
        assert request.headers["x-amz-acl"] == "public-read"
        assert request.headers["cache-control"] == CACHE_CONTROL
        assert request.headers["content-type"] == "image/png"
        assert request.headers["authorization"].startswith(
            "AWS4-HMAC-SHA256 Credential=AKID/"
        )
        assert request.content == b"png"

    def test_signature_is_deterministic(self):
        store = S3ObjectStore(AWS)
        now = datetime.datetime(2024, 5, 1, 12, 0, tzinfo=datetime.timezone.utc)
        url = "https://emails.s3.eu-west-1.amazonaws.com/a.png"
        first = store.signed_headers("PUT", url, {"content-type": "image/png"}, b"x", now)
        second = store.signed_headers("PUT", url, {"content-type": "image/png"}, b"x", now)
        assert first == second
        assert first["x-amz-date"] == "20240501T120000Z"
        assert "Credential=AKID/20240501/eu-west-1/s3/aws4_request" in first["authorization"]
        assert "SignedHeaders=content-type;host;x-amz-content-sha256;x-amz-date" in first["authorization"]
        other = store.signed_headers("PUT", url, {"content-type": "image/png"}, b"y", now)
        assert other["authorization"] != first["authorization"]

    def test_escaped_key_is_signed_as_sent(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await S3ObjectStore(AWS, client).put("my image.png", b"png", "image/png")

        asyncio.run(scenario())

        (request,) = seen
        assert request.url.raw_path == b"/my%20image.png"
        canonical = S3ObjectStore.canonical_request(
            "PUT", str(request.url), {"host": "emails.s3.eu-west-1.amazonaws.com"}, "UNSIGNED"
        )
        assert canonical.split("\n")[1] == "/my%20image.png"
        assert "%25" not in canonical

    def test_custom_endpoint(self):
        config = AWS.model_copy(update={"endpoint": "https://minio.test/emails/", "url": None})
        store = S3ObjectStore(config)
        assert store.endpoint == "https://minio.test/emails"
        assert store.public_url("a.png") == "https://minio.test/emails/a.png"

    def test_http_error(self):
        async def scenario():
            transport = httpx.MockTransport(lambda request: httpx.Response(403, text="denied"))
            async with httpx.AsyncClient(transport=transport) as client:
                await S3ObjectStore(AWS, client).put("a.png", b"x", "image/png")

        with pytest.raises(ExternalServiceError) as exc:
            asyncio.run(scenario())
        assert "403" in str(exc.value)

    def test_upload_images(self, tmp_path):
        write(tmp_path, "img/a.png", b"a")
        write(tmp_path, "img/icons/b.gif", b"b")
        uploaded = []

        class Store:
            async def put(self, key, data, content_type):
                uploaded.append((key, data, content_type))
                return key

        urls = asyncio.run(upload_images(Store(), tmp_path / "img"))
        assert urls == ["a.png", "icons/b.gif"]
        assert uploaded[1] == ("icons/b.gif", b"b", "image/gif")

    def test_upload_images_missing_dir(self, tmp_path):
        assert asyncio.run(upload_images(None, tmp_path / "nope")) == []


class TestLitmusClient:
    def test_submit(self):
        seen = []
        config = LitmusConfig(
            username="user", password="pw", url="https://acme.litmus.test/", applications=["ol2019"]
        )

        def handler(request):
            seen.append(request)
            return httpx.Response(201, headers={"Location": "https://acme.litmus.test/tests/7"})

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await LitmusClient(config, client).submit("Spring & Co", "<p>x</p>")

        location = asyncio.run(scenario())

        assert location == "https://acme.litmus.test/tests/7"
        (request,) = seen
        assert str(request.url) == "https://acme.litmus.test/emails.xml"
        expected = base64.b64encode(b"user:pw").decode()
        assert request.headers["authorization"] == f"Basic {expected}"
        body = request.content.decode()
        assert "<![CDATA[<p>x</p>]]>" in body
        assert "<subject>Spring &amp; Co</subject>" in body
        assert "<code>ol2019</code>" in body

    def test_failure(self):
        config = LitmusConfig(username="u", password="p", url="https://acme.litmus.test")

        async def scenario():
            transport = httpx.MockTransport(lambda request: httpx.Response(401))
            async with httpx.AsyncClient(transport=transport) as client:
                await LitmusClient(config, client).submit("s", "<p/>")

        with pytest.raises(ExternalServiceError):
            asyncio.run(scenario())


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user, password))

    def send_message(self, message):
        self.messages.append(message)


class TestSmtpMailSender:
    @pytest.fixture(autouse=True)
    def fake_smtp(self, monkeypatch):
        FakeSMTP.instances = []
        monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

    def config(self):
        return MailConfig.model_validate(
            {
                "to": ["team@x.test"],
                "from": "build@x.test",
                "subject": "Preview",
                "smtp": {"host": "smtp.test", "auth": {"user": "u", "pass": "p"}},
            }
        )

    def test_send(self):
        sender = SmtpMailSender(self.config())
        asyncio.run(sender.send("Preview", "<p>x</p>", ["a@x.test", "b@x.test"]))

        (server,) = FakeSMTP.instances
        assert (server.host, server.port) == ("smtp.test", 587)
        assert server.calls == ["starttls", ("login", "u", "p")]
        (message,) = server.messages
        assert message["To"] == "a@x.test, b@x.test"
        assert message["From"] == "build@x.test"
        assert message.get_body(("html",)).get_content().strip() == "<p>x</p>"

    def test_smtp_failure(self, monkeypatch):
        class Refusing(FakeSMTP):
            def send_message(self, message):
                raise smtplib.SMTPRecipientsRefused({})

        monkeypatch.setattr(smtplib, "SMTP", Refusing)
        with pytest.raises(ExternalServiceError):
            asyncio.run(SmtpMailSender(self.config()).send("s", "<p/>", ["a@x.test"]))

    def test_no_recipients(self):
        with pytest.raises(ExternalServiceError):
            asyncio.run(SmtpMailSender(self.config()).send("s", "<p/>", []))

    def test_starttls_can_be_disabled(self):
        config = self.config()
        config.smtp.starttls = False
        asyncio.run(SmtpMailSender(config).send("s", "<p/>", ["a@x.test"]))
        (server,) = FakeSMTP.instances
        assert server.calls == [("login", "u", "p")]

    def test_missing_smtp_section(self):
        with pytest.raises(ConfigurationError) as exc:
            SmtpMailSender(MailConfig(), "/srv/mail/creds.json")
        assert exc.value.path == "/srv/mail/creds.json"


class TestContracts:
    @pytest.mark.parametrize("contract", [ObjectStore, RenderTestService, MailSender])
    def test_contracts_are_abstract(self, contract):
        with pytest.raises(TypeError):
            contract()
