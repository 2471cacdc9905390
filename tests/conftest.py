import io

import pytest
import requests
from PIL import Image
from python_http_client.exceptions import UnauthorizedError

from comiccraft.config import Settings
from comiccraft.mailer import ComicMailer
from comiccraft.main import ComicImageGenerator, FalImageClient
from comiccraft.server import create_app
from comiccraft.storage import MemStorage


def png_bytes(size=(64, 48), color="red", fmt="PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


class FakeResponse:
    def __init__(self, content=b"", status=200, headers=None):
        self.content = content
        self.status_code = status
        self.headers = headers or {"Content-Type": "image/png"}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    """Stands in for requests.Session; maps URL to a response or an exception."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append(url)
        result = self.routes.get(url)
        if result is None:
            raise requests.ConnectionError(f"no route for {url}")
        if isinstance(result, Exception):
            raise result
        return result


class FakeFal:
    """Mimics fal_client.SyncClient.subscribe."""

    def __init__(self, result=None, error=None):
        self.result = result if result is not None else {"images": [{"url": "https://fal.media/comic.png"}]}
        self.error = error
        self.calls = []

    def subscribe(self, application, arguments=None, with_logs=False):
        self.calls.append((application, arguments))
        if self.error:
            raise self.error
        return self.result


class FakeTransport:
    """Records each sendgrid Mail as the request body SendGrid would receive."""

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def send(self, message):
        if self.error:
            raise self.error
        self.sent.append(message.get())
        return f"msg-{len(self.sent)}"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        fal_key=None,
        email_user="comics@example.com",
        admin_email="admin@example.com",
        public_base_url="https://comics.example.com",
        root_dir=tmp_path,
    )


@pytest.fixture
def live_settings(settings):
    return settings.model_copy(update={"fal_key": "fal-test-key"})


@pytest.fixture
def fake_http():
    return FakeHttp()


@pytest.fixture
def fake_fal():
    return FakeFal()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def mailer(settings, transport, fake_http):
    return ComicMailer(settings, transport=transport, http=fake_http)


@pytest.fixture
def generator(settings, fake_http):
    return ComicImageGenerator(settings, http=fake_http)


@pytest.fixture
def live_generator(live_settings, fake_fal, fake_http):
    client = FalImageClient("fal-test-key", live_settings.fal_image_model, client=fake_fal)
    return ComicImageGenerator(live_settings, image_client=client, http=fake_http)


@pytest.fixture
def storage():
    return MemStorage()


@pytest.fixture
def app(settings, storage, generator, mailer, fake_http):
    app = create_app(settings, storage=storage, generator=generator, mailer=mailer, http=fake_http)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def send_error():
    return UnauthorizedError(401, "Unauthorized", b'{"errors": [{"message": "bad key"}]}', {})
