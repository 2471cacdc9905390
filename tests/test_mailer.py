import base64

import pytest

from comiccraft.errors import EmailDeliveryError
from comiccraft.mailer import (
    ComicMailer,
    SendGridTransport,
    attachment_filename,
    cc_addresses,
    email_subject,
    render_email_html,
)
from comiccraft.models import CharacterSketch, ComicEmail

from .conftest import FakeResponse, FakeTransport, png_bytes


def make_email(image_url, **overrides):
    data = dict(
        childName="Mariam",
        childEmail="mariam@example.com",
        parentEmail="parent@example.com",
        storyTitle="Desert Rescue!",
        storyDescription="Zayd finds a lost camel",
        characters=[CharacterSketch(name="Zayd", appearance="red cap", personality="brave", role="hero")],
        imageUrl=image_url,
    )
    data.update(overrides)
    return ComicEmail(**data)


def inline_parts(msg):
    return [a for a in msg.get("attachments", []) if a.get("content_id") == "comic-image"]


def decoded(attachment):
    return base64.b64decode(attachment["content"])


def stored_image(settings, name="comic-1-abcdef.png", dist=False, content=None):
    root = settings.dist_generated_images_dir if dist else settings.generated_images_dir
    root.mkdir(parents=True, exist_ok=True)
    (root / name).write_bytes(content if content is not None else png_bytes())
    return f"/generated-images/{name}"


def test_headers_and_recipients(mailer, settings, transport):
    result = mailer.send(make_email(stored_image(settings)))
    assert result.success
    msg = transport.sent[0]
    personalization = msg["personalizations"][0]
    assert personalization["to"] == [{"email": "parent@example.com"}]
    assert personalization["cc"] == [{"email": "mariam@example.com"}, {"email": "admin@example.com"}]
    assert msg["from"] == {"email": "comics@example.com"}
    assert msg["subject"] == "🎨 Mariam's New Comic: \"Desert Rescue!\""
    assert result.messageId == "msg-1"


def test_cc_omitted_when_absent(mailer, settings, transport):
    settings.admin_email = None
    mailer.send(make_email(stored_image(settings), childEmail=None))
    assert "cc" not in transport.sent[0]["personalizations"][0]


def test_cc_skips_parent_and_repeats():
    data = make_email("/x.png", childEmail="PARENT@example.com")
    assert cc_addresses(data, "admin@example.com") == ["admin@example.com"]
    data = make_email("/x.png", childEmail="admin@example.com")
    assert cc_addresses(data, "Admin@Example.com") == ["admin@example.com"]


def test_body_has_text_and_html(mailer, settings, transport):
    mailer.send(make_email(stored_image(settings)))
    content = {c["type"]: c["value"] for c in transport.sent[0]["content"]}
    assert "Title: Desert Rescue!" in content["text/plain"]
    assert 'src="cid:comic-image"' in content["text/html"]


def test_generated_image_is_inline_with_content_id(mailer, settings, transport):
    mailer.send(make_email(stored_image(settings)))
    parts = inline_parts(transport.sent[0])
    assert len(parts) == 1
    assert parts[0]["disposition"] == "inline"
    assert parts[0]["filename"] == "Desert_Rescue__comic.png"
    assert parts[0]["type"] == "image/png"
    assert decoded(parts[0]) == png_bytes()


def test_generated_image_falls_back_to_dist(mailer, settings, transport):
    mailer.send(make_email(stored_image(settings, dist=True)))
    assert len(inline_parts(transport.sent[0])) == 1


def test_persistent_copy_wins_over_dist(mailer, settings, transport):
    persistent = png_bytes(color="blue")
    temporary = png_bytes(color="yellow")
    url = stored_image(settings, content=persistent)
    stored_image(settings, dist=True, content=temporary)
    mailer.send(make_email(url))
    assert decoded(inline_parts(transport.sent[0])[0]) == persistent


def test_static_path_under_public(mailer, settings, transport):
    (settings.public_dir / "samples").mkdir(parents=True)
    (settings.public_dir / "samples" / "page.png").write_bytes(png_bytes())
    mailer.send(make_email("/samples/page.png"))
    assert len(inline_parts(transport.sent[0])) == 1


def test_fallback_image_is_attached(mailer, settings, transport):
    settings.fallback_image_path.write_bytes(png_bytes(fmt="JPEG"))
    mailer.send(make_email("/example_uae.jpeg"))
    parts = inline_parts(transport.sent[0])
    assert parts[0]["type"] == "image/jpeg"


def test_data_uri_is_written_to_persistent_dir(mailer, settings, transport):
    uri = "data:image/png;base64," + base64.b64encode(png_bytes()).decode()
    mailer.send(make_email(uri))
    files = list(settings.generated_images_dir.glob("comic-*.png"))
    assert len(files) == 1
    assert files[0].read_bytes() == png_bytes()
    assert len(inline_parts(transport.sent[0])) == 1


def test_bad_data_uri_sends_without_image(mailer, transport):
    mailer.send(make_email("data:image/png;base64,@@@not-base64@@@"))
    assert "attachments" not in transport.sent[0]


def test_missing_local_file_uses_remote_copy(mailer, transport, fake_http):
    fake_http.routes["https://comics.example.com/generated-images/gone.png"] = FakeResponse(png_bytes())
    mailer.send(make_email("/generated-images/gone.png"))
    msg = transport.sent[0]
    assert inline_parts(msg) == []
    assert [(a["filename"], a["disposition"]) for a in msg["attachments"]] == [
        ("Desert_Rescue__comic.png", "attachment"),
    ]


def test_remote_fetch_failure_still_sends(mailer, transport, fake_http):
    mailer.send(make_email("https://fal.media/expired.png"))
    assert fake_http.calls == ["https://fal.media/expired.png"]
    assert len(transport.sent) == 1
    assert "attachments" not in transport.sent[0]


def test_subject_stays_on_one_line():
    # Requests reject line breaks; the subject still flattens anything set later
    data = make_email("/x.png")
    data.childName = "Mariam\r\nBcc: x@evil.test"
    data.storyTitle = "Desert\nRescue"
    subject = email_subject(data)
    assert "\n" not in subject and "\r" not in subject
    assert subject == "🎨 Mariam Bcc: x@evil.test's New Comic: \"Desert Rescue\""


def test_html_is_escaped():
    html = render_email_html(make_email("/x.png", storyTitle="<script>alert(1)</script>"))
    assert "<script>" not in html
    assert "&lt;script&gt;" in html
    assert 'src="cid:comic-image"' in html
    assert "Zayd" in html


def test_attachment_filename_is_sanitised():
    assert attachment_filename("Zayd & the Falcon") == "Zayd___the_Falcon_comic.png"


def test_transport_failure_raises(settings, fake_http, send_error):
    mailer = ComicMailer(settings, transport=FakeTransport(error=send_error), http=fake_http)
    with pytest.raises(EmailDeliveryError, match="Failed to send email"):
        mailer.send(make_email("/missing.png"))


def test_connection_failure_raises(settings, fake_http):
    mailer = ComicMailer(settings, transport=FakeTransport(error=ConnectionError("refused")), http=fake_http)
    with pytest.raises(EmailDeliveryError, match="refused"):
        mailer.send(make_email("/missing.png"))


class FakeSendGridClient:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return FakeResponse(status=202, headers={"X-Message-Id": "sg-123"})


def test_sendgrid_transport_returns_message_id(settings, fake_http):
    client = FakeSendGridClient()
    mailer = ComicMailer(settings, transport=SendGridTransport("SG.test", client=client), http=fake_http)
    result = mailer.send(make_email("/missing.png"))
    assert result.messageId == "sg-123"
    assert client.sent[0].get()["personalizations"][0]["to"] == [{"email": "parent@example.com"}]
