"""
tests/test_media.py
"""
from __future__ import annotations

import io
import logging

import pytest
from botocore.exceptions import ClientError
from PIL import Image

from inkwell import media
from inkwell.media import ImageError, StoredImage


def _image_bytes(size=(300, 900), fmt="PNG", mode="RGB") -> io.BytesIO:
    buf = io.BytesIO()
    Image.new(mode, size, (10, 20, 30) if mode == "RGB" else 0).save(buf, fmt)
    buf.seek(0)
    return buf


# ───────────────────────── processing ─────────────────────────────────
def test_portrait_image_keeps_aspect(tmp_path):
    img = media.process_image(_image_bytes((300, 900)), tmp_path, name="tall.png", mime="image/png")

    assert img.extension == ".webp"
    assert img.filename == f"{img.uuid}.webp"
    assert img.url == f"/uploads/{img.uuid}.webp"
    assert img.size == (tmp_path / img.filename).stat().st_size
    with Image.open(tmp_path / img.filename) as full:
        assert full.size == (200, 600)
    with Image.open(tmp_path / "thumbs" / img.filename) as thumb:
        assert thumb.size == (100, 100)


def test_small_images_are_not_enlarged(tmp_path):
    img = media.process_image(_image_bytes((40, 30)), tmp_path, name="s.png", mime="image/png")
    with Image.open(tmp_path / img.filename) as full:
        assert full.size == (40, 30)


@pytest.mark.parametrize("fmt, mime, mode", [("JPEG", "image/jpeg", "RGB"), ("GIF", "image/gif", "P")])
def test_other_accepted_formats(tmp_path, fmt, mime, mode):
    img = media.process_image(_image_bytes((120, 80), fmt, mode), tmp_path, name="x", mime=mime)
    with Image.open(tmp_path / img.filename) as full:
        assert full.format == "WEBP"


@pytest.mark.parametrize("mime", ["image/svg+xml", "text/plain", "", None])
def test_rejects_other_mime_types(tmp_path, mime):
    with pytest.raises(ImageError):
        media.process_image(_image_bytes(), tmp_path, name="x", mime=mime)


def test_undecodable_bytes_leave_nothing_behind(tmp_path):
    with pytest.raises(ImageError, match="broken.png"):
        media.process_image(io.BytesIO(b"\x89PNG nope"), tmp_path, name="broken.png", mime="image/png")
    assert list(tmp_path.rglob("*.webp")) == []


def test_remove_image(tmp_path):
    img = media.process_image(_image_bytes(), tmp_path, name="a.png", mime="image/png")
    media.remove_image(tmp_path, img.filename)
    media.remove_image(tmp_path, img.filename)  # already gone is fine
    assert list(tmp_path.rglob("*.webp")) == []


# ───────────────────────── references ─────────────────────────────────
def _stored(name, ident="abc"):
    return StoredImage(uuid=ident, name=name, extension=".webp", mime="image/webp", size=1)


def test_replace_references():
    body = "![one](one.png) and ![two]( two.png ) but not [one](one.png) or ![x](one.png.bak)"
    out = media.replace_references(body, [_stored("one.png", "u1"), _stored("two.png", "u2")])
    assert out == (
        "![one](/uploads/u1.webp) and ![two](/uploads/u2.webp) "
        "but not [one](one.png) or ![x](one.png.bak)"
    )


def test_replace_references_escapes_names():
    out = media.replace_references("![a](a+b.png) ![c](aab.png)", [_stored("a+b.png", "u")])
    assert out == "![a](/uploads/u.webp) ![c](aab.png)"


def test_is_referenced():
    assert media.is_referenced("see ![x](/uploads/u1.webp)", "u1.webp")
    assert not media.is_referenced("see u1.webp", "u1.webp")
    assert not media.is_referenced(None, "u1.webp")


# ───────────────────────── R2 ─────────────────────────────────────────
@pytest.fixture
def r2_env(monkeypatch):
    for key in media.R2_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_r2_config_merges_env_and_file(tmp_path, r2_env):
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# R2\nR2_ACCOUNT_ID=acc\nR2_BUCKET = from-file\nnot a pair\nR2_ACCESS_KEY_ID=key\n"
    )
    r2_env.setenv("R2_BUCKET", "from-env")
    cfg = media.r2_config(env_file)
    assert cfg == {"R2_ACCOUNT_ID": "acc", "R2_BUCKET": "from-env", "R2_ACCESS_KEY_ID": "key"}
    assert not media.r2_is_configured(cfg)

    r2_env.setenv("R2_SECRET_ACCESS_KEY", "s3cret")
    assert media.r2_is_configured(media.r2_config(env_file))


def test_r2_config_without_file(tmp_path, r2_env):
    assert media.r2_config(tmp_path / "missing.env") == {}
    assert media.r2_config() == {}


class FakeS3:
    def __init__(self, fail=False):
        self.uploads = []
        self.deleted = []
        self.fail = fail

    def upload_file(self, path, bucket, key, ExtraArgs=None):
        self.uploads.append((path, bucket, key, ExtraArgs))

    def delete_object(self, Bucket, Key):
        if self.fail:
            raise ClientError({"Error": {"Code": "403", "Message": "denied"}}, "DeleteObject")
        self.deleted.append((Bucket, Key))


CFG = {"R2_ACCOUNT_ID": "a", "R2_ACCESS_KEY_ID": "k", "R2_SECRET_ACCESS_KEY": "s", "R2_BUCKET": "b"}


def test_mirror_uploads_both_renditions(tmp_path):
    img = media.process_image(_image_bytes(), tmp_path, name="a.png", mime="image/png")
    s3 = FakeS3()
    media.mirror_to_r2(CFG, tmp_path, img, client=s3)
    assert s3.uploads == [
        (str(tmp_path / img.filename), "b", f"uploads/{img.filename}", {"ContentType": "image/webp"}),
        (
            str(tmp_path / "thumbs" / img.filename),
            "b",
            f"uploads/thumbs/{img.filename}",
            {"ContentType": "image/webp"},
        ),
    ]


def test_delete_from_r2(caplog):
    s3 = FakeS3()
    media.delete_from_r2(CFG, "u.webp", client=s3)
    assert s3.deleted == [("b", "uploads/u.webp"), ("b", "uploads/thumbs/u.webp")]

    with caplog.at_level(logging.ERROR, logger="inkwell.media"):
        media.delete_from_r2(CFG, "u.webp", client=FakeS3(fail=True))
    assert "R2 delete of uploads/u.webp failed" in caplog.text


def test_r2_client_endpoint():
    client = media.r2_client(CFG)
    assert client.meta.endpoint_url == "https://a.r2.cloudflarestorage.com"
    custom = media.r2_client({**CFG, "R2_ENDPOINT": "http://localhost:9000"})
    assert custom.meta.endpoint_url == "http://localhost:9000"
