"""Tests for the image upload boundary."""

import io
import re

import pytest
from starlette.datastructures import Headers, UploadFile

from config import get_settings
from uploads import (
    UploadRejected,
    delete_images,
    is_allowed_image,
    save_images,
    unique_filename,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"0" * 64


def upload(filename, content_type, data=PNG):
    return UploadFile(file=io.BytesIO(data), filename=filename, headers=Headers({"content-type": content_type}))


@pytest.mark.parametrize("filename,content_type", [
    ("photo.jpg", "image/jpeg"),
    ("photo.JPEG", "image/jpeg"),
    ("photo.png", "image/png"),
    ("photo.webp", "image/webp"),
])
def test_allowed_images(filename, content_type):
    assert is_allowed_image(filename, content_type)


@pytest.mark.parametrize("filename,content_type", [
    ("photo.gif", "image/gif"),
    ("script.exe", "application/octet-stream"),
    ("photo.png", "text/plain"),
    ("photo.txt", "image/png"),
    ("", "image/png"),
    ("photo.png", None),
])
def test_rejected_images(filename, content_type):
    assert not is_allowed_image(filename, content_type)


def test_unique_filename_keeps_only_safe_extension():
    assert re.fullmatch(r"\d+-\d+\.png", unique_filename("Cat.PNG"))
    assert re.fullmatch(r"\d+-\d+", unique_filename("evil.php"))


def test_save_images_writes_files(upload_dir):
    urls = save_images([upload("a.png", "image/png"), upload("b.jpg", "image/jpeg")])

    assert len(urls) == 2
    for url in urls:
        assert url.startswith("/uploads/")
        assert (upload_dir / url.rsplit("/", 1)[1]).read_bytes() == PNG


def test_disallowed_extension_rejected_before_anything_is_stored(upload_dir):
    with pytest.raises(UploadRejected, match="Only image files are allowed"):
        save_images([upload("a.png", "image/png"), upload("b.gif", "image/gif")])
    assert not upload_dir.exists() or not any(upload_dir.iterdir())


def test_oversized_file_rejected(monkeypatch):
    monkeypatch.setattr(get_settings(), "max_upload_mb", 1)
    with pytest.raises(UploadRejected, match="too large"):
        save_images([upload("big.png", "image/png", b"0" * (1024 * 1024 + 1))])


class TrackedBytes(io.BytesIO):
    def __init__(self, data):
        super().__init__(data)
        self.reads = []

    def read(self, size=-1):
        chunk = super().read(size)
        self.reads.append(len(chunk))
        return chunk


def test_oversized_file_is_not_read_past_the_limit(monkeypatch):
    monkeypatch.setattr(get_settings(), "max_upload_mb", 1)
    limit = 1024 * 1024
    body = TrackedBytes(b"0" * (limit * 3))
    source = UploadFile(file=body, filename="big.png", headers=Headers({"content-type": "image/png"}))

    with pytest.raises(UploadRejected, match="too large"):
        save_images([source])
    assert body.reads == [limit + 1]


def test_file_exactly_at_the_limit_is_accepted(monkeypatch, upload_dir):
    monkeypatch.setattr(get_settings(), "max_upload_mb", 1)
    urls = save_images([upload("edge.png", "image/png", b"0" * (1024 * 1024))])
    assert (upload_dir / urls[0].rsplit("/", 1)[1]).stat().st_size == 1024 * 1024


def test_too_many_images_rejected():
    with pytest.raises(UploadRejected, match="Maximum 3 images"):
        save_images([upload(f"{i}.png", "image/png") for i in range(4)])


def test_delete_images_removes_stored_files(upload_dir):
    urls = save_images([upload("a.png", "image/png")])
    delete_images(urls + ["/uploads/missing.png", "https://cdn.example.io/x.png"])
    assert not any(upload_dir.iterdir())


def test_api_rejects_disallowed_upload(client, admin_headers, mongo_db):
    response = client.post(
        "/api/admin/products",
        headers=admin_headers,
        data={"name": "Mug", "description": "Ceramic", "price": "12.5", "stock": "3", "category": "home"},
        files=[("images", ("mug.gif", b"GIF89a", "image/gif"))],
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Only image files are allowed (jpeg, jpg, png, webp)"
    assert mongo_db["product"].count_documents({}) == 0
